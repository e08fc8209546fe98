"""Per-call bridging between the telephony and assistant legs.

- Bridge: per-call state machine routing frames between the two connections
- BridgeSettings: audio rates, pending-audio policy and pipe sizing
"""

__all__ = [
    "Bridge",
    "BridgeSettings",
    "BridgeState",
    "PendingAudioPolicy",
    "SessionBroker",
]

from relay.bridge.call_bridge import (
    Bridge,
    BridgeSettings,
    BridgeState,
    PendingAudioPolicy,
    SessionBroker,
)

"""Session broker client.

Asks the voice-assistant provider for a single-use WebSocket URL for one
call. Every failure mode collapses into ``BrokerError`` carrying the raw
diagnostic payload.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
import structlog

from relay.core.errors import BrokerError

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://api.vapi.ai"
TRANSPORT_PROVIDER = "vapi.websocket"


@dataclass(frozen=True)
class SessionEndpoint:
    """Single-use upstream endpoint for one Call Session."""

    url: str
    call_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


class SessionBrokerClient:
    """Client for the provider's call-creation endpoint."""

    def __init__(
        self,
        api_key: str,
        assistant_id: str,
        base_url: str = DEFAULT_BASE_URL,
        sample_rate: int = 16000,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None
    ) -> None:
        """Initialize broker client.

        Args:
            api_key: Provider API key (bearer token)
            assistant_id: Assistant to attach to each call
            base_url: Provider API base URL
            sample_rate: PCM rate requested for the upstream leg
            timeout: HTTP request timeout in seconds
            client: Optional shared HTTP client (owned by caller)
        """
        self._api_key = api_key
        self._assistant_id = assistant_id
        self._base_url = base_url.rstrip("/")
        self._sample_rate = sample_rate
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    def build_request_body(self) -> Dict[str, Any]:
        """Build the JSON body for ``POST /call``."""
        return {
            "assistantId": self._assistant_id,
            "transport": {
                "provider": TRANSPORT_PROVIDER,
                "audioFormat": {
                    "format": "pcm_s16le",
                    "container": "raw",
                    "sampleRate": self._sample_rate,
                },
            },
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def request_session(self) -> SessionEndpoint:
        """Request a session URL for a new call.

        Returns:
            Session endpoint to open exactly one upstream connection

        Raises:
            BrokerError: On transport failure, non-2xx status, non-JSON body
                or a response without ``transport.websocketCallUrl``
        """
        url = f"{self._base_url}/call"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        try:
            resp = await self._get_client().post(
                url,
                headers=headers,
                json=self.build_request_body(),
                timeout=self._timeout,
            )
        except httpx.HTTPError as e:
            raise BrokerError(
                f"Session request failed: {type(e).__name__}: {e}",
                payload=str(e)
            ) from e

        if not resp.is_success:
            raise BrokerError(
                f"Session request returned HTTP {resp.status_code}",
                payload={"status": resp.status_code, "body": resp.text}
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise BrokerError(
                "Session response is not valid JSON",
                payload=resp.text
            ) from e

        ws_url = None
        if isinstance(data, dict):
            transport = data.get("transport")
            if isinstance(transport, dict):
                ws_url = transport.get("websocketCallUrl")

        if not ws_url or not isinstance(ws_url, str):
            raise BrokerError(
                "Session response missing transport.websocketCallUrl",
                payload=data
            )

        call_id = data.get("id")
        logger.info("Session URL received", provider_call_id=call_id)
        return SessionEndpoint(url=ws_url, call_id=call_id, payload=data)

    async def aclose(self) -> None:
        """Close the HTTP client if this broker created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

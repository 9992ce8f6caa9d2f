import logging
from typing import Any, Dict, Optional

import httpx

from iterqa_agent.browser.config import DEFAULT_CONFIG
from iterqa_agent.browser.protocol import build_notification
from iterqa_agent.exceptions import ChannelTimeoutError, ProtocolError, SessionLostError, TransportError

SESSION_HEADER = "Mcp-Session-Id"


class MCPChannel:
    """Persistent HTTP channel to an MCP automation backend.

    Requests are POSTed as JSON; replies come back either as plain JSON or
    as an event stream which the caller decodes. The backend-issued session
    header is remembered and sent with every later request.
    """

    def __init__(self, base_url: str = None, endpoint: str = None, timeout: float = None,
                 headers: Dict[str, str] = None, client: Optional[httpx.AsyncClient] = None):
        self.base_url = (base_url or DEFAULT_CONFIG["base_url"]).rstrip("/")
        self.endpoint = endpoint or DEFAULT_CONFIG["endpoint"]
        self.timeout = timeout if timeout is not None else DEFAULT_CONFIG["timeout"]
        self.headers = headers or {}
        self.backend_session_id: Optional[str] = None
        self._client = client
        self._owns_client = client is None

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.endpoint}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._client

    def _request_headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            **self.headers,
        }
        if self.backend_session_id:
            headers[SESSION_HEADER] = self.backend_session_id
        return headers

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.post(self.url, json=payload, headers=self._request_headers())
        except httpx.TimeoutException as e:
            raise ChannelTimeoutError(f"Request to {self.url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransportError(f"Backend unreachable at {self.url}: {e}") from e

        if response.status_code == 404 and self.backend_session_id:
            raise SessionLostError(f"Session closed by backend (HTTP 404 for session {self.backend_session_id})")
        if response.status_code >= 500:
            raise TransportError(f"Backend error HTTP {response.status_code}: {response.text[:200]}")
        if response.status_code >= 400:
            raise ProtocolError(f"Request rejected with HTTP {response.status_code}: {response.text[:200]}")

        session_id = response.headers.get(SESSION_HEADER)
        if session_id:
            self.backend_session_id = session_id
        return response

    async def send(self, payload: Dict[str, Any]) -> str:
        """Send one JSON-RPC request and return the raw response body."""
        logging.debug(f"-> {payload.get('method')} (id={payload.get('id')})")
        response = await self._post(payload)
        return response.text

    async def notify(self, method: str, params: Dict[str, Any] = None):
        await self._post(build_notification(method, params))

    def reset(self):
        """Forget the backend session so the next handshake starts fresh."""
        self.backend_session_id = None

    async def close(self):
        """Send the teardown signal and release the HTTP client."""
        try:
            if self.backend_session_id and self._client is not None:
                try:
                    await self._client.delete(self.url, headers=self._request_headers())
                except httpx.HTTPError as e:
                    raise TransportError(f"Teardown request failed: {e}") from e
        finally:
            self.backend_session_id = None
            if self._client is not None and self._owns_client:
                await self._client.aclose()
                self._client = None

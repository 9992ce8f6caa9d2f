import asyncio
import logging
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from iterqa_agent.browser.channel import MCPChannel
from iterqa_agent.browser.config import DEFAULT_CONFIG
from iterqa_agent.browser.protocol import build_request, build_tool_call, decode, extract_content, unwrap
from iterqa_agent.data import generate_session_id
from iterqa_agent.exceptions import (
    BackendError,
    ProtocolError,
    SessionInitializationError,
    TransportError,
)


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSED = "closed"


class SessionStatus(BaseModel):
    """Read-only view of the session handed out to other components."""

    model_config = ConfigDict(frozen=True)

    session_id: Optional[str]
    state: SessionState
    initialized: bool
    backend_launched: bool


class MCPSession:
    """Owns the single logical connection to the automation backend."""

    def __init__(self, channel: MCPChannel = None, backend_config: Dict[str, Any] = None,
                 session_id: Optional[str] = None):
        self.backend_config = {**DEFAULT_CONFIG, **(backend_config or {})}
        self._channel = channel or MCPChannel(
            base_url=self.backend_config["base_url"],
            endpoint=self.backend_config["endpoint"],
            timeout=self.backend_config["timeout"],
        )
        self._state = SessionState.UNINITIALIZED
        self._session_id = session_id
        self._backend_launched = False
        self._request_id = 0
        self._lock = asyncio.Lock()

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def state(self) -> SessionState:
        return self._state

    def is_ready(self) -> bool:
        return self._state == SessionState.READY

    def status(self) -> SessionStatus:
        return SessionStatus(
            session_id=self._session_id,
            state=self._state,
            initialized=self._state == SessionState.READY,
            backend_launched=self._backend_launched,
        )

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def initialize(self) -> str:
        """Run the handshake unless the session is already live.

        Returns the local session id, which stays the same across calls.
        """
        async with self._lock:
            if self._state == SessionState.READY:
                return self._session_id

            self._state = SessionState.INITIALIZING
            handshake = build_request(
                self._next_id(),
                "initialize",
                {
                    "protocolVersion": self.backend_config["protocol_version"],
                    "capabilities": {},
                    "clientInfo": {
                        "name": self.backend_config["client_name"],
                        "version": self.backend_config["client_version"],
                    },
                },
            )
            logging.debug(f"Initializing MCP session against {self._channel.url}")

            try:
                raw = await self._channel.send(handshake)
                reply = decode(raw)
                if reply is None:
                    raise ProtocolError("invalid response to initialize")
                if "error" in reply:
                    error = reply["error"] or {}
                    raise BackendError(error.get("message", "initialize rejected"), code=error.get("code"))
                await self._channel.notify("notifications/initialized")
            except (TransportError, ProtocolError, BackendError) as e:
                self._state = SessionState.UNINITIALIZED
                logging.error(f"MCP session initialization failed: {e}")
                raise SessionInitializationError(f"MCP session initialization failed: {e}") from e

            if self._session_id is None:
                self._session_id = generate_session_id()
            self._state = SessionState.READY
            self._backend_launched = True
            server_info = (reply.get("result") or {}).get("serverInfo", {})
            logging.info(f"MCP session {self._session_id} ready (server: {server_info.get('name', 'unknown')})")
            return self._session_id

    async def reinitialize(self) -> str:
        """Discard the backend handshake and run it again, keeping the local id."""
        async with self._lock:
            self._state = SessionState.UNINITIALIZED
            self._channel.reset()
        logging.warning(f"Re-running handshake for session {self._session_id}")
        return await self.initialize()

    async def call(self, name: str, arguments: Dict[str, Any] = None) -> Any:
        """Invoke a backend tool and return its (unwrapped) content."""
        if self._state != SessionState.READY:
            await self.initialize()

        request = build_tool_call(self._next_id(), name, arguments)
        raw = await self._channel.send(request)
        reply = decode(raw)
        if reply is None:
            raise ProtocolError(f"invalid response from {name}: no JSON-RPC message in reply")

        if "error" in reply:
            error = reply["error"] or {}
            raise BackendError(error.get("message") or str(error), code=error.get("code"), data=error.get("data"))

        result = reply.get("result")
        content = extract_content(result)
        if isinstance(result, dict) and result.get("isError"):
            raise BackendError(content or f"{name} failed")
        if content is None or content == "" or content == {} or content == []:
            raise ProtocolError(f"invalid response from {name}: empty content")
        if not isinstance(content, (str, dict, list)):
            raise ProtocolError(f"invalid response from {name}: unexpected content type {type(content).__name__}")
        return unwrap(content)

    async def close(self):
        """Send the teardown signal; local state is reset whatever the backend says."""
        async with self._lock:
            if self._backend_launched:
                logging.info(f"Closing MCP session {self._session_id}")
            self._state = SessionState.CLOSED
            try:
                await self._channel.close()
            except Exception as e:
                logging.warning(f"Teardown of session {self._session_id} failed: {e}")
            finally:
                self._state = SessionState.UNINITIALIZED
                self._backend_launched = False

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

"""JSON-RPC envelopes and decoding of event-stream framed responses.

The backend answers with one or more blocks of the form::

    event: message
    data: {"jsonrpc": "2.0", "id": 3, "result": {...}}

separated by blank lines. Notifications may be interleaved with the reply,
so ``decode`` keeps the last block that is a JSON-RPC response.
"""

import json
import logging
from typing import Any, Dict, List, Optional

JSONRPC_VERSION = "2.0"
TOOLS_CALL = "tools/call"


def build_request(request_id: int, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method, "params": params or {}}


def build_tool_call(request_id: int, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return build_request(request_id, TOOLS_CALL, {"name": name, "arguments": arguments or {}})


def build_notification(method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "method": method, "params": params or {}}


def is_response(message: Any) -> bool:
    """A structurally valid JSON-RPC 2.0 response carries a result or an error."""
    return (
        isinstance(message, dict)
        and message.get("jsonrpc") == JSONRPC_VERSION
        and ("result" in message or "error" in message)
    )


def iter_payloads(raw: str) -> List[Any]:
    """Return every parseable ``data:`` payload in the buffer, in order."""
    payloads = []
    for block in raw.replace("\r\n", "\n").split("\n\n"):
        if not block.strip():
            continue
        data_lines = [line[5:].lstrip() for line in block.split("\n") if line.startswith("data:")]
        if not data_lines:
            continue
        data = "\n".join(data_lines)
        try:
            payloads.append(json.loads(data))
        except json.JSONDecodeError:
            logging.debug(f"Skipping non-JSON event payload: {data[:200]}")
    return payloads


def decode(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decode a raw response buffer into the last JSON-RPC response it holds.

    Plain JSON bodies (servers that do not stream) are accepted as well.
    Returns ``None`` when nothing usable is found; callers decide whether
    that is an error.
    """
    if not raw or not raw.strip():
        return None

    stripped = raw.strip()
    if stripped.startswith("{") or stripped.startswith("["):
        try:
            body = json.loads(stripped)
        except json.JSONDecodeError:
            body = None
        candidates = body if isinstance(body, list) else [body]
        responses = [c for c in candidates if is_response(c)]
        if responses:
            return responses[-1]

    responses = [payload for payload in iter_payloads(raw) if is_response(payload)]
    return responses[-1] if responses else None


def extract_content(result: Any) -> Any:
    """Flatten an MCP tool result into text, or pass other results through."""
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        texts = [
            item.get("text", "")
            for item in result["content"]
            if isinstance(item, dict) and item.get("type") == "text"
        ]
        return "\n".join(t for t in texts if t)
    return result


def unwrap(content: Any) -> Any:
    """Parse a serialized JSON payload nested inside text content, one level deep."""
    if isinstance(content, str):
        text = content.strip()
        if text.startswith("{") or text.startswith("["):
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                return content
    return content

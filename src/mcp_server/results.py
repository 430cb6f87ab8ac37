"""Result formatting and JSON-RPC envelopes.

Tool outputs, validation failures and tool exceptions all go through
``format_tool_result`` so the agent always gets the same content shape.
"""

import json
from typing import Any, Optional

from shared.models import JSONRPC_VERSION, RequestId


def _is_plain_object(payload: Any) -> bool:
    return isinstance(payload, dict)


def format_tool_result(payload: Any, is_error: Optional[bool] = None) -> dict[str, Any]:
    """
    Wrap a tool payload as protocol content.

    A serialized-text block is always present. Dict payloads are also
    returned as ``structuredContent``; lists and scalars are text only.

    Args:
        payload: Tool output, or ``{"error": message}`` for failures
        is_error: Explicit error flag. When omitted, a dict payload with an
            ``error`` key is treated as an error.

    Returns:
        ``{"content": [...], "structuredContent"?: {...}, "isError": bool}``
    """
    if is_error is None:
        is_error = _is_plain_object(payload) and "error" in payload

    result: dict[str, Any] = {
        "content": [
            {"type": "text", "text": json.dumps(payload, indent=2, ensure_ascii=False, default=str)}
        ],
    }
    if _is_plain_object(payload):
        result["structuredContent"] = payload
    result["isError"] = bool(is_error)
    return result


def format_tool_error(message: str) -> dict[str, Any]:
    """In-band error payload for a failed or rejected tool call."""
    return format_tool_result({"error": message}, is_error=True)


def rpc_result(request_id: RequestId, result: Any) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def rpc_error(
    request_id: RequestId,
    code: int,
    message: str,
    data: Optional[Any] = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}

"""Exception hierarchy for the CRM agent endpoint.

Every application exception carries a string ``code``. Errors that surface as
JSON-RPC error objects additionally carry the reserved ``rpc_code`` and the
HTTP status the endpoint answers with.
"""

from typing import Any, Optional

# Reserved JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
AUTH_FAILED = -32001


class CrmMcpError(Exception):
    """Base exception for all endpoint errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class ProtocolError(CrmMcpError):
    """Malformed envelope, unknown method or unusable params."""

    rpc_code: int = INVALID_REQUEST
    http_status: int = 400

    def __init__(
        self,
        message: str,
        *,
        code: str = "PROTOCOL_ERROR",
        data: Optional[Any] = None,
    ) -> None:
        super().__init__(message, code=code)
        self.data = data


class ParseError(ProtocolError):
    rpc_code = PARSE_ERROR

    def __init__(self, message: str = "Parse error") -> None:
        super().__init__(message, code="PARSE_ERROR")


class InvalidRequestError(ProtocolError):
    rpc_code = INVALID_REQUEST

    def __init__(self, message: str = "Invalid Request") -> None:
        super().__init__(message, code="INVALID_REQUEST")


class MethodNotFoundError(ProtocolError):
    rpc_code = METHOD_NOT_FOUND
    http_status = 404

    def __init__(self, method: str) -> None:
        super().__init__(f"Method not found: {method}", code="METHOD_NOT_FOUND")
        self.method = method


class InvalidParamsError(ProtocolError):
    rpc_code = INVALID_PARAMS

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_PARAMS")


class AuthError(CrmMcpError):
    """Missing, unknown or mis-owned API key. Always JSON-RPC -32001 / HTTP 401."""

    rpc_code: int = AUTH_FAILED
    http_status: int = 401

    def __init__(self, message: str, *, code: str = "AUTH_ERROR") -> None:
        super().__init__(message, code=code)

    @property
    def data(self) -> dict[str, str]:
        return {"error": self.message, "code": self.code}


class AuthMissingError(AuthError):
    def __init__(self, message: str = "Missing API key") -> None:
        super().__init__(message, code="AUTH_MISSING")


class AuthInvalidError(AuthError):
    def __init__(self, message: str = "Invalid API key") -> None:
        super().__init__(message, code="AUTH_INVALID")


class AuthOwnerInvalidError(AuthError):
    """The key's organization does not match the record, or it has no owner."""

    def __init__(self, message: str = "Invalid API key owner") -> None:
        super().__init__(message, code="AUTH_OWNER_INVALID")


class ToolExecutionError(CrmMcpError):
    """Business-level failure raised by a tool; reported in-band."""

    def __init__(self, message: str, *, code: str = "TOOL_ERROR") -> None:
        super().__init__(message, code=code)


class DuplicateToolError(CrmMcpError):
    """Two tools share a name within one registry. A programming error."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Tool '{name}' is already registered", code="DUPLICATE_TOOL")
        self.name = name

"""JSON-RPC dispatcher for the agent endpoint.

Takes a raw request body and headers and always produces a well-formed
JSON-RPC envelope (or an empty 204 for the ``initialized`` notification).

Per call the steps run in a fixed order: resolve identity, build the
registry, validate the envelope, route the method. For ``tools/call`` the
order continues with lookup, argument validation, execution, formatting.
Failures before a tool is selected are protocol errors; everything from
argument validation onward is reported in-band with ``isError: true``.
"""

import asyncio
import inspect
import json
import time
from typing import Any, Callable, Mapping, Optional

from pydantic import BaseModel, ValidationError

from shared.errors import (
    AuthError,
    InvalidParamsError,
    InvalidRequestError,
    MethodNotFoundError,
    ParseError,
    ProtocolError,
    ToolExecutionError,
)
from shared.logging import bind_context, get_logger
from shared.models import (
    JSONRPC_VERSION,
    AuditStatus,
    ExecutionContext,
    JsonRpcRequest,
    RequestId,
)
from shared.schema import validate
from mcp_server.audit import AuditLogger
from mcp_server.auth import IdentityResolver, extract_api_key
from mcp_server.registry import BoundTool, ToolRegistry
from mcp_server.results import format_tool_error, format_tool_result, rpc_error, rpc_result

logger = get_logger(__name__)

RegistryFactory = Callable[[ExecutionContext], ToolRegistry]

METHOD_INITIALIZE = "initialize"
METHOD_INITIALIZED = "notifications/initialized"
METHOD_TOOLS_LIST = "tools/list"
METHOD_TOOLS_CALL = "tools/call"


class ServerInfo(BaseModel):
    """Identity the server advertises to agent clients."""
    name: str
    version: str
    protocol_version: str


class DispatchResponse(BaseModel):
    """HTTP status plus JSON body; ``payload`` is None for a bodiless 204."""
    status_code: int = 200
    payload: Optional[dict[str, Any]] = None


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Invalid JSON constant: {name}")


def load_body(raw_body: bytes) -> tuple[Any, bool]:
    """
    Decode a JSON body. Returns ``(body, ok)``.

    ``NaN`` and the infinities are not JSON and fail the parse like any
    other malformed input.
    """
    try:
        return json.loads(raw_body, parse_constant=_reject_constant), True
    except (ValueError, UnicodeDecodeError):
        return None, False


def request_id_of(body: Any) -> RequestId:
    """The id to echo: the envelope's own id when it is a valid one, else null."""
    if isinstance(body, dict):
        request_id = body.get("id")
        if isinstance(request_id, (str, int, float)) and not isinstance(request_id, bool):
            return request_id
    return None


def parse_envelope(body: Any) -> JsonRpcRequest:
    """
    Validate the request envelope.

    Raises:
        InvalidRequestError: Not an object, wrong ``jsonrpc`` tag, missing or
            blank ``method``, or ``params`` that is neither object nor array
    """
    if not isinstance(body, dict):
        raise InvalidRequestError()
    try:
        request = JsonRpcRequest.model_validate(body)
    except ValidationError:
        raise InvalidRequestError()
    if request.jsonrpc != JSONRPC_VERSION or not request.method.strip():
        raise InvalidRequestError()
    return request


class McpDispatcher:
    """
    Routes JSON-RPC methods for one endpoint.

    Holds no per-request state: identity and registry are derived afresh for
    every call, so concurrent calls never observe each other.
    """

    def __init__(
        self,
        resolver: IdentityResolver,
        registry_factory: RegistryFactory,
        server: ServerInfo,
        audit_logger: Optional[AuditLogger] = None,
    ) -> None:
        self.resolver = resolver
        self.registry_factory = registry_factory
        self.server = server
        self.audit_logger = audit_logger

    async def handle(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        request_id: Optional[str] = None,
    ) -> DispatchResponse:
        """
        Handle one ``POST`` to the endpoint.

        Args:
            raw_body: Request body bytes
            headers: Request headers (case-insensitive mapping)
            request_id: Transport-level correlation id for logs and audit

        Returns:
            Status code and envelope to send back
        """
        body, parsed = load_body(raw_body)
        rpc_id = request_id_of(body)

        try:
            context = await self.resolver.resolve(extract_api_key(headers))
        except AuthError as e:
            return DispatchResponse(
                status_code=e.http_status,
                payload=rpc_error(rpc_id, e.rpc_code, e.message, e.data),
            )

        bind_context(organization_id=context.organization_id)

        try:
            if not parsed:
                raise ParseError()
            request = parse_envelope(body)
            bind_context(rpc_method=request.method)
            registry = self.registry_factory(context)
            return await self.dispatch(request, registry, request_id=request_id)
        except ProtocolError as e:
            logger.info("Protocol error", code=e.rpc_code, error=e.message)
            return DispatchResponse(
                status_code=e.http_status,
                payload=rpc_error(rpc_id, e.rpc_code, e.message, e.data),
            )

    async def dispatch(
        self,
        request: JsonRpcRequest,
        registry: ToolRegistry,
        request_id: Optional[str] = None,
    ) -> DispatchResponse:
        """
        Route a validated envelope to its method.

        Raises:
            MethodNotFoundError: Unknown method
            InvalidParamsError: Bad ``tools/call`` params or unknown tool
        """
        method = request.method

        if method == METHOD_INITIALIZE:
            return DispatchResponse(payload=rpc_result(request.id, self._initialize()))

        if method == METHOD_INITIALIZED:
            return DispatchResponse(status_code=204)

        if method == METHOD_TOOLS_LIST:
            tools = [summary.model_dump(by_alias=True) for summary in registry.list_tools()]
            return DispatchResponse(payload=rpc_result(request.id, {"tools": tools}))

        if method == METHOD_TOOLS_CALL:
            params = request.params if request.params is not None else {}
            if not isinstance(params, dict):
                raise InvalidParamsError("Invalid params: tools/call expects an object")
            result = await self.call_tool(params, registry, request_id=request_id)
            return DispatchResponse(payload=rpc_result(request.id, result))

        raise MethodNotFoundError(method)

    def _initialize(self) -> dict[str, Any]:
        return {
            "protocolVersion": self.server.protocol_version,
            "serverInfo": {"name": self.server.name, "version": self.server.version},
            "capabilities": {"tools": {"listChanged": False}},
        }

    async def call_tool(
        self,
        params: dict[str, Any],
        registry: ToolRegistry,
        request_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Execute ``tools/call``.

        Lookup failures raise; once the tool is known, every outcome is a
        formatted tool result.

        Args:
            params: ``{"name": str, "arguments": object}``
            registry: Registry bound to the caller's context

        Returns:
            Formatted tool result (``isError`` set on failure)

        Raises:
            InvalidParamsError: Missing tool name or unknown tool
        """
        tool_name = params.get("name")
        if not isinstance(tool_name, str) or not tool_name.strip():
            raise InvalidParamsError("Invalid params: missing tool name")

        tool = registry.get(tool_name)
        if tool is None:
            raise InvalidParamsError(f"Unknown tool: {tool_name}")

        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}

        start_time = time.perf_counter()

        outcome = validate(tool.spec.input_schema, arguments)
        if not outcome.ok:
            message = "; ".join(outcome.issues) or "Invalid tool arguments"
            logger.info("Tool arguments rejected", tool=tool_name, issues=outcome.issues)
            await self._audit(
                tool, arguments, AuditStatus.VALIDATION_ERROR, message, start_time, request_id
            )
            return format_tool_error(message)

        try:
            output = await self._execute(tool, outcome.data)
            result = format_tool_result(output)
        except ToolExecutionError as e:
            logger.info("Tool reported an error", tool=tool_name, code=e.code, error=e.message)
            await self._audit(tool, arguments, AuditStatus.ERROR, e.message, start_time, request_id)
            return format_tool_error(e.message)
        except Exception as e:
            logger.error("Tool execution failed", tool=tool_name, error=str(e), exc_info=True)
            message = str(e) or "Tool execution failed"
            await self._audit(tool, arguments, AuditStatus.ERROR, message, start_time, request_id)
            return format_tool_error(message)

        status = AuditStatus.ERROR if result["isError"] else AuditStatus.SUCCESS
        await self._audit(tool, arguments, status, None, start_time, request_id)
        return result

    async def _execute(self, tool: BoundTool, arguments: dict[str, Any]) -> Any:
        """Run async handlers inline and sync handlers in a worker thread."""
        if inspect.iscoroutinefunction(tool.spec.handler):
            return await tool.execute(arguments)

        # to_thread carries the log context into the worker
        result = await asyncio.to_thread(tool.execute, arguments)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _audit(
        self,
        tool: BoundTool,
        arguments: Any,
        status: AuditStatus,
        error: Optional[str],
        start_time: float,
        request_id: Optional[str],
    ) -> None:
        if self.audit_logger is None:
            return
        entry = self.audit_logger.create_entry(
            tool.context,
            tool.name,
            arguments,
            status,
            error=error,
            execution_time_ms=(time.perf_counter() - start_time) * 1000,
            request_id=request_id,
        )
        await self.audit_logger.log(entry)

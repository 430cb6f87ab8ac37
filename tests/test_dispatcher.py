"""Tests for the JSON-RPC dispatcher."""

import json

import pytest

from shared.errors import INVALID_PARAMS, INVALID_REQUEST, METHOD_NOT_FOUND, PARSE_ERROR, CrmMcpError
from shared.models import ExecutionContext
from shared.schema import NumberSchema, ObjectSchema, StringSchema
from mcp_server.auth import CredentialEntry, IdentityResolver, InMemoryCredentialStore
from mcp_server.dispatcher import McpDispatcher, ServerInfo, load_body, parse_envelope, request_id_of
from mcp_server.registry import ToolSpec, build_registry
from crm.backend import NotFoundError


class Spy:
    """Records every call a handler receives."""

    def __init__(self, result=None, error=None):
        self.calls: list[tuple[ExecutionContext, dict]] = []
        self.result = result if result is not None else {"ok": True}
        self.error = error

    def __call__(self, backend, context, args):
        self.calls.append((context, args))
        if self.error is not None:
            raise self.error
        return self.result


def make_dispatcher(*specs: ToolSpec) -> McpDispatcher:
    store = InMemoryCredentialStore([
        CredentialEntry(id="key-1", organization_id="org_A", owner_user_id="u1", key="k1"),
        CredentialEntry(id="key-9", organization_id="org_B", owner_user_id="u9", key="k9"),
    ])
    return McpDispatcher(
        resolver=IdentityResolver(store),
        registry_factory=lambda context: build_registry(context, specs, backend=None),
        server=ServerInfo(name="fullhouse-crm-mcp", version="0.1.0", protocol_version="2025-11-25"),
    )


def body(method=None, params=None, request_id=1, **extra) -> bytes:
    envelope = {"jsonrpc": "2.0", "id": request_id, **extra}
    if method is not None:
        envelope["method"] = method
    if params is not None:
        envelope["params"] = params
    return json.dumps(envelope).encode()


AUTH = {"x-api-key": "k1"}


def deal_spec(handler) -> ToolSpec:
    return ToolSpec(
        name="getDeal",
        title="Get deal",
        description="Get a deal",
        input_schema=ObjectSchema(properties={
            "dealId": StringSchema(min_length=1),
            "limit": NumberSchema(integer=True, minimum=1, default=5),
        }),
        handler=handler,
    )


class TestEnvelopeHelpers:
    """Tests for envelope parsing helpers."""

    def test_request_id_of(self):
        assert request_id_of({"id": 3}) == 3
        assert request_id_of({"id": "abc"}) == "abc"
        assert request_id_of({"id": True}) is None
        assert request_id_of({"id": {"nested": 1}}) is None
        assert request_id_of([1, 2]) is None

    @pytest.mark.parametrize("envelope", [
        [],
        {"id": 1, "method": "tools/list"},
        {"jsonrpc": "1.0", "id": 1, "method": "tools/list"},
        {"jsonrpc": "2.0", "id": 1},
        {"jsonrpc": "2.0", "id": 1, "method": "  "},
        {"jsonrpc": "2.0", "id": 1, "method": 42},
        {"jsonrpc": "2.0", "id": 1, "method": "tools/call", "params": "name=getDeal"},
    ])
    def test_invalid_envelopes(self, envelope):
        from shared.errors import InvalidRequestError

        with pytest.raises(InvalidRequestError):
            parse_envelope(envelope)

    def test_valid_envelope(self):
        request = parse_envelope({"jsonrpc": "2.0", "method": "tools/list"})

        assert request.method == "tools/list"
        assert request.id is None

    def test_positional_params_are_accepted(self):
        request = parse_envelope({"jsonrpc": "2.0", "id": 1, "method": "tools/list", "params": []})

        assert request.params == []

    @pytest.mark.parametrize("raw", [
        b'{"jsonrpc": "2.0", "id": 1, "method": "tools/list", "x": NaN}',
        b'{"jsonrpc": "2.0", "id": 1, "method": "tools/list", "x": Infinity}',
        b'{"jsonrpc": "2.0", "id": -Infinity, "method": "initialize"}',
    ])
    def test_non_finite_literals_do_not_parse(self, raw):
        assert load_body(raw) == (None, False)

    def test_load_body(self):
        assert load_body(b'{"id": 1.5}') == ({"id": 1.5}, True)
        assert load_body(b"\xff") == (None, False)


class TestDispatcherProtocol:
    """Tests for method routing and protocol errors."""

    @pytest.mark.asyncio
    async def test_initialize(self):
        response = await make_dispatcher().handle(body("initialize"), AUTH)

        assert response.status_code == 200
        assert response.payload == {
            "jsonrpc": "2.0",
            "id": 1,
            "result": {
                "protocolVersion": "2025-11-25",
                "serverInfo": {"name": "fullhouse-crm-mcp", "version": "0.1.0"},
                "capabilities": {"tools": {"listChanged": False}},
            },
        }

    @pytest.mark.asyncio
    async def test_initialized_notification(self):
        response = await make_dispatcher().handle(body("notifications/initialized"), AUTH)

        assert response.status_code == 204
        assert response.payload is None

    @pytest.mark.asyncio
    async def test_tools_list(self):
        response = await make_dispatcher(deal_spec(Spy())).handle(body("tools/list", request_id="r1"), AUTH)

        tools = response.payload["result"]["tools"]
        assert response.payload["id"] == "r1"
        assert [t["name"] for t in tools] == ["getDeal"]
        assert set(tools[0]) == {"name", "title", "description", "inputSchema"}
        assert tools[0]["inputSchema"]["required"] == ["dealId"]

    @pytest.mark.asyncio
    async def test_missing_method(self):
        response = await make_dispatcher().handle(body(), AUTH)

        assert response.status_code == 400
        assert response.payload["error"]["code"] == INVALID_REQUEST
        assert response.payload["id"] == 1
        assert "result" not in response.payload

    @pytest.mark.asyncio
    async def test_unknown_method(self):
        response = await make_dispatcher().handle(body("resources/list"), AUTH)

        assert response.status_code == 404
        assert response.payload["error"] == {
            "code": METHOD_NOT_FOUND,
            "message": "Method not found: resources/list",
        }

    @pytest.mark.asyncio
    async def test_parse_error(self):
        response = await make_dispatcher().handle(b"{not json", AUTH)

        assert response.status_code == 400
        assert response.payload["error"]["code"] == PARSE_ERROR
        assert response.payload["id"] is None

    @pytest.mark.asyncio
    async def test_nan_body_is_a_parse_error(self):
        response = await make_dispatcher().handle(
            b'{"jsonrpc": "2.0", "id": NaN, "method": "initialize"}', AUTH
        )

        assert response.status_code == 400
        assert response.payload["error"]["code"] == PARSE_ERROR
        assert response.payload["id"] is None

    @pytest.mark.asyncio
    async def test_positional_params_ignored_by_tools_list(self):
        response = await make_dispatcher(deal_spec(Spy())).handle(body("tools/list", params=[]), AUTH)

        assert response.status_code == 200
        assert [t["name"] for t in response.payload["result"]["tools"]] == ["getDeal"]

    @pytest.mark.asyncio
    async def test_positional_params_rejected_by_tools_call(self):
        spy = Spy()

        response = await make_dispatcher(deal_spec(spy)).handle(
            body("tools/call", params=["getDeal", {"dealId": "d1"}]), AUTH
        )

        assert response.status_code == 400
        assert response.payload["error"]["code"] == INVALID_PARAMS
        assert spy.calls == []

    @pytest.mark.asyncio
    async def test_auth_checked_before_envelope(self):
        response = await make_dispatcher().handle(body(), {})

        assert response.status_code == 401
        assert response.payload["id"] == 1
        assert response.payload["error"]["data"] == {"error": "Missing API key", "code": "AUTH_MISSING"}

    @pytest.mark.asyncio
    async def test_auth_failure_on_unparsable_body(self):
        response = await make_dispatcher().handle(b"garbage", {"x-api-key": "wrong"})

        assert response.status_code == 401
        assert response.payload["id"] is None
        assert response.payload["error"]["message"] == "Invalid API key"


class TestToolsCall:
    """Tests for the tools/call pipeline."""

    @pytest.mark.asyncio
    async def test_missing_tool_name(self):
        response = await make_dispatcher().handle(body("tools/call", params={}), AUTH)

        assert response.status_code == 400
        assert response.payload["error"]["code"] == INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        response = await make_dispatcher().handle(
            body("tools/call", params={"name": "doesNotExist", "arguments": {}}), AUTH
        )

        assert response.status_code == 400
        assert response.payload["error"] == {"code": INVALID_PARAMS, "message": "Unknown tool: doesNotExist"}

    @pytest.mark.asyncio
    async def test_handler_receives_context_and_normalized_arguments(self):
        spy = Spy(result={"deal": {"id": "d1"}})
        dispatcher = make_dispatcher(deal_spec(spy))

        response = await dispatcher.handle(
            body("tools/call", params={"name": "getDeal", "arguments": {"dealId": "d1", "junk": 1}}),
            AUTH,
        )

        assert response.status_code == 200
        result = response.payload["result"]
        assert result["isError"] is False
        assert result["structuredContent"] == {"deal": {"id": "d1"}}
        assert spy.calls == [
            (ExecutionContext(organization_id="org_A", acting_user_id="u1"), {"dealId": "d1", "limit": 5}),
        ]

    @pytest.mark.asyncio
    async def test_context_follows_the_key(self):
        spy = Spy()
        dispatcher = make_dispatcher(deal_spec(spy))
        params = {"name": "getDeal", "arguments": {"dealId": "d1"}}

        await dispatcher.handle(body("tools/call", params=params), {"x-api-key": "k1"})
        await dispatcher.handle(body("tools/call", params=params), {"authorization": "Bearer k9"})

        assert [c[0].organization_id for c in spy.calls] == ["org_A", "org_B"]
        assert [c[0].acting_user_id for c in spy.calls] == ["u1", "u9"]

    @pytest.mark.parametrize("arguments", [
        {},
        {"dealId": ""},
        {"dealId": 42},
        {"dealId": "d1", "limit": 0},
        "not-an-object",
        [1, 2],
    ])
    @pytest.mark.asyncio
    async def test_validation_rejection_never_executes(self, arguments):
        spy = Spy()
        dispatcher = make_dispatcher(deal_spec(spy))

        response = await dispatcher.handle(
            body("tools/call", params={"name": "getDeal", "arguments": arguments}), AUTH
        )

        assert response.status_code == 200
        assert response.payload["result"]["isError"] is True
        assert spy.calls == []

    @pytest.mark.asyncio
    async def test_validation_message(self):
        response = await make_dispatcher(deal_spec(Spy())).handle(
            body("tools/call", params={"name": "getDeal", "arguments": {}}), AUTH
        )

        assert response.payload["result"]["structuredContent"] == {"error": "dealId: Required"}

    @pytest.mark.asyncio
    async def test_null_arguments_default_to_empty_object(self):
        spy = Spy()
        spec = ToolSpec(name="getMe", title="Me", description="Me", handler=spy)

        response = await make_dispatcher(spec).handle(
            body("tools/call", params={"name": "getMe", "arguments": None}), AUTH
        )

        assert response.payload["result"]["isError"] is False
        assert spy.calls[0][1] == {}

    @pytest.mark.parametrize("error, message", [
        (NotFoundError("Deal", "d404"), "Deal not found: d404"),
        (RuntimeError("database unavailable"), "database unavailable"),
        (RuntimeError(), "Tool execution failed"),
        (CrmMcpError("odd"), "odd"),
    ])
    @pytest.mark.asyncio
    async def test_handler_exceptions_are_in_band(self, error, message):
        spy = Spy(error=error)

        response = await make_dispatcher(deal_spec(spy)).handle(
            body("tools/call", params={"name": "getDeal", "arguments": {"dealId": "d404"}}), AUTH
        )

        assert response.status_code == 200
        assert response.payload["id"] == 1
        assert response.payload["result"]["isError"] is True
        assert response.payload["result"]["structuredContent"] == {"error": message}
        assert len(spy.calls) == 1

    @pytest.mark.asyncio
    async def test_async_handler(self):
        calls = []

        async def handler(backend, context, args):
            calls.append(args)
            return {"async": True}

        response = await make_dispatcher(deal_spec(handler)).handle(
            body("tools/call", params={"name": "getDeal", "arguments": {"dealId": "d1"}}), AUTH
        )

        assert response.payload["result"]["structuredContent"] == {"async": True}
        assert calls == [{"dealId": "d1", "limit": 5}]

    @pytest.mark.asyncio
    async def test_sync_handler_sees_log_context(self):
        import structlog

        seen = []

        def handler(backend, context, args):
            seen.append(structlog.contextvars.get_contextvars())
            return {}

        await make_dispatcher(deal_spec(handler)).handle(
            body("tools/call", params={"name": "getDeal", "arguments": {"dealId": "d1"}}), AUTH
        )
        structlog.contextvars.clear_contextvars()

        assert seen[0]["organization_id"] == "org_A"
        assert seen[0]["rpc_method"] == "tools/call"

    @pytest.mark.asyncio
    async def test_list_payload(self):
        spec = ToolSpec(name="getMe", title="Me", description="Me", handler=lambda b, c, a: [1, 2])

        response = await make_dispatcher(spec).handle(body("tools/call", params={"name": "getMe"}), AUTH)

        result = response.payload["result"]
        assert result["isError"] is False
        assert "structuredContent" not in result

    @pytest.mark.asyncio
    async def test_calls_are_audited(self, tmp_path):
        from mcp_server.audit import AuditLogger

        audit = AuditLogger(log_path=str(tmp_path / "audit.log"))
        dispatcher = make_dispatcher(deal_spec(Spy()))
        dispatcher.audit_logger = audit

        await dispatcher.handle(body("tools/call", params={"name": "getDeal", "arguments": {"dealId": "d1"}}), AUTH)
        await dispatcher.handle(body("tools/call", params={"name": "getDeal", "arguments": {}}), AUTH)
        await dispatcher.handle(body("tools/call", params={"name": "nope"}), AUTH)
        await audit.flush()

        lines = [json.loads(line) for line in (tmp_path / "audit.log").read_text().splitlines()]
        assert [line["status"] for line in lines] == ["success", "validation_error"]
        assert all(line["organization_id"] == "org_A" for line in lines)

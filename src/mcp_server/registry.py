"""Tool Registry for the agent endpoint.

The tool catalogue is a fixed, closed set of ``ToolSpec`` values declared at
import time. For every request the catalogue is bound to that request's
``ExecutionContext``, producing a fresh ``ToolRegistry`` of ``BoundTool``
instances. Nothing is shared between two registries except the immutable
specs themselves.
"""

from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Optional

from jsonschema.exceptions import SchemaError
from pydantic import BaseModel, ConfigDict, Field

from shared.errors import CrmMcpError, DuplicateToolError
from shared.logging import get_logger
from shared.models import ExecutionContext, ToolSummary
from shared.schema import (
    ObjectSchema,
    check_json_schema,
    to_json_schema,
    validate,
    validate_schema,
)

logger = get_logger(__name__)


# handler(backend, context, validated_arguments) -> JSON-serializable result
ToolHandler = Callable[[Any, ExecutionContext, dict[str, Any]], Any]


class ToolSpec(BaseModel):
    """
    Static definition of a tool.

    Declarative and context-free: the handler receives the execution context
    as an explicit argument when a bound tool runs.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Unique tool name")
    title: str
    description: str = Field(..., description="Clear description for LLM usage")
    input_schema: ObjectSchema = Field(default_factory=ObjectSchema)
    handler: ToolHandler
    examples: tuple[dict[str, Any], ...] = ()

    def portable_schema(self) -> dict[str, Any]:
        return to_json_schema(self.input_schema)


class BoundTool(BaseModel):
    """A tool spec bound to one request's context and backend."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    spec: ToolSpec
    context: ExecutionContext
    backend: Any

    @property
    def name(self) -> str:
        return self.spec.name

    def execute(self, arguments: dict[str, Any]) -> Any:
        """Run the handler with already-validated arguments."""
        return self.spec.handler(self.backend, self.context, arguments)


class ToolRegistry:
    """
    Per-request catalogue of bound tools.

    Responsibilities:
    - Lookup tools by name
    - Describe tools for ``tools/list``
    """

    def __init__(self, context: ExecutionContext, tools: Iterable[BoundTool]) -> None:
        self._context = context
        self._tools = tuple(tools)
        self._by_name: Mapping[str, BoundTool] = MappingProxyType(
            {tool.name: tool for tool in self._tools}
        )

    @property
    def context(self) -> ExecutionContext:
        return self._context

    @property
    def tools(self) -> tuple[BoundTool, ...]:
        return self._tools

    @property
    def tool_by_name(self) -> Mapping[str, BoundTool]:
        return self._by_name

    def get(self, tool_name: str) -> Optional[BoundTool]:
        return self._by_name.get(tool_name)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, tool_name: object) -> bool:
        return tool_name in self._by_name

    def list_tools(self) -> list[ToolSummary]:
        """Describe every tool with its portable input schema."""
        return [
            ToolSummary(
                name=tool.spec.name,
                title=tool.spec.title,
                description=tool.spec.description,
                input_schema=tool.spec.portable_schema(),
            )
            for tool in self._tools
        ]


def build_registry(
    context: ExecutionContext,
    specs: Iterable[ToolSpec],
    backend: Any,
) -> ToolRegistry:
    """
    Bind a tool catalogue to one execution context.

    Args:
        context: Resolved identity for the request
        specs: Tool catalogue
        backend: Tool implementation every handler delegates to

    Returns:
        A fresh registry; no state is shared with other builds

    Raises:
        DuplicateToolError: If two specs share a name
    """
    seen: set[str] = set()
    bound: list[BoundTool] = []
    for spec in specs:
        if spec.name in seen:
            raise DuplicateToolError(spec.name)
        seen.add(spec.name)
        bound.append(BoundTool(spec=spec, context=context, backend=backend))
    return ToolRegistry(context, bound)


def validate_catalogue(specs: Iterable[ToolSpec]) -> None:
    """
    Check a catalogue at startup.

    Names must be unique, every input schema must render to a valid
    JSON Schema 2020-12 document, and every declared example must be
    accepted by both the validator and the rendered document.

    Raises:
        DuplicateToolError: On a repeated name
        CrmMcpError: On a broken schema or example
    """
    seen: set[str] = set()
    for spec in specs:
        if spec.name in seen:
            raise DuplicateToolError(spec.name)
        seen.add(spec.name)

        document = spec.portable_schema()
        try:
            check_json_schema(document)
        except SchemaError as e:
            raise CrmMcpError(
                f"Tool '{spec.name}' has an invalid input schema: {e}",
                code="INVALID_CATALOGUE",
            ) from e

        for example in spec.examples:
            outcome = validate(spec.input_schema, example)
            is_valid, errors = validate_schema(example, document)
            if not outcome.ok or not is_valid:
                raise CrmMcpError(
                    f"Tool '{spec.name}' rejects its own example {example}: "
                    f"{'; '.join(outcome.issues + errors)}",
                    code="INVALID_CATALOGUE",
                )

    logger.info("Tool catalogue validated", tool_count=len(seen))

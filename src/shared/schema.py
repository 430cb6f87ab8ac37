"""Declarative input schemas.

A tool's input is described once, as a tree of frozen schema nodes. Two
functions consume that description:

- ``to_json_schema`` renders it as a portable JSON Schema 2020-12 document
  for ``tools/list``;
- ``validate`` checks call arguments with jsonschema against the same
  rendering, then normalizes them.

Constructs the portable format cannot express are widened to the nearest
unconstrained form instead of failing the conversion. Every widening is
logged and counted so the gap stays visible.
"""

import copy
import math
from collections import Counter
from typing import Any, Callable, Iterable, Optional, Union

from jsonschema import Draft202012Validator, ValidationError, validators
from pydantic import BaseModel, ConfigDict, Field

from shared.logging import get_logger

logger = get_logger(__name__)

DRAFT_2020_12 = "https://json-schema.org/draft/2020-12/schema"


class SchemaNode(BaseModel):
    """Common options shared by every schema node."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    description: Optional[str] = None
    optional: bool = False
    nullable: bool = False
    default: Any = None

    @property
    def has_default(self) -> bool:
        return "default" in self.model_fields_set


class AnySchema(SchemaNode):
    """Accepts any JSON value."""


class StringSchema(SchemaNode):
    min_length: Optional[int] = Field(default=None, ge=0)
    max_length: Optional[int] = Field(default=None, ge=0)
    pattern: Optional[str] = None
    format: Optional[str] = None  # email, uuid, date, date-time


class NumberSchema(SchemaNode):
    integer: bool = False
    minimum: Optional[Union[int, float]] = None
    maximum: Optional[Union[int, float]] = None


class BooleanSchema(SchemaNode):
    pass


class EnumSchema(SchemaNode):
    values: tuple[str, ...] = Field(..., min_length=1)


class ArraySchema(SchemaNode):
    items: SchemaNode = Field(default_factory=AnySchema)
    min_items: Optional[int] = Field(default=None, ge=0)
    max_items: Optional[int] = Field(default=None, ge=0)


class Refinement(BaseModel):
    """Cross-field check on a validated object; not expressible as JSON Schema."""
    model_config = ConfigDict(frozen=True)

    check: Callable[[dict[str, Any]], bool]
    message: str


class ObjectSchema(SchemaNode):
    properties: dict[str, SchemaNode] = Field(default_factory=dict)
    refinements: tuple[Refinement, ...] = ()


class CustomSchema(SchemaNode):
    """Arbitrary predicate over a value. Has no portable rendering."""
    check: Callable[[Any], bool]
    message: str = "Invalid input"


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

_widenings: Counter = Counter()


def widening_count() -> int:
    """Total number of constructs widened since start (or the last reset)."""
    return sum(_widenings.values())


def widenings() -> dict[str, int]:
    """Widenings per construct kind."""
    return dict(_widenings)


def reset_widenings() -> None:
    _widenings.clear()


def _widen(kind: str, path: str) -> dict[str, Any]:
    _widenings[kind] += 1
    logger.warning("Schema construct widened to unconstrained", construct=kind, path=path)
    return {}


def _string_to_json(node: StringSchema, path: str, portable: bool) -> dict[str, Any]:
    out: dict[str, Any] = {"type": "string"}
    if node.min_length is not None:
        out["minLength"] = node.min_length
    if node.max_length is not None:
        out["maxLength"] = node.max_length
    if node.pattern is not None:
        out["pattern"] = node.pattern
    if node.format is not None:
        out["format"] = node.format
    return out


def _number_to_json(node: NumberSchema, path: str, portable: bool) -> dict[str, Any]:
    out: dict[str, Any] = {"type": "integer" if node.integer else "number"}
    if node.minimum is not None:
        out["minimum"] = node.minimum
    if node.maximum is not None:
        out["maximum"] = node.maximum
    return out


def _boolean_to_json(node: BooleanSchema, path: str, portable: bool) -> dict[str, Any]:
    return {"type": "boolean"}


def _enum_to_json(node: EnumSchema, path: str, portable: bool) -> dict[str, Any]:
    return {"type": "string", "enum": list(node.values)}


def _array_to_json(node: ArraySchema, path: str, portable: bool) -> dict[str, Any]:
    out: dict[str, Any] = {"type": "array", "items": _convert(node.items, f"{path}[]", portable)}
    if node.min_items is not None:
        out["minItems"] = node.min_items
    if node.max_items is not None:
        out["maxItems"] = node.max_items
    return out


def _object_to_json(node: ObjectSchema, path: str, portable: bool) -> dict[str, Any]:
    properties = {
        key: _convert(child, f"{path}.{key}", portable)
        for key, child in node.properties.items()
    }
    required = [
        key for key, child in node.properties.items()
        if not child.optional and not child.has_default
    ]
    out: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        out["required"] = required
    if portable:
        for _ in node.refinements:
            # The object itself still renders; only the cross-field check is lost.
            _widen("refinement", path)
        out["additionalProperties"] = False
    return out


def _any_to_json(node: AnySchema, path: str, portable: bool) -> dict[str, Any]:
    return {}


_CONVERTERS: dict[type, Callable[[Any, str, bool], dict[str, Any]]] = {
    AnySchema: _any_to_json,
    StringSchema: _string_to_json,
    NumberSchema: _number_to_json,
    BooleanSchema: _boolean_to_json,
    EnumSchema: _enum_to_json,
    ArraySchema: _array_to_json,
    ObjectSchema: _object_to_json,
}


def _convert(node: SchemaNode, path: str, portable: bool) -> dict[str, Any]:
    converter = _CONVERTERS.get(type(node))
    if converter is None:
        out = _widen(type(node).__name__, path) if portable else {}
    else:
        out = converter(node, path, portable)

    if node.nullable and "type" in out:
        out["type"] = [out["type"], "null"]
        if "enum" in out:
            out["enum"] = [*out["enum"], None]
    if node.description:
        out["description"] = node.description
    if node.has_default:
        out["default"] = copy.deepcopy(node.default)
    return out


def to_json_schema(node: SchemaNode) -> dict[str, Any]:
    """
    Render a schema description as a JSON Schema 2020-12 document.

    Never raises for unsupported constructs; they are widened and counted.

    Args:
        node: Root schema node (usually an ObjectSchema)

    Returns:
        JSON Schema document with ``$schema`` on the root
    """
    return {"$schema": DRAFT_2020_12, **_convert(node, "$", portable=True)}


def check_json_schema(document: dict[str, Any]) -> None:
    """Raise ``jsonschema.SchemaError`` if the document is not valid 2020-12."""
    Draft202012Validator.check_schema(document)


def validate_schema(data: Any, schema: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate data against a JSON Schema document.

    Args:
        data: The data to validate
        schema: JSON Schema to validate against

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    if not schema:
        return True, []

    validator = Draft202012Validator(schema, format_checker=Draft202012Validator.FORMAT_CHECKER)
    errors = list(validator.iter_errors(data))

    if not errors:
        return True, []

    error_messages = [
        f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
        for e in errors
    ]

    return False, error_messages


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _is_finite(instance: Any) -> bool:
    # ints never overflow here; only floats can carry NaN or infinity
    return isinstance(instance, int) or math.isfinite(instance)


def _is_number(checker: Any, instance: Any) -> bool:
    if isinstance(instance, bool) or not isinstance(instance, (int, float)):
        return False
    return _is_finite(instance)


def _is_integer(checker: Any, instance: Any) -> bool:
    if not _is_number(checker, instance):
        return False
    return isinstance(instance, int) or instance.is_integer()


# Draft 2020-12 with NaN and infinities rejected as numbers.
ArgumentValidator = validators.extend(
    Draft202012Validator,
    type_checker=Draft202012Validator.TYPE_CHECKER.redefine_many({
        "number": _is_number,
        "integer": _is_integer,
    }),
)


class ValidationOutcome(BaseModel):
    """Result of validating a value against a schema description."""
    ok: bool
    data: Any = None
    issues: list[str] = Field(default_factory=list)


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _at(path: Iterable[Any], message: str) -> str:
    path = list(path)
    return f"{'.'.join(str(p) for p in path)}: {message}" if path else message


def _type_message(expected: Any, instance: Any) -> str:
    if isinstance(expected, list):
        expected = expected[0]
    numeric = isinstance(instance, (int, float)) and not isinstance(instance, bool)
    if expected in ("number", "integer") and numeric and not _is_finite(instance):
        return "Number must be finite"
    if expected == "integer" and isinstance(instance, float):
        return "Expected integer, received float"
    return f"Expected {expected}, received {_type_name(instance)}"


def _message(error: ValidationError) -> str:
    kind, value, instance = error.validator, error.validator_value, error.instance
    if kind == "type":
        return _type_message(value, instance)
    if kind == "enum":
        expected = " | ".join(f"'{v}'" for v in value if v is not None)
        return f"Invalid enum value. Expected {expected}, received '{instance}'"
    if kind == "minimum":
        return f"Number must be greater than or equal to {value:g}"
    if kind == "maximum":
        return f"Number must be less than or equal to {value:g}"
    if kind == "minLength":
        return f"String must contain at least {value} character(s)"
    if kind == "maxLength":
        return f"String must contain at most {value} character(s)"
    if kind == "pattern":
        return "Invalid string: does not match pattern"
    if kind == "format":
        return f"Invalid {value}"
    if kind == "minItems":
        return f"Array must contain at least {value} element(s)"
    if kind == "maxItems":
        return f"Array must contain at most {value} element(s)"
    return error.message


def _schema_issues(node: SchemaNode, value: Any) -> list[str]:
    """Issues reported by jsonschema, at most one per location."""
    validator = ArgumentValidator(
        _convert(node, "$", portable=False),
        format_checker=Draft202012Validator.FORMAT_CHECKER,
    )
    issues: list[str] = []
    seen: set[tuple] = set()
    for error in validator.iter_errors(value):
        path = tuple(error.absolute_path)
        if error.validator == "required":
            if (path, "required") in seen:
                continue
            seen.add((path, "required"))
            missing = [key for key in error.validator_value if key not in error.instance]
            issues.extend(_at((*path, key), "Required") for key in missing)
            continue
        if path in seen:
            continue
        seen.add(path)
        issues.append(_at(path, _message(error)))
    return issues


def _normalize(node: SchemaNode, value: Any, path: tuple, issues: list[str]) -> Any:
    """
    Apply what JSON Schema cannot: defaults, unknown-key stripping, integral
    floats to ints, custom predicates and object refinements.

    Runs only on values jsonschema already accepted.
    """
    if value is None and node.nullable:
        return None

    if isinstance(node, CustomSchema):
        if not node.check(value):
            issues.append(_at(path, node.message))
        return value

    if isinstance(node, NumberSchema) and node.integer and isinstance(value, float):
        return int(value)

    if isinstance(node, ArraySchema) and isinstance(value, list):
        return [_normalize(node.items, item, (*path, i), issues) for i, item in enumerate(value)]

    if isinstance(node, ObjectSchema) and isinstance(value, dict):
        before = len(issues)
        out: dict[str, Any] = {}
        for key, child in node.properties.items():
            if key in value:
                out[key] = _normalize(child, value[key], (*path, key), issues)
            elif child.has_default:
                out[key] = copy.deepcopy(child.default)
        if len(issues) == before:
            for refinement in node.refinements:
                if not refinement.check(out):
                    issues.append(_at(path, refinement.message))
        return out

    return value


def validate(node: SchemaNode, value: Any) -> ValidationOutcome:
    """
    Validate a value against a schema description.

    The node tree is rendered to JSON Schema and checked with jsonschema
    (formats included). Accepted values then get defaults filled in and
    unknown object keys dropped. Never raises for bad input; problems come
    back as issue messages.

    Args:
        node: Schema description
        value: Value to check

    Returns:
        ValidationOutcome with the normalized data when ``ok``
    """
    issues = _schema_issues(node, value)
    if issues:
        return ValidationOutcome(ok=False, issues=issues)

    data = _normalize(node, value, (), issues)
    if issues:
        return ValidationOutcome(ok=False, issues=issues)
    return ValidationOutcome(ok=True, data=data)

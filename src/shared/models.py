"""Core data models for the CRM agent endpoint.

This module defines the shared data structures used across the service:
identities, credential records, JSON-RPC envelopes and audit entries.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

JSONRPC_VERSION = "2.0"

RequestId = Union[str, int, float, None]


class ExecutionContext(BaseModel):
    """
    Resolved identity for a single request.

    Built by the identity resolver from an API key and bound into exactly
    one tool registry. Frozen: the organization and acting user cannot be
    reassigned once a registry has captured the context.
    """
    model_config = ConfigDict(frozen=True)

    organization_id: str = Field(..., min_length=1)
    acting_user_id: str = Field(..., min_length=1)


class ApiKeyIdentity(BaseModel):
    """What a presented API key claims about itself once authenticated."""
    model_config = ConfigDict(frozen=True)

    api_key_id: str
    organization_id: str
    key_prefix: str = ""


class CredentialRecord(BaseModel):
    """Credential record owned by the external credential store."""
    model_config = ConfigDict(frozen=True)

    id: str
    organization_id: str
    owner_user_id: Optional[str] = None


class JsonRpcRequest(BaseModel):
    """
    Inbound JSON-RPC envelope.

    ``id`` is opaque and echoed verbatim; a missing id is echoed as null.
    ``params`` may be by-name (object) or by-position (array); methods that
    take no params ignore either.
    """
    jsonrpc: str
    id: RequestId = None
    method: str
    params: Optional[Union[dict[str, Any], list[Any]]] = None


class ToolSummary(BaseModel):
    """One entry of a ``tools/list`` result."""
    name: str
    title: str
    description: str
    input_schema: dict[str, Any] = Field(..., serialization_alias="inputSchema")


class AuditStatus(str, Enum):
    """Outcome of an audited tool call."""
    SUCCESS = "success"
    VALIDATION_ERROR = "validation_error"
    ERROR = "error"


class AuditEntry(BaseModel):
    """
    Audit log entry for tool invocations.

    Captures who called which tool, with what (redacted) arguments, and how
    it ended.
    """
    id: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    # Identity
    organization_id: str
    acting_user_id: str

    # Call
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)

    # Outcome
    status: AuditStatus
    error: Optional[str] = None
    execution_time_ms: float = 0

    request_id: Optional[str] = None


class DiscoveryDocument(BaseModel):
    """Static document served on ``GET`` of the endpoint."""
    ok: bool = True
    name: str
    endpoint: str
    auth: str
    protocol_version: str = Field(..., serialization_alias="protocolVersion")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    tool_count: int
    schema_widenings: int
    schema_widenings_by_kind: dict[str, int] = Field(default_factory=dict)

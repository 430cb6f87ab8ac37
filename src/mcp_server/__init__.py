"""Agent endpoint - identity resolution, per-request tool registries, and JSON-RPC dispatch.

The endpoint is the only component that talks to agent clients. It resolves
the caller from an API key, binds the CRM tools to that caller, validates
arguments, runs the tool and audits the call.
"""

from mcp_server.registry import BoundTool, ToolRegistry, ToolSpec, build_registry
from mcp_server.auth import IdentityResolver, InMemoryCredentialStore, extract_api_key
from mcp_server.audit import AuditLogger
from mcp_server.dispatcher import McpDispatcher

__all__ = [
    "BoundTool",
    "ToolRegistry",
    "ToolSpec",
    "build_registry",
    "IdentityResolver",
    "InMemoryCredentialStore",
    "extract_api_key",
    "AuditLogger",
    "McpDispatcher",
]

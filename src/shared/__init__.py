"""Shared models, errors, schema vocabulary, config and logging for the CRM agent endpoint."""

from shared.models import (
    ExecutionContext,
    JsonRpcRequest,
    ToolSummary,
    AuditEntry,
    AuditStatus,
)
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "ExecutionContext",
    "JsonRpcRequest",
    "ToolSummary",
    "AuditEntry",
    "AuditStatus",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]

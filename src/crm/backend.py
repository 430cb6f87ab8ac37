"""Tool implementation interface for the CRM domain.

The agent endpoint never touches CRM data itself. Every tool delegates to one
``CrmBackend`` method, and every method receives the resolved
``ExecutionContext`` explicitly: a backend must scope all reads and writes to
``context.organization_id`` and attribute changes to
``context.acting_user_id``. Tool arguments never carry an identity.

Methods are synchronous. The dispatcher runs synchronous tools in a worker
thread, so blocking database or HTTP calls are fine here.
"""

from typing import Any, Optional, Protocol, runtime_checkable

from shared.errors import ToolExecutionError
from shared.models import ExecutionContext


class CrmError(ToolExecutionError):
    """Business-level failure reported back to the agent in-band."""

    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INVALID = "INVALID"

    def __init__(self, message: str, *, code: str = INVALID) -> None:
        super().__init__(message, code=code)


class NotFoundError(CrmError):
    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} not found: {entity_id}", code=CrmError.NOT_FOUND)
        self.entity = entity
        self.entity_id = entity_id


@runtime_checkable
class CrmBackend(Protocol):
    """Operations the CRM tools are allowed to perform."""

    # Organization
    def get_organization(self, context: ExecutionContext) -> dict[str, Any]: ...

    # Boards
    def list_boards(self, context: ExecutionContext, *, limit: int) -> list[dict[str, Any]]: ...

    def list_board_stages(self, context: ExecutionContext, board_id: str) -> list[dict[str, Any]]: ...

    # Deals
    def list_deals(
        self,
        context: ExecutionContext,
        *,
        query: Optional[str] = None,
        board_id: Optional[str] = None,
        stage_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]: ...

    def get_deal(self, context: ExecutionContext, deal_id: str) -> dict[str, Any]: ...

    def create_deal(
        self,
        context: ExecutionContext,
        *,
        title: str,
        board_id: str,
        value: float = 0,
        stage_id: Optional[str] = None,
        contact_id: Optional[str] = None,
    ) -> dict[str, Any]: ...

    def update_deal(
        self,
        context: ExecutionContext,
        deal_id: str,
        *,
        title: Optional[str] = None,
        value: Optional[float] = None,
    ) -> dict[str, Any]: ...

    def move_deal_stage(
        self,
        context: ExecutionContext,
        deal_id: str,
        *,
        to_stage_id: Optional[str] = None,
        to_stage_label: Optional[str] = None,
        mark: Optional[str] = None,
    ) -> dict[str, Any]: ...

    def mark_deal_won(self, context: ExecutionContext, deal_id: str) -> dict[str, Any]: ...

    def mark_deal_lost(
        self, context: ExecutionContext, deal_id: str, *, loss_reason: Optional[str] = None
    ) -> dict[str, Any]: ...

    def assign_deal(
        self, context: ExecutionContext, deal_id: str, *, new_owner_id: str
    ) -> dict[str, Any]: ...

    # Contacts and companies
    def search_contacts(
        self,
        context: ExecutionContext,
        *,
        query: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]: ...

    def get_contact(self, context: ExecutionContext, contact_id: str) -> dict[str, Any]: ...

    def upsert_contact(
        self,
        context: ExecutionContext,
        *,
        name: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        role: Optional[str] = None,
        company_id: Optional[str] = None,
    ) -> dict[str, Any]: ...

    def list_companies(
        self, context: ExecutionContext, *, query: Optional[str] = None, limit: int = 20
    ) -> list[dict[str, Any]]: ...

    # Activities
    def list_activities(
        self,
        context: ExecutionContext,
        *,
        deal_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]: ...

    def create_activity(
        self,
        context: ExecutionContext,
        *,
        title: str,
        type: str,
        date: Optional[str] = None,
        description: Optional[str] = None,
        deal_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        completed: bool = False,
    ) -> dict[str, Any]: ...

    # Analysis
    def analyze_pipeline(self, context: ExecutionContext, board_id: str) -> dict[str, Any]: ...

    def get_board_metrics(self, context: ExecutionContext, board_id: str) -> dict[str, Any]: ...

    def list_stagnant_deals(
        self,
        context: ExecutionContext,
        *,
        board_id: Optional[str] = None,
        days: int = 7,
        limit: int = 20,
    ) -> list[dict[str, Any]]: ...

    def list_overdue_deals(
        self,
        context: ExecutionContext,
        *,
        board_id: Optional[str] = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]: ...

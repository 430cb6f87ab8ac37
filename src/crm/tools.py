"""CRM tool catalogue.

Every tool an agent can call is declared here as a ``ToolSpec``: name, title,
description, input schema and a handler that delegates to one
``CrmBackend`` method. Handlers receive the bound execution context
explicitly and pass it through; arguments never carry an identity.
"""

from typing import Any

from shared.models import ExecutionContext
from shared.schema import (
    BooleanSchema,
    EnumSchema,
    NumberSchema,
    ObjectSchema,
    Refinement,
    StringSchema,
)
from mcp_server.registry import ToolRegistry, ToolSpec, build_registry
from crm.backend import CrmBackend

DEAL_STATUSES = ("open", "won", "lost")
DEAL_MARKS = ("won", "lost")
ACTIVITY_TYPES = ("CALL", "MEETING", "EMAIL", "TASK", "NOTE")


def _id(description: str, **kwargs: Any) -> StringSchema:
    return StringSchema(min_length=1, description=description, **kwargs)


def _limit(default: int, maximum: int = 250) -> NumberSchema:
    return NumberSchema(
        integer=True,
        minimum=1,
        maximum=maximum,
        default=default,
        description=f"Maximum results to return (1-{maximum})",
    )


def _items(key: str, items: list[dict[str, Any]]) -> dict[str, Any]:
    return {key: items, "count": len(items)}


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

def get_me(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    organization = backend.get_organization(context)
    return {
        "organizationId": context.organization_id,
        "organizationName": organization.get("name"),
        "actingUserId": context.acting_user_id,
    }


def list_boards(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    return _items("boards", backend.list_boards(context, limit=args["limit"]))


def list_board_stages(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    return _items("stages", backend.list_board_stages(context, args["boardId"]))


def list_deals(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    deals = backend.list_deals(
        context,
        query=args.get("query"),
        board_id=args.get("boardId"),
        stage_id=args.get("stageId"),
        contact_id=args.get("contactId"),
        status=args.get("status"),
        limit=args["limit"],
    )
    return _items("deals", deals)


def get_deal(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    return {"deal": backend.get_deal(context, args["dealId"])}


def create_deal(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    deal = backend.create_deal(
        context,
        title=args["title"],
        board_id=args["boardId"],
        value=args["value"],
        stage_id=args.get("stageId"),
        contact_id=args.get("contactId"),
    )
    return {"success": True, "deal": deal}


def update_deal(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    deal = backend.update_deal(
        context, args["dealId"], title=args.get("title"), value=args.get("value")
    )
    return {"success": True, "deal": deal}


def move_deal_stage(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    moved = backend.move_deal_stage(
        context,
        args["dealId"],
        to_stage_id=args.get("toStageId"),
        to_stage_label=args.get("toStageLabel"),
        mark=args.get("mark"),
    )
    return {"success": True, **moved}


def mark_deal_as_won(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    return {"success": True, "deal": backend.mark_deal_won(context, args["dealId"])}


def mark_deal_as_lost(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    deal = backend.mark_deal_lost(context, args["dealId"], loss_reason=args.get("lossReason"))
    return {"success": True, "deal": deal}


def assign_deal(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    return backend.assign_deal(context, args["dealId"], new_owner_id=args["newOwnerId"])


def search_contacts(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    contacts = backend.search_contacts(
        context,
        query=args.get("query"),
        email=args.get("email"),
        phone=args.get("phone"),
        limit=args["limit"],
    )
    return _items("contacts", contacts)


def get_contact(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    return {"contact": backend.get_contact(context, args["contactId"])}


def upsert_contact(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    return backend.upsert_contact(
        context,
        name=args["name"],
        email=args.get("email"),
        phone=args.get("phone"),
        role=args.get("role"),
        company_id=args.get("companyId"),
    )


def list_companies(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    return _items("companies", backend.list_companies(context, query=args.get("query"), limit=args["limit"]))


def list_activities(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    activities = backend.list_activities(
        context,
        deal_id=args.get("dealId"),
        contact_id=args.get("contactId"),
        type=args.get("type"),
        limit=args["limit"],
    )
    return _items("activities", activities)


def create_activity(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    activity = backend.create_activity(
        context,
        title=args["title"],
        type=args["type"],
        date=args.get("date"),
        description=args.get("description"),
        deal_id=args.get("dealId"),
        contact_id=args.get("contactId"),
        completed=args["completed"],
    )
    return {"success": True, "activity": activity}


def create_task(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    task = backend.create_activity(
        context,
        title=args["title"],
        type="TASK",
        date=args["dueDate"],
        description=args.get("description"),
        deal_id=args.get("dealId"),
        contact_id=args.get("contactId"),
        completed=False,
    )
    return {"success": True, "task": task}


def analyze_pipeline(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    return backend.analyze_pipeline(context, args["boardId"])


def get_board_metrics(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    return backend.get_board_metrics(context, args["boardId"])


def list_stagnant_deals(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    deals = backend.list_stagnant_deals(
        context, board_id=args.get("boardId"), days=args["days"], limit=args["limit"]
    )
    return {**_items("deals", deals), "totalValueAtRisk": sum(d["value"] for d in deals)}


def list_overdue_deals(backend: CrmBackend, context: ExecutionContext, args: dict[str, Any]) -> dict[str, Any]:
    return _items("deals", backend.list_overdue_deals(context, board_id=args.get("boardId"), limit=args["limit"]))


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------

def _exactly_one_target(args: dict[str, Any]) -> bool:
    return ("toStageId" in args) != ("toStageLabel" in args)


CRM_TOOLS: tuple[ToolSpec, ...] = (
    ToolSpec(
        name="getMe",
        title="Who am I",
        description="Return the organization and user this API key acts as.",
        handler=get_me,
        examples=({},),
    ),
    ToolSpec(
        name="listBoards",
        title="List boards",
        description="List the sales boards (pipelines) of the organization.",
        input_schema=ObjectSchema(properties={"limit": _limit(50)}),
        handler=list_boards,
        examples=({}, {"limit": 5}),
    ),
    ToolSpec(
        name="listBoardStages",
        title="List board stages",
        description="List the stages of a board in pipeline order. Accepts the board id or its key.",
        input_schema=ObjectSchema(properties={"boardId": _id("Board id or key (e.g. 'sales')")}),
        handler=list_board_stages,
        examples=({"boardId": "sales"},),
    ),
    ToolSpec(
        name="listDeals",
        title="List deals",
        description="List deals, optionally filtered by text, board, stage, contact or status. Most recently updated first.",
        input_schema=ObjectSchema(properties={
            "query": StringSchema(optional=True, description="Text to search in the deal title"),
            "boardId": _id("Board id or key", optional=True),
            "stageId": _id("Stage id", optional=True),
            "contactId": _id("Contact id", optional=True),
            "status": EnumSchema(values=DEAL_STATUSES, optional=True, description="Deal status"),
            "limit": _limit(50),
        }),
        handler=list_deals,
        examples=({}, {"status": "open", "limit": 10}),
    ),
    ToolSpec(
        name="getDeal",
        title="Get deal",
        description="Get a deal by id.",
        input_schema=ObjectSchema(properties={"dealId": _id("Deal id")}),
        handler=get_deal,
    ),
    ToolSpec(
        name="createDeal",
        title="Create deal",
        description="Create a deal on a board. Lands on the first stage unless a stage is given.",
        input_schema=ObjectSchema(properties={
            "title": StringSchema(min_length=1, max_length=200, description="Deal title"),
            "boardId": _id("Board id or key"),
            "value": NumberSchema(minimum=0, default=0, description="Deal value"),
            "stageId": _id("Initial stage id", optional=True),
            "contactId": _id("Contact id", optional=True),
        }),
        handler=create_deal,
        examples=({"title": "New license", "boardId": "sales", "value": 1500},),
    ),
    ToolSpec(
        name="updateDeal",
        title="Update deal",
        description="Update the title and/or value of a deal.",
        input_schema=ObjectSchema(properties={
            "dealId": _id("Deal id"),
            "title": StringSchema(min_length=1, max_length=200, optional=True),
            "value": NumberSchema(minimum=0, optional=True),
        }),
        handler=update_deal,
    ),
    ToolSpec(
        name="moveDealStage",
        title="Move deal stage",
        description=(
            "Move a deal to another stage of its board, by stage id or by stage label "
            "(case-insensitive). Give exactly one of toStageId or toStageLabel. "
            "Optionally mark the deal as won or lost."
        ),
        input_schema=ObjectSchema(
            properties={
                "dealId": _id("Deal id"),
                "toStageId": _id("Target stage id", optional=True),
                "toStageLabel": StringSchema(min_length=1, optional=True, description="Target stage label"),
                "mark": EnumSchema(values=DEAL_MARKS, optional=True, description="Mark the deal as won or lost"),
            },
            refinements=(
                Refinement(check=_exactly_one_target, message="Provide exactly one of toStageId or toStageLabel"),
            ),
        ),
        handler=move_deal_stage,
        examples=({"dealId": "deal-1", "toStageLabel": "Proposal"},),
    ),
    ToolSpec(
        name="markDealAsWon",
        title="Mark deal as won",
        description="Mark a deal as won and close it.",
        input_schema=ObjectSchema(properties={"dealId": _id("Deal id")}),
        handler=mark_deal_as_won,
    ),
    ToolSpec(
        name="markDealAsLost",
        title="Mark deal as lost",
        description="Mark a deal as lost and close it, with an optional reason.",
        input_schema=ObjectSchema(properties={
            "dealId": _id("Deal id"),
            "lossReason": StringSchema(optional=True, max_length=500, description="Why the deal was lost"),
        }),
        handler=mark_deal_as_lost,
    ),
    ToolSpec(
        name="assignDeal",
        title="Assign deal",
        description="Reassign a deal to another member of the organization.",
        input_schema=ObjectSchema(properties={
            "dealId": _id("Deal id"),
            "newOwnerId": _id("User id of the new owner"),
        }),
        handler=assign_deal,
    ),
    ToolSpec(
        name="searchContacts",
        title="Search contacts",
        description="Search contacts by name or email text, or by exact email or phone.",
        input_schema=ObjectSchema(properties={
            "query": StringSchema(optional=True, description="Text to search in name or email"),
            "email": StringSchema(format="email", optional=True),
            "phone": StringSchema(pattern=r"^\+?[0-9]{8,15}$", optional=True, description="Phone in E.164"),
            "limit": _limit(20, maximum=100),
        }),
        handler=search_contacts,
        examples=({"query": "ana"}, {"phone": "+5511999999999"}),
    ),
    ToolSpec(
        name="getContact",
        title="Get contact",
        description="Get a contact by id.",
        input_schema=ObjectSchema(properties={"contactId": _id("Contact id")}),
        handler=get_contact,
    ),
    ToolSpec(
        name="upsertContact",
        title="Create or update contact",
        description="Create a contact, or update the existing one with the same email or phone.",
        input_schema=ObjectSchema(properties={
            "name": StringSchema(min_length=1, max_length=200),
            "email": StringSchema(format="email", optional=True),
            "phone": StringSchema(pattern=r"^\+?[0-9]{8,15}$", optional=True, description="Phone in E.164"),
            "role": StringSchema(optional=True),
            "companyId": _id("Company id", optional=True),
        }),
        handler=upsert_contact,
        examples=({"name": "Ana Souza", "email": "ana@acme.com"},),
    ),
    ToolSpec(
        name="listCompanies",
        title="List companies",
        description="List client companies, optionally filtered by name.",
        input_schema=ObjectSchema(properties={
            "query": StringSchema(optional=True),
            "limit": _limit(20, maximum=100),
        }),
        handler=list_companies,
    ),
    ToolSpec(
        name="listActivities",
        title="List activities",
        description="List activities (calls, meetings, tasks, notes), newest first.",
        input_schema=ObjectSchema(properties={
            "dealId": _id("Deal id", optional=True),
            "contactId": _id("Contact id", optional=True),
            "type": EnumSchema(values=ACTIVITY_TYPES, optional=True),
            "limit": _limit(20, maximum=100),
        }),
        handler=list_activities,
    ),
    ToolSpec(
        name="createActivity",
        title="Create activity",
        description="Log an activity, optionally linked to a deal and/or contact.",
        input_schema=ObjectSchema(properties={
            "title": StringSchema(min_length=1, max_length=200),
            "type": EnumSchema(values=ACTIVITY_TYPES),
            "date": StringSchema(format="date-time", optional=True, description="ISO 8601 date-time; defaults to now"),
            "description": StringSchema(optional=True),
            "dealId": _id("Deal id", optional=True),
            "contactId": _id("Contact id", optional=True),
            "completed": BooleanSchema(default=False),
        }),
        handler=create_activity,
        examples=({"title": "Follow-up call", "type": "CALL"},),
    ),
    ToolSpec(
        name="createTask",
        title="Create task",
        description="Create a to-do (a TASK activity) due at a given time, optionally linked to a deal and/or contact.",
        input_schema=ObjectSchema(properties={
            "title": StringSchema(min_length=1, max_length=200),
            "dueDate": StringSchema(format="date-time", description="ISO 8601 date-time the task is due"),
            "description": StringSchema(optional=True),
            "dealId": _id("Deal id", optional=True),
            "contactId": _id("Contact id", optional=True),
        }),
        handler=create_task,
        examples=({"title": "Send proposal", "dueDate": "2026-02-01T09:00:00Z"},),
    ),
    ToolSpec(
        name="analyzePipeline",
        title="Analyze pipeline",
        description="Break a board down by stage (open deal count and value) with won/lost totals and win rate.",
        input_schema=ObjectSchema(properties={"boardId": _id("Board id or key")}),
        handler=analyze_pipeline,
        examples=({"boardId": "sales"},),
    ),
    ToolSpec(
        name="getBoardMetrics",
        title="Board metrics",
        description=(
            "Headline numbers for a board: deal counts, pipeline and won value, win rate, "
            "average deal value, and how many deals are stagnant or have overdue tasks."
        ),
        input_schema=ObjectSchema(properties={"boardId": _id("Board id or key")}),
        handler=get_board_metrics,
        examples=({"boardId": "sales"},),
    ),
    ToolSpec(
        name="listStagnantDeals",
        title="List stagnant deals",
        description="List open deals not updated for a number of days, highest value first.",
        input_schema=ObjectSchema(properties={
            "boardId": _id("Board id or key", optional=True),
            "days": NumberSchema(
                integer=True, minimum=1, maximum=365, default=7,
                description="Days without an update before a deal counts as stagnant",
            ),
            "limit": _limit(20, maximum=100),
        }),
        handler=list_stagnant_deals,
        examples=({}, {"boardId": "sales", "days": 14}),
    ),
    ToolSpec(
        name="listOverdueDeals",
        title="List overdue deals",
        description="List open deals with an incomplete task past its due date, most overdue first.",
        input_schema=ObjectSchema(properties={
            "boardId": _id("Board id or key", optional=True),
            "limit": _limit(20, maximum=100),
        }),
        handler=list_overdue_deals,
        examples=({},),
    ),
)


def build_crm_registry(context: ExecutionContext, backend: CrmBackend) -> ToolRegistry:
    """Bind the CRM catalogue to one request's context."""
    return build_registry(context, CRM_TOOLS, backend)

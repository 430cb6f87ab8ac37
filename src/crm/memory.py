"""In-memory CRM backend.

Development and test implementation of ``CrmBackend``. Data is partitioned by
organization id and every lookup goes through the partition of the calling
context, so one organization's records are unreachable from another's
context. A single lock serializes mutations; tools may run concurrently in
the thread pool.
"""

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from shared.logging import get_logger
from shared.models import ExecutionContext
from crm.backend import CrmError, NotFoundError

logger = get_logger(__name__)


DEMO_STAGES = ["New", "Contacted", "Proposal", "Won", "Lost"]
STAGNANT_AFTER_DAYS = 7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.upper().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _days_between(earlier: datetime, later: datetime) -> int:
    return (later - earlier) // timedelta(days=1)


def _is_open(deal: dict[str, Any]) -> bool:
    return not deal["is_won"] and not deal["is_lost"]


def _new_id() -> str:
    return str(uuid.uuid4())


def _matches(value: Optional[str], query: str) -> bool:
    return bool(value) and query.lower() in value.lower()


class _Organization:
    """All records owned by one organization."""

    def __init__(self, organization_id: str, name: str) -> None:
        self.id = organization_id
        self.name = name
        self.members: dict[str, dict[str, Any]] = {}
        self.boards: dict[str, dict[str, Any]] = {}
        self.stages: dict[str, dict[str, Any]] = {}
        self.deals: dict[str, dict[str, Any]] = {}
        self.contacts: dict[str, dict[str, Any]] = {}
        self.companies: dict[str, dict[str, Any]] = {}
        self.activities: dict[str, dict[str, Any]] = {}


class InMemoryCrmBackend:
    """
    ``CrmBackend`` over plain dictionaries.

    Records are returned as copies; callers cannot mutate stored state.
    ``clock`` returns the current aware datetime and drives every timestamp
    and every age computation.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._orgs: dict[str, _Organization] = {}
        self._lock = threading.RLock()
        self._clock = clock or _utcnow

    # -- setup ---------------------------------------------------------------

    def add_organization(self, organization_id: str, name: str) -> None:
        with self._lock:
            self._orgs.setdefault(organization_id, _Organization(organization_id, name))

    def add_member(self, organization_id: str, user_id: str, first_name: str) -> None:
        with self._lock:
            org = self._org_by_id(organization_id)
            org.members[user_id] = {"id": user_id, "first_name": first_name}

    def add_board(
        self,
        organization_id: str,
        name: str,
        *,
        key: Optional[str] = None,
        stages: Optional[list[str]] = None,
        board_id: Optional[str] = None,
    ) -> dict[str, Any]:
        with self._lock:
            org = self._org_by_id(organization_id)
            board = {
                "id": board_id or _new_id(),
                "key": key,
                "name": name,
                "position": len(org.boards),
                "is_default": not org.boards,
            }
            org.boards[board["id"]] = board
            for order, label in enumerate(stages or DEMO_STAGES):
                stage = {"id": _new_id(), "board_id": board["id"], "label": label, "order": order}
                org.stages[stage["id"]] = stage
            return dict(board)

    def add_company(self, organization_id: str, name: str, **fields: Any) -> dict[str, Any]:
        with self._lock:
            org = self._org_by_id(organization_id)
            company = {
                "id": fields.pop("company_id", None) or _new_id(),
                "name": name,
                "website": fields.get("website"),
                "industry": fields.get("industry"),
                "created_at": self._now(),
            }
            org.companies[company["id"]] = company
            return dict(company)

    # -- internals -----------------------------------------------------------

    def _now(self) -> str:
        return self._clock().isoformat()

    def _org_by_id(self, organization_id: str) -> _Organization:
        org = self._orgs.get(organization_id)
        if org is None:
            raise CrmError(f"Unknown organization: {organization_id}", code=CrmError.NOT_FOUND)
        return org

    def _org(self, context: ExecutionContext) -> _Organization:
        return self._org_by_id(context.organization_id)

    def _get(self, table: dict[str, dict[str, Any]], entity: str, entity_id: str) -> dict[str, Any]:
        record = table.get(entity_id)
        if record is None:
            raise NotFoundError(entity, entity_id)
        return record

    def _board_stages(self, org: _Organization, board_id: str) -> list[dict[str, Any]]:
        stages = [s for s in org.stages.values() if s["board_id"] == board_id]
        return sorted(stages, key=lambda s: s["order"])

    def _resolve_board(self, org: _Organization, board_key_or_id: str) -> dict[str, Any]:
        board = org.boards.get(board_key_or_id)
        if board is None:
            board = next((b for b in org.boards.values() if b["key"] == board_key_or_id), None)
        if board is None:
            raise NotFoundError("Board", board_key_or_id)
        return board

    def _apply_mark(self, deal: dict[str, Any], mark: Optional[str], loss_reason: Optional[str] = None) -> None:
        if mark == "won":
            deal.update(is_won=True, is_lost=False, loss_reason=None, closed_at=self._now())
        elif mark == "lost":
            deal.update(is_won=False, is_lost=True, loss_reason=loss_reason, closed_at=self._now())

    # -- organization --------------------------------------------------------

    def get_organization(self, context: ExecutionContext) -> dict[str, Any]:
        with self._lock:
            org = self._org(context)
            return {"id": org.id, "name": org.name, "member_count": len(org.members)}

    # -- boards --------------------------------------------------------------

    def list_boards(self, context: ExecutionContext, *, limit: int = 50) -> list[dict[str, Any]]:
        with self._lock:
            boards = sorted(self._org(context).boards.values(), key=lambda b: b["position"])
            return [dict(b) for b in boards[:limit]]

    def list_board_stages(self, context: ExecutionContext, board_id: str) -> list[dict[str, Any]]:
        with self._lock:
            org = self._org(context)
            board = self._resolve_board(org, board_id)
            return [dict(s) for s in self._board_stages(org, board["id"])]

    # -- deals ---------------------------------------------------------------

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
    ) -> list[dict[str, Any]]:
        with self._lock:
            org = self._org(context)
            board = self._resolve_board(org, board_id) if board_id else None
            deals = [dict(r) for r in org.deals.values()]

        if query:
            deals = [d for d in deals if _matches(d["title"], query)]
        if board is not None:
            deals = [d for d in deals if d["board_id"] == board["id"]]
        if stage_id:
            deals = [d for d in deals if d["stage_id"] == stage_id]
        if contact_id:
            deals = [d for d in deals if d["contact_id"] == contact_id]
        if status == "open":
            deals = [d for d in deals if _is_open(d)]
        elif status == "won":
            deals = [d for d in deals if d["is_won"]]
        elif status == "lost":
            deals = [d for d in deals if d["is_lost"]]

        deals.sort(key=lambda d: d["updated_at"], reverse=True)
        return deals[:limit]

    def get_deal(self, context: ExecutionContext, deal_id: str) -> dict[str, Any]:
        with self._lock:
            return dict(self._get(self._org(context).deals, "Deal", deal_id))

    def create_deal(
        self,
        context: ExecutionContext,
        *,
        title: str,
        board_id: str,
        value: float = 0,
        stage_id: Optional[str] = None,
        contact_id: Optional[str] = None,
    ) -> dict[str, Any]:
        with self._lock:
            org = self._org(context)
            board = self._resolve_board(org, board_id)
            stages = self._board_stages(org, board["id"])
            if stage_id is None:
                if not stages:
                    raise CrmError(f"Board '{board['name']}' has no stages")
                stage_id = stages[0]["id"]
            elif stage_id not in {s["id"] for s in stages}:
                raise NotFoundError("Stage", stage_id)
            if contact_id is not None:
                self._get(org.contacts, "Contact", contact_id)

            now = self._now()
            deal = {
                "id": _new_id(),
                "title": title,
                "value": value,
                "board_id": board["id"],
                "stage_id": stage_id,
                "contact_id": contact_id,
                "client_company_id": None,
                "owner_id": context.acting_user_id,
                "is_won": False,
                "is_lost": False,
                "loss_reason": None,
                "closed_at": None,
                "created_at": now,
                "updated_at": now,
            }
            org.deals[deal["id"]] = deal
            logger.debug("Deal created", deal_id=deal["id"], organization_id=org.id)
            return dict(deal)

    def update_deal(
        self,
        context: ExecutionContext,
        deal_id: str,
        *,
        title: Optional[str] = None,
        value: Optional[float] = None,
    ) -> dict[str, Any]:
        with self._lock:
            deal = self._get(self._org(context).deals, "Deal", deal_id)
            if title is not None:
                deal["title"] = title
            if value is not None:
                deal["value"] = value
            deal["updated_at"] = self._now()
            return dict(deal)

    def move_deal_stage(
        self,
        context: ExecutionContext,
        deal_id: str,
        *,
        to_stage_id: Optional[str] = None,
        to_stage_label: Optional[str] = None,
        mark: Optional[str] = None,
    ) -> dict[str, Any]:
        with self._lock:
            org = self._org(context)
            deal = self._get(org.deals, "Deal", deal_id)
            stages = self._board_stages(org, deal["board_id"])

            if to_stage_id is not None:
                target = next((s for s in stages if s["id"] == to_stage_id), None)
                wanted = to_stage_id
            else:
                label = (to_stage_label or "").strip().lower()
                target = next((s for s in stages if s["label"].lower() == label), None)
                wanted = to_stage_label or ""
            if target is None:
                raise NotFoundError("Stage", wanted)

            from_stage_id = deal["stage_id"]
            deal["stage_id"] = target["id"]
            self._apply_mark(deal, mark)
            deal["updated_at"] = self._now()
            return {
                "deal": dict(deal),
                "from_stage_id": from_stage_id,
                "to_stage": dict(target),
            }

    def mark_deal_won(self, context: ExecutionContext, deal_id: str) -> dict[str, Any]:
        with self._lock:
            deal = self._get(self._org(context).deals, "Deal", deal_id)
            self._apply_mark(deal, "won")
            deal["updated_at"] = self._now()
            return dict(deal)

    def mark_deal_lost(
        self, context: ExecutionContext, deal_id: str, *, loss_reason: Optional[str] = None
    ) -> dict[str, Any]:
        with self._lock:
            deal = self._get(self._org(context).deals, "Deal", deal_id)
            self._apply_mark(deal, "lost", loss_reason)
            deal["updated_at"] = self._now()
            return dict(deal)

    def assign_deal(
        self, context: ExecutionContext, deal_id: str, *, new_owner_id: str
    ) -> dict[str, Any]:
        with self._lock:
            org = self._org(context)
            deal = self._get(org.deals, "Deal", deal_id)
            owner = org.members.get(new_owner_id)
            if owner is None:
                raise NotFoundError("User", new_owner_id)
            deal["owner_id"] = new_owner_id
            deal["updated_at"] = self._now()
            return {
                "success": True,
                "message": f"Deal \"{deal['title']}\" reassigned to {owner['first_name']}",
                "deal": dict(deal),
            }

    # -- contacts and companies ----------------------------------------------

    def search_contacts(
        self,
        context: ExecutionContext,
        *,
        query: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        with self._lock:
            contacts = [dict(r) for r in self._org(context).contacts.values()]

        if query:
            contacts = [
                c for c in contacts
                if _matches(c["name"], query) or _matches(c["email"], query)
            ]
        if email:
            contacts = [c for c in contacts if (c["email"] or "").lower() == email.lower()]
        if phone:
            contacts = [c for c in contacts if c["phone"] == phone]
        contacts.sort(key=lambda c: c["name"].lower())
        return contacts[:limit]

    def get_contact(self, context: ExecutionContext, contact_id: str) -> dict[str, Any]:
        with self._lock:
            return dict(self._get(self._org(context).contacts, "Contact", contact_id))

    def upsert_contact(
        self,
        context: ExecutionContext,
        *,
        name: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        role: Optional[str] = None,
        company_id: Optional[str] = None,
    ) -> dict[str, Any]:
        with self._lock:
            org = self._org(context)
            if company_id is not None:
                self._get(org.companies, "Company", company_id)

            existing = None
            if email:
                existing = next(
                    (c for c in org.contacts.values() if (c["email"] or "").lower() == email.lower()),
                    None,
                )
            if existing is None and phone:
                existing = next((c for c in org.contacts.values() if c["phone"] == phone), None)

            if existing is not None:
                existing.update(
                    name=name,
                    email=email.lower() if email else existing["email"],
                    phone=phone or existing["phone"],
                    role=role or existing["role"],
                    client_company_id=company_id or existing["client_company_id"],
                    updated_at=self._now(),
                )
                return {"created": False, "contact": dict(existing)}

            now = self._now()
            contact = {
                "id": _new_id(),
                "name": name,
                "email": email.lower() if email else None,
                "phone": phone,
                "role": role,
                "client_company_id": company_id,
                "created_at": now,
                "updated_at": now,
            }
            org.contacts[contact["id"]] = contact
            return {"created": True, "contact": dict(contact)}

    def list_companies(
        self, context: ExecutionContext, *, query: Optional[str] = None, limit: int = 20
    ) -> list[dict[str, Any]]:
        with self._lock:
            companies = [dict(r) for r in self._org(context).companies.values()]
        if query:
            companies = [c for c in companies if _matches(c["name"], query)]
        companies.sort(key=lambda c: c["name"].lower())
        return companies[:limit]

    # -- activities ----------------------------------------------------------

    def list_activities(
        self,
        context: ExecutionContext,
        *,
        deal_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        with self._lock:
            activities = [dict(r) for r in self._org(context).activities.values()]
        if deal_id:
            activities = [a for a in activities if a["deal_id"] == deal_id]
        if contact_id:
            activities = [a for a in activities if a["contact_id"] == contact_id]
        if type:
            activities = [a for a in activities if a["type"] == type]
        activities.sort(key=lambda a: a["date"], reverse=True)
        return activities[:limit]

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
    ) -> dict[str, Any]:
        with self._lock:
            org = self._org(context)
            if deal_id is not None:
                self._get(org.deals, "Deal", deal_id)
            if contact_id is not None:
                self._get(org.contacts, "Contact", contact_id)

            activity = {
                "id": _new_id(),
                "title": title,
                "description": description,
                "type": type,
                "date": date or self._now(),
                "completed": completed,
                "deal_id": deal_id,
                "contact_id": contact_id,
                "owner_id": context.acting_user_id,
                "created_at": self._now(),
            }
            org.activities[activity["id"]] = activity
            return dict(activity)

    # -- analysis ------------------------------------------------------------

    def _scoped_deals(self, org: _Organization, board_id: Optional[str]) -> list[dict[str, Any]]:
        if not board_id:
            return [dict(d) for d in org.deals.values()]
        board = self._resolve_board(org, board_id)
        return [dict(d) for d in org.deals.values() if d["board_id"] == board["id"]]

    @staticmethod
    def _stagnant(deals: list[dict[str, Any]], days: int, now: datetime) -> list[dict[str, Any]]:
        threshold = now - timedelta(days=days)
        stagnant = []
        for deal in deals:
            updated = _parse_time(deal["updated_at"])
            if _is_open(deal) and updated < threshold:
                stagnant.append({**deal, "days_since_update": _days_between(updated, now)})
        stagnant.sort(key=lambda d: d["value"], reverse=True)
        return stagnant

    def _overdue(self, org: _Organization, deals: list[dict[str, Any]], now: datetime) -> list[dict[str, Any]]:
        tasks: dict[str, list[dict[str, Any]]] = {}
        for activity in org.activities.values():
            if activity["type"] != "TASK" or activity["completed"] or not activity["deal_id"]:
                continue
            due = _parse_time(activity["date"])
            if due < now:
                tasks.setdefault(activity["deal_id"], []).append({
                    "id": activity["id"],
                    "title": activity["title"],
                    "due_date": activity["date"],
                    "days_overdue": _days_between(due, now),
                })

        overdue = []
        for deal in deals:
            late = tasks.get(deal["id"])
            if _is_open(deal) and late:
                late.sort(key=lambda t: t["days_overdue"], reverse=True)
                overdue.append({**deal, "overdue_tasks": late})
        overdue.sort(key=lambda d: d["overdue_tasks"][0]["days_overdue"], reverse=True)
        return overdue

    @staticmethod
    def _totals(deals: list[dict[str, Any]]) -> dict[str, Any]:
        open_deals = [d for d in deals if _is_open(d)]
        won = [d for d in deals if d["is_won"]]
        lost = [d for d in deals if d["is_lost"]]
        closed = len(won) + len(lost)
        return {
            "total_deals": len(deals),
            "open_deals": len(open_deals),
            "pipeline_value": sum(d["value"] for d in open_deals),
            "won_deals": len(won),
            "won_value": sum(d["value"] for d in won),
            "lost_deals": len(lost),
            "win_rate": round(len(won) / closed * 100) if closed else 0,
        }

    def analyze_pipeline(self, context: ExecutionContext, board_id: str) -> dict[str, Any]:
        with self._lock:
            org = self._org(context)
            board = self._resolve_board(org, board_id)
            stages = self._board_stages(org, board["id"])
            deals = self._scoped_deals(org, board["id"])

        open_deals = [d for d in deals if _is_open(d)]
        by_stage = []
        for stage in stages:
            in_stage = [d for d in open_deals if d["stage_id"] == stage["id"]]
            by_stage.append({
                "stage_id": stage["id"],
                "label": stage["label"],
                "deal_count": len(in_stage),
                "value": sum(d["value"] for d in in_stage),
            })
        return {
            "board": {"id": board["id"], "key": board["key"], "name": board["name"]},
            "stages": by_stage,
            **self._totals(deals),
        }

    def get_board_metrics(self, context: ExecutionContext, board_id: str) -> dict[str, Any]:
        now = self._clock()
        with self._lock:
            org = self._org(context)
            board = self._resolve_board(org, board_id)
            deals = self._scoped_deals(org, board["id"])
            overdue = self._overdue(org, deals, now)

        values = [d["value"] for d in deals]
        return {
            "board": {"id": board["id"], "key": board["key"], "name": board["name"]},
            **self._totals(deals),
            "average_deal_value": round(sum(values) / len(values), 2) if values else 0,
            "stagnant_deals": len(self._stagnant(deals, STAGNANT_AFTER_DAYS, now)),
            "overdue_deals": len(overdue),
        }

    def list_stagnant_deals(
        self,
        context: ExecutionContext,
        *,
        board_id: Optional[str] = None,
        days: int = STAGNANT_AFTER_DAYS,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        with self._lock:
            deals = self._scoped_deals(self._org(context), board_id)
        return self._stagnant(deals, days, self._clock())[:limit]

    def list_overdue_deals(
        self,
        context: ExecutionContext,
        *,
        board_id: Optional[str] = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        with self._lock:
            org = self._org(context)
            deals = self._scoped_deals(org, board_id)
            return self._overdue(org, deals, self._clock())[:limit]


def seed_demo_data(backend: InMemoryCrmBackend) -> None:
    """Populate two demo organizations."""
    backend.add_organization("org_A", "Acme Ltda")
    backend.add_member("org_A", "u1", "Maria")
    backend.add_member("org_A", "u2", "Joao")
    acme = backend.add_company("org_A", "Acme Industrial", industry="Manufacturing")
    board = backend.add_board("org_A", "Sales", key="sales")

    ctx = ExecutionContext(organization_id="org_A", acting_user_id="u1")
    ana = backend.upsert_contact(
        ctx, name="Ana Souza", email="ana@acme.com", phone="+5511999999999",
        role="Buyer", company_id=acme["id"],
    )["contact"]
    deal = backend.create_deal(
        ctx, title="Acme annual license", board_id=board["id"], value=12000, contact_id=ana["id"]
    )
    backend.create_activity(
        ctx, title="Discovery call", type="CALL", deal_id=deal["id"], contact_id=ana["id"]
    )

    backend.add_organization("org_B", "Globex")
    backend.add_member("org_B", "u9", "Hank")
    globex_board = backend.add_board("org_B", "Pipeline", key="sales")
    globex = ExecutionContext(organization_id="org_B", acting_user_id="u9")
    backend.create_deal(globex, title="Globex pilot", board_id=globex_board["id"], value=5000)

    logger.info("Demo CRM data seeded", organizations=["org_A", "org_B"])

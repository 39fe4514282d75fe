"""
Access-scope resolution.

A viewer's scope is derived from their role and their relationships to
customers (tickets, comments, tasks, opportunities). The scope compiles to a
SQL predicate over rag_sources for retrieval, and is re-checked in process
against every row before it is returned.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from sqlalchemy import ColumnElement, and_, false, or_, select, true
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from supportrag.models import (
    CrmTask,
    Opportunity,
    RagSource,
    Sensitivity,
    Ticket,
    TicketComment,
)

logger = logging.getLogger(__name__)

ALL_DEPARTMENTS = "*"
PRIVILEGED_ROLES = ("admin", "manager")


class RagAccessError(Exception):
    """Raised when a retrieval request falls outside the viewer's scope."""

    def __init__(
        self,
        deny_reason: str,
        filters_applied: dict | None = None,
        intent: str | None = None,
        status_code: int = 403,
    ):
        super().__init__(f"RAG access denied: {deny_reason}")
        self.deny_reason = deny_reason
        self.filters_applied = filters_applied or {}
        self.intent = intent
        self.status_code = status_code


@dataclass
class ViewerIdentity:
    """The authenticated caller, as loaded from the users table."""

    user_id: str
    role: str
    is_external: bool = False
    ticketing_role: str | None = None
    departments: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ViewerScope:
    """Resolved permissions for one request. Never cached across requests."""

    user_id: str
    role: str
    is_admin: bool
    is_manager: bool
    is_external: bool
    allow_internal: bool
    allowed_customer_ids: frozenset[int] = frozenset()
    allowed_departments: tuple[str, ...] = ()

    @property
    def is_privileged(self) -> bool:
        return self.is_admin or self.is_manager

    def can_access_customer(self, customer_id: int | None) -> bool:
        if self.is_privileged:
            return True
        return customer_id is not None and customer_id in self.allowed_customer_ids


def extract_departments(identity: ViewerIdentity) -> tuple[str, ...]:
    departments: list[str] = []
    ticketing_role = (identity.ticketing_role or "").lower()
    if "purchasing" in ticketing_role:
        departments.append("purchasing")
    if "ar" in ticketing_role or "account" in ticketing_role:
        departments.append("ar")

    departments.extend(d.lower() for d in identity.departments or [] if d)

    if identity.role == "admin":
        departments.append(ALL_DEPARTMENTS)

    return tuple(dict.fromkeys(departments))


async def fetch_scoped_customer_ids(
    session_factory: async_sessionmaker[AsyncSession], user_id: str
) -> frozenset[int]:
    """Customers a user is related to through tickets, comments, tasks or opportunities."""
    queries = [
        select(Ticket.customer_id).where(
            or_(Ticket.assignee_id == user_id, Ticket.reporter_id == user_id)
        ),
        select(Ticket.customer_id)
        .select_from(TicketComment)
        .join(Ticket, TicketComment.ticket_id == Ticket.id)
        .where(TicketComment.commenter_id == user_id),
        select(CrmTask.customer_id).where(CrmTask.assigned_to_id == user_id),
        select(Opportunity.customer_id).where(Opportunity.owner_id == user_id),
    ]

    async def run(query) -> list[int | None]:
        async with session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    results = await asyncio.gather(*(run(q) for q in queries))
    return frozenset(cid for rows in results for cid in rows if cid is not None)


async def resolve_viewer_scope(
    session_factory: async_sessionmaker[AsyncSession], identity: ViewerIdentity
) -> ViewerScope:
    is_admin = identity.role == "admin"
    is_manager = identity.role == "manager"

    if is_admin or is_manager:
        allowed: frozenset[int] = frozenset()
    else:
        allowed = await fetch_scoped_customer_ids(session_factory, identity.user_id)

    scope = ViewerScope(
        user_id=identity.user_id,
        role=identity.role,
        is_admin=is_admin,
        is_manager=is_manager,
        is_external=identity.is_external,
        allow_internal=not identity.is_external,
        allowed_customer_ids=allowed,
        allowed_departments=extract_departments(identity),
    )
    logger.debug(
        f"Resolved scope for {identity.user_id}: role={identity.role}, "
        f"customers={len(allowed)}, departments={scope.allowed_departments}"
    )
    return scope


# ============================================================================
# Predicates
# ============================================================================


@dataclass(frozen=True)
class AccessContext:
    customer_id: int | None = None
    ticket_id: int | None = None
    include_internal: bool = False
    allow_global: bool = False
    enforce_ticket_id: bool = True


class AccessPredicateBuilder:
    """Compiles a ViewerScope into a WHERE clause over rag_sources."""

    def __init__(self, scope: ViewerScope):
        self.scope = scope

    def build(self, context: AccessContext) -> ColumnElement[bool]:
        scope = self.scope
        include_internal = scope.allow_internal and context.include_internal
        enforce_ticket = bool(context.ticket_id) and context.enforce_ticket_id
        has_context = bool(context.customer_id) or enforce_ticket

        if not has_context and not (scope.is_privileged and context.allow_global):
            return false()

        conditions: list[ColumnElement[bool]] = []
        if context.customer_id:
            conditions.append(RagSource.customer_id == context.customer_id)
        if enforce_ticket:
            conditions.append(RagSource.ticket_id == context.ticket_id)

        if scope.is_privileged:
            if not include_internal:
                conditions.append(RagSource.sensitivity == Sensitivity.PUBLIC)
            return and_(*conditions) if conditions else true()

        if not scope.allowed_customer_ids:
            return false()

        customer_scope = RagSource.customer_id.in_(sorted(scope.allowed_customer_ids))
        if include_internal:
            sensitivity_allowed = or_(
                RagSource.sensitivity == Sensitivity.PUBLIC,
                and_(RagSource.sensitivity == Sensitivity.INTERNAL, customer_scope),
            )
        else:
            sensitivity_allowed = RagSource.sensitivity == Sensitivity.PUBLIC

        conditions.extend(
            [
                customer_scope,
                sensitivity_allowed,
                self._department_condition(),
                RagSource.customer_id.is_not(None),
            ]
        )
        return and_(*conditions)

    def _department_condition(self) -> ColumnElement[bool]:
        departments = self.scope.allowed_departments
        dept = RagSource.meta["dept"].astext
        if ALL_DEPARTMENTS in departments:
            return true()
        if not departments:
            return dept.is_(None)
        return or_(dept.is_(None), dept.in_(list(departments)))


def customer_scope_condition(scope: ViewerScope, column) -> ColumnElement[bool]:
    """Restrict a CRM table's customer column to the viewer's customers."""
    if scope.is_privileged:
        return true()
    if not scope.allowed_customer_ids:
        return false()
    return column.in_(sorted(scope.allowed_customer_ids))


def can_view_rag_row(
    scope: ViewerScope,
    customer_id: int | None,
    sensitivity: Sensitivity | str | None,
    metadata: dict | None,
    include_internal: bool = False,
) -> bool:
    """In-process check applied to every row after the SQL predicate."""
    allow_internal = scope.allow_internal and include_internal
    is_internal = Sensitivity(sensitivity or Sensitivity.PUBLIC) == Sensitivity.INTERNAL
    if is_internal and not allow_internal:
        return False
    if scope.is_privileged:
        return True
    if customer_id is None or customer_id not in scope.allowed_customer_ids:
        return False

    dept = (metadata or {}).get("dept")
    if not isinstance(dept, str) or not dept:
        return True
    if ALL_DEPARTMENTS in scope.allowed_departments:
        return True
    return dept.lower() in scope.allowed_departments

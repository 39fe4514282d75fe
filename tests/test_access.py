import asyncio

import pytest
from conftest import compile_sql, make_scope

from supportrag.models import RagSource, Sensitivity
from supportrag.services import access
from supportrag.services.access import (
    AccessContext,
    AccessPredicateBuilder,
    ViewerIdentity,
    can_view_rag_row,
    customer_scope_condition,
    extract_departments,
    resolve_viewer_scope,
)


def build_sql(scope, **context) -> str:
    return compile_sql(AccessPredicateBuilder(scope).build(AccessContext(**context)))


# ============================================================================
# Scope resolution
# ============================================================================


def test_departments_from_ticketing_role_and_explicit_list():
    identity = ViewerIdentity(
        user_id="u1", role="agent", ticketing_role="AR Specialist", departments=["Purchasing"]
    )
    assert extract_departments(identity) == ("ar", "purchasing")


def test_admin_gets_every_department():
    identity = ViewerIdentity(user_id="u1", role="admin")
    assert access.ALL_DEPARTMENTS in extract_departments(identity)


def test_privileged_scope_skips_customer_lookup(monkeypatch):
    async def fail(*args, **kwargs):
        raise AssertionError("privileged viewers have no customer list")

    monkeypatch.setattr(access, "fetch_scoped_customer_ids", fail)
    scope = asyncio.run(resolve_viewer_scope(None, ViewerIdentity(user_id="m1", role="manager")))

    assert scope.is_privileged
    assert scope.allow_internal


def test_agent_scope_uses_related_customers(monkeypatch):
    async def fake_fetch(session_factory, user_id):
        assert user_id == "a1"
        return frozenset({7, 9})

    monkeypatch.setattr(access, "fetch_scoped_customer_ids", fake_fetch)
    scope = asyncio.run(
        resolve_viewer_scope(None, ViewerIdentity(user_id="a1", role="agent", is_external=True))
    )

    assert not scope.is_privileged
    assert scope.allowed_customer_ids == frozenset({7, 9})
    assert not scope.allow_internal
    assert scope.can_access_customer(7)
    assert not scope.can_access_customer(8)
    assert not scope.can_access_customer(None)


# ============================================================================
# SQL predicate
# ============================================================================


def test_no_context_denies_non_privileged(agent_scope):
    assert build_sql(agent_scope) == "false"
    assert build_sql(agent_scope, allow_global=True) == "false"


def test_admin_global_search_is_public_only_by_default(admin_scope):
    sql = build_sql(admin_scope, allow_global=True)
    assert sql == "rag_sources.sensitivity = 'public'"


def test_admin_global_with_internal_is_unrestricted(admin_scope):
    assert build_sql(admin_scope, allow_global=True, include_internal=True) == "true"


def test_admin_without_allow_global_needs_context(admin_scope):
    assert build_sql(admin_scope) == "false"
    assert "rag_sources.customer_id = 7" in build_sql(admin_scope, customer_id=7)


def test_agent_predicate_is_closed_over_allowed_customers(agent_scope):
    sql = build_sql(agent_scope, customer_id=7)

    assert "rag_sources.customer_id = 7" in sql
    assert "rag_sources.customer_id IN (7)" in sql
    assert "rag_sources.sensitivity = 'public'" in sql
    assert "rag_sources.customer_id IS NOT NULL" in sql
    assert "->> 'dept'" in sql
    assert "IS NULL" in sql


def test_agent_internal_rows_require_customer_scope(agent_scope):
    sql = build_sql(agent_scope, customer_id=7, include_internal=True)
    assert "rag_sources.sensitivity = 'internal'" in sql


def test_external_viewer_never_sees_internal():
    scope = make_scope(customers=(7,), is_external=True)
    sql = build_sql(scope, customer_id=7, include_internal=True)
    assert "'internal'" not in sql


def test_agent_without_customers_sees_nothing():
    scope = make_scope(customers=())
    assert build_sql(scope, customer_id=7) == "false"


def test_ticket_filter_only_when_enforced(agent_scope):
    assert "rag_sources.ticket_id = 5" in build_sql(agent_scope, ticket_id=5)
    sql = build_sql(agent_scope, ticket_id=5, customer_id=7, enforce_ticket_id=False)
    assert "ticket_id" not in sql


def test_department_filter_allows_untagged_and_own_departments():
    scope = make_scope(customers=(7,), departments=("ar",))
    sql = build_sql(scope, customer_id=7)
    assert "IN ('ar')" in sql


def test_customer_scope_condition():
    admin = make_scope(role="admin")
    assert compile_sql(customer_scope_condition(admin, RagSource.customer_id)) == "true"
    assert compile_sql(customer_scope_condition(make_scope(), RagSource.customer_id)) == "false"
    sql = compile_sql(customer_scope_condition(make_scope(customers=(3, 1)), RagSource.customer_id))
    assert sql == "rag_sources.customer_id IN (1, 3)"


# ============================================================================
# In-process row check
# ============================================================================


@pytest.mark.parametrize(
    "customer_id, sensitivity, metadata, include_internal, expected",
    [
        (7, Sensitivity.PUBLIC, None, False, True),
        (8, Sensitivity.PUBLIC, None, False, False),
        (None, Sensitivity.PUBLIC, None, False, False),
        (7, Sensitivity.INTERNAL, None, False, False),
        (7, Sensitivity.INTERNAL, None, True, True),
        (7, "public", {"dept": "purchasing"}, False, False),
        (7, "public", {"dept": "AR"}, False, True),
        (7, None, {"dept": ""}, False, True),
    ],
)
def test_can_view_rag_row_for_agent(customer_id, sensitivity, metadata, include_internal, expected):
    scope = make_scope(customers=(7,), departments=("ar",))
    assert (
        can_view_rag_row(scope, customer_id, sensitivity, metadata, include_internal) is expected
    )


def test_can_view_rag_row_for_admin(admin_scope):
    assert can_view_rag_row(admin_scope, None, Sensitivity.PUBLIC, {"dept": "x"})
    assert not can_view_rag_row(admin_scope, None, Sensitivity.INTERNAL, None)
    assert can_view_rag_row(admin_scope, None, Sensitivity.INTERNAL, None, include_internal=True)


def test_external_viewer_row_check():
    scope = make_scope(customers=(7,), is_external=True)
    assert not can_view_rag_row(scope, 7, Sensitivity.INTERNAL, None, include_internal=True)

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from access_engine.core.exceptions import StorageUnavailableError
from access_engine.features.resolution.effects import (
    Deny,
    DecisionSource,
    Grant,
    combine_role_effects,
    decide,
    latest_expiry,
)
from access_engine.features.resolution.engine import ResolutionEngine
from access_engine.features.resolution.membership import assign_user_role


@pytest.fixture
async def scenario(db, catalog, make_permission, role_store):
    """EMPLOYEE.DELETE granted to Manager; user 42 holds Manager."""
    permission = await make_permission("EMPLOYEE.DELETE", resource_template="company/{company_id}/employees")
    manager = await catalog.create_role("Manager")
    await role_store.assign(manager.id, permission.id)
    await assign_user_role(db, "42", manager.id)
    return permission, manager


# ----------------------------------------------------------------------------
# Pure precedence rules
# ----------------------------------------------------------------------------

def test_deny_wins_among_roles(clock):
    now = clock.now()
    verdict = combine_role_effects([Grant("p", "r1"), Deny("p", "r2")], now)

    assert verdict.granted is False
    assert verdict.role_ids == ["r2"]


def test_expired_role_effects_are_ignored(clock):
    now = clock.now()
    verdict = combine_role_effects([Grant("p", "r1"), Deny("p", "r2", expires_at=now)], now)

    assert verdict.granted is True
    assert combine_role_effects([Deny("p", "r2", expires_at=now)], now) is None


def test_override_is_returned_verbatim(clock):
    now = clock.now()

    decision = decide("P", "p", [Deny("p", "r1")], Grant("p", "42", reason="covering"), now)
    assert decision.granted is True
    assert decision.source == DecisionSource.USER
    assert decision.override_reason == "covering"

    decision = decide("P", "p", [Grant("p", "r1")], Deny("p", "42"), now)
    assert decision.granted is False
    assert decision.source == DecisionSource.USER


def test_latest_expiry_is_unbounded_when_any_edge_is(clock):
    now = clock.now()
    later = now + timedelta(days=2)

    assert latest_expiry([Grant("p", "r1", expires_at=now), Grant("p", "r2", expires_at=later)]) == later
    assert latest_expiry([Grant("p", "r1", expires_at=now), Grant("p", "r2")]) is None


# ----------------------------------------------------------------------------
# Engine
# ----------------------------------------------------------------------------

async def test_concrete_override_scenario(resolver, scenario, user_store):
    permission, _ = scenario

    decision = await resolver.has_permission("42", "EMPLOYEE.DELETE")
    assert (decision.granted, decision.source) == (True, DecisionSource.ROLE)
    assert decision.resource_template == "company/{company_id}/employees"

    await user_store.assign("42", permission.id, is_granted=False, reason="temporary restriction")
    decision = await resolver.has_permission("42", "EMPLOYEE.DELETE")
    assert (decision.granted, decision.source) == (False, DecisionSource.USER)
    assert decision.override_reason == "temporary restriction"

    await user_store.remove("42", permission.id)
    decision = await resolver.has_permission("42", "EMPLOYEE.DELETE")
    assert (decision.granted, decision.source) == (True, DecisionSource.ROLE)


async def test_deny_wins_across_user_roles(db, resolver, scenario, catalog, role_store):
    permission, _ = scenario
    auditor = await catalog.create_role("Auditor")
    await role_store.assign(auditor.id, permission.id, is_granted=False)
    await assign_user_role(db, "42", auditor.id)

    decision = await resolver.has_permission("42", "EMPLOYEE.DELETE")

    assert decision.granted is False
    assert decision.source == DecisionSource.ROLE


async def test_override_expiry_is_half_open(resolver, make_permission, user_store, clock):
    permission = await make_permission("REPORTS.EXPORT")
    expires_at = clock.now() + timedelta(hours=1)
    await user_store.assign("42", permission.id, is_granted=True, expires_at=expires_at)

    just_before = await resolver.has_permission("42", "REPORTS.EXPORT", now=expires_at - timedelta(microseconds=1))
    assert just_before.granted is True
    assert just_before.expires_at == expires_at

    at_expiry = await resolver.has_permission("42", "REPORTS.EXPORT", now=expires_at)
    assert at_expiry.granted is False
    assert at_expiry.source == DecisionSource.NONE


async def test_expired_override_falls_back_to_roles(resolver, scenario, user_store, clock):
    permission, _ = scenario
    await user_store.assign("42", permission.id, is_granted=False, expires_at=clock.now() + timedelta(minutes=10))

    assert (await resolver.has_permission("42", "EMPLOYEE.DELETE")).granted is False

    clock.advance(timedelta(minutes=10))
    decision = await resolver.has_permission("42", "EMPLOYEE.DELETE")
    assert (decision.granted, decision.source) == (True, DecisionSource.ROLE)


async def test_unknown_user_and_unknown_code_are_denied(resolver, scenario):
    stranger = await resolver.has_permission("nobody", "EMPLOYEE.DELETE")
    assert stranger.granted is False
    assert stranger.source == DecisionSource.NONE
    assert stranger.evaluation_unavailable is False

    unknown = await resolver.has_permission("42", "NO.SUCH.CODE")
    assert unknown.granted is False
    assert unknown.reason == "unknown or inactive permission"


async def test_inactive_permission_is_denied_even_with_override(resolver, scenario, catalog, user_store):
    permission, _ = scenario
    await user_store.assign("42", permission.id, is_granted=True)
    await catalog.deactivate(permission.id)

    decision = await resolver.has_permission("42", "EMPLOYEE.DELETE")

    assert decision.granted is False
    assert decision.reason == "unknown or inactive permission"


async def test_inactive_role_contributes_nothing(resolver, scenario, catalog):
    _, manager = scenario
    await catalog.set_role_active(manager.id, False)

    assert (await resolver.has_permission("42", "EMPLOYEE.DELETE")).granted is False
    # Even when the caller supplies the role explicitly
    supplied = await resolver.has_permission("42", "EMPLOYEE.DELETE", active_role_ids=[manager.id])
    assert supplied.granted is False


async def test_expired_membership_is_ignored(db, resolver, catalog, make_permission, role_store, clock):
    permission = await make_permission("REPORTS.READ")
    temp = await catalog.create_role("Temp")
    await role_store.assign(temp.id, permission.id)
    await assign_user_role(db, "7", temp.id, expires_at=clock.now() + timedelta(days=1))

    assert (await resolver.has_permission("7", "REPORTS.READ")).granted is True
    clock.advance(timedelta(days=1))
    assert (await resolver.has_permission("7", "REPORTS.READ")).granted is False


async def test_caller_supplied_roles_skip_membership_lookup(resolver, scenario):
    _, manager = scenario

    decision = await resolver.has_permission("someone-else", "EMPLOYEE.DELETE", active_role_ids=[manager.id])

    assert decision.granted is True
    assert decision.source == DecisionSource.ROLE


async def test_has_any_permission(resolver, scenario):
    decision = await resolver.has_any_permission("42", ["REPORTS.READ", "EMPLOYEE.DELETE"])
    assert decision.granted is True
    assert decision.code == "EMPLOYEE.DELETE"

    denied = await resolver.has_any_permission("42", ["REPORTS.READ", "NO.SUCH.CODE"])
    assert denied.granted is False
    assert denied.code == "NO.SUCH.CODE"


async def test_effective_permissions(db, resolver, scenario, catalog, make_permission, role_store, user_store):
    permission, manager = scenario
    export = await make_permission("REPORTS.EXPORT")
    read = await make_permission("REPORTS.READ")
    retired = await make_permission("REPORTS.ARCHIVE")
    await role_store.assign(manager.id, read.id)
    await role_store.assign(manager.id, retired.id)
    await catalog.deactivate(retired.id)
    await user_store.assign("42", export.id)
    await user_store.assign("42", read.id, is_granted=False)
    # A grant whose permission row has since been deleted is skipped
    purged = await make_permission("REPORTS.PURGE")
    await user_store.assign("42", purged.id)
    await db.delete(purged)
    await db.commit()

    effective = await resolver.get_effective_permissions("42")

    assert effective.role_ids == [manager.id]
    assert [e.code for e in effective.direct] == ["REPORTS.EXPORT"]
    assert [e.code for e in effective.role] == ["EMPLOYEE.DELETE"]
    assert effective.codes == {"EMPLOYEE.DELETE", "REPORTS.EXPORT"}
    assert effective.by_module == {"employee": ["EMPLOYEE.DELETE"], "reports": ["REPORTS.EXPORT"]}


# ----------------------------------------------------------------------------
# Failure handling
# ----------------------------------------------------------------------------

def _storage_down(*args, **kwargs):
    raise OperationalError("SELECT 1", None, Exception("database is locked"))


async def test_storage_failure_fails_closed_after_one_retry(resolver, scenario, monkeypatch):
    calls = []

    async def failing_check(self, *args):
        calls.append(args)
        _storage_down()

    monkeypatch.setattr(ResolutionEngine, "_check", failing_check)

    decision = await resolver.has_permission("42", "EMPLOYEE.DELETE")

    assert len(calls) == 2
    assert decision.granted is False
    assert decision.evaluation_unavailable is True
    assert decision.reason == "evaluation unavailable"


async def test_transient_failure_is_retried(resolver, scenario, monkeypatch):
    original = ResolutionEngine._check
    calls = []

    async def flaky_check(self, *args):
        calls.append(args)
        if len(calls) == 1:
            _storage_down()
        return await original(self, *args)

    monkeypatch.setattr(ResolutionEngine, "_check", flaky_check)

    decision = await resolver.has_permission("42", "EMPLOYEE.DELETE")

    assert len(calls) == 2
    assert decision.granted is True


async def test_timeout_fails_closed(session_factory, clock, scenario, monkeypatch):
    async def slow_check(self, *args):
        await asyncio.sleep(1)

    monkeypatch.setattr(ResolutionEngine, "_check", slow_check)
    engine = ResolutionEngine(session_factory, clock=clock, timeout=0.01)

    decision = await engine.has_permission("42", "EMPLOYEE.DELETE")

    assert decision.evaluation_unavailable is True


async def test_effective_permissions_propagate_storage_failure(resolver, monkeypatch):
    async def failing_effective(self, *args):
        _storage_down()

    monkeypatch.setattr(ResolutionEngine, "_effective", failing_effective)

    with pytest.raises(StorageUnavailableError):
        await resolver.get_effective_permissions("42")

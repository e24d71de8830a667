from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from access_engine.core.exceptions import NotFoundError, PartialBulkFailureError, ValidationError
from access_engine.features.assignments.store import OwnerType, UserPermissionStore
from access_engine.features.audit.service import list_audit_logs
from access_engine.features.bulk.manager import BulkOperationsManager


@pytest.fixture
def bulk(db, clock):
    return BulkOperationsManager(db, clock=clock)


@pytest.fixture
async def permissions(make_permission):
    codes = ["EMPLOYEE.READ", "EMPLOYEE.UPDATE", "EMPLOYEE.DELETE", "REPORTS.READ", "REPORTS.EXPORT"]
    return [await make_permission(code) for code in codes]


@pytest.fixture
def ids(permissions):
    return [p.id for p in permissions]


async def live_ids(store, owner_id):
    return {edge.permission_id for edge in await store.current_edges(owner_id)}


def fail_on_call(monkeypatch, n):
    """Make the n-th upsert raise a storage error."""
    original = UserPermissionStore.upsert_edge
    calls = []

    async def flaky(self, *args, **kwargs):
        calls.append(args)
        if len(calls) == n:
            raise OperationalError("INSERT", None, Exception("disk I/O error"))
        return await original(self, *args, **kwargs)

    monkeypatch.setattr(UserPermissionStore, "upsert_edge", flaky)
    return calls


async def test_bulk_assign_dedupes_and_classifies(bulk, user_store, ids):
    result = await bulk.bulk_assign(OwnerType.USER, "42", [ids[0], ids[1], ids[0]], assigned_by="admin")
    assert result.added == [ids[0], ids[1]]

    result = await bulk.bulk_assign(OwnerType.USER, "42", [ids[0], ids[2]], is_granted=True)
    assert result.unchanged == [ids[0]]
    assert result.added == [ids[2]]

    result = await bulk.bulk_assign(OwnerType.USER, "42", [ids[1]], is_granted=False, reason="restricted")
    assert result.updated == [ids[1]]
    assert (await user_store.get("42", ids[1])).is_granted is False


async def test_bulk_assign_rejects_missing_ids_before_writing(bulk, user_store, ids):
    with pytest.raises(NotFoundError) as excinfo:
        await bulk.bulk_assign(OwnerType.USER, "42", [ids[0], "missing-1", "missing-2"])

    assert excinfo.value.identifier == ["missing-1", "missing-2"]
    assert await live_ids(user_store, "42") == set()


async def test_bulk_assign_validates_input(bulk, ids, clock):
    with pytest.raises(ValidationError):
        await bulk.bulk_assign(OwnerType.USER, "42", [])
    with pytest.raises(ValidationError):
        await bulk.bulk_assign(OwnerType.USER, "42", [ids[0]], expires_at=clock.now() - timedelta(days=1))
    with pytest.raises(ValueError):
        await bulk.bulk_assign("group", "42", [ids[0]])


async def test_bulk_remove(bulk, user_store, ids):
    await bulk.bulk_assign(OwnerType.USER, "42", ids[:3])

    result = await bulk.bulk_remove(OwnerType.USER, "42", [ids[0], ids[4]])

    assert result.removed == [ids[0]]
    assert result.unchanged == [ids[4]]
    assert await live_ids(user_store, "42") == {ids[1], ids[2]}


async def test_sync_applies_symmetric_difference(bulk, user_store, ids, clock):
    await bulk.bulk_assign(OwnerType.USER, "42", ids[:3])
    before = (await user_store.get("42", ids[1])).assigned_at
    clock.advance(timedelta(minutes=5))

    result = await bulk.sync(OwnerType.USER, "42", [ids[1], ids[2], ids[3]])

    assert result.removed == [ids[0]]
    assert result.added == [ids[3]]
    assert sorted(result.unchanged) == sorted([ids[1], ids[2]])
    assert await live_ids(user_store, "42") == {ids[1], ids[2], ids[3]}
    # Matching edges keep their original assignment time
    assert (await user_store.get("42", ids[1])).assigned_at == before


async def test_sync_is_minimal_when_repeated(bulk, ids):
    await bulk.sync(OwnerType.USER, "42", ids[:2])

    again = await bulk.sync(OwnerType.USER, "42", ids[:2])

    assert again.added == []
    assert again.removed == []
    assert sorted(again.unchanged) == sorted(ids[:2])


async def test_sync_to_empty_removes_everything(bulk, user_store, ids):
    await bulk.bulk_assign(OwnerType.USER, "42", ids[:2])

    result = await bulk.sync(OwnerType.USER, "42", [])

    assert sorted(result.removed) == sorted(ids[:2])
    assert await live_ids(user_store, "42") == set()


async def test_copy_preserves_effects(bulk, user_store, ids, clock):
    expiry = clock.now() + timedelta(days=3)
    await user_store.assign("source", ids[0], is_granted=True)
    await user_store.assign("source", ids[1], is_granted=False, reason="restricted", expires_at=expiry)
    await user_store.assign("target", ids[2])

    result = await bulk.copy(OwnerType.USER, "source", "target", assigned_by="admin")

    assert sorted(result.added) == sorted(ids[:2])
    assert result.removed == [ids[2]]
    copied_deny = await user_store.get("target", ids[1])
    assert copied_deny.is_granted is False
    assert copied_deny.reason == "restricted"
    assert copied_deny.expires_at == expiry


async def test_copy_leaves_matching_target_edges_untouched(bulk, user_store, ids):
    await user_store.assign("source", ids[0], is_granted=True)
    await user_store.assign("target", ids[0], is_granted=False)

    result = await bulk.copy(OwnerType.USER, "source", "target")

    assert result.unchanged == [ids[0]]
    assert (await user_store.get("target", ids[0])).is_granted is False


async def test_copy_skips_expired_source_edges(bulk, user_store, ids, clock):
    await user_store.assign("source", ids[0])
    await user_store.assign("source", ids[1], expires_at=clock.now() + timedelta(minutes=1))
    clock.advance(timedelta(minutes=1))

    result = await bulk.copy(OwnerType.USER, "source", "target")

    assert result.added == [ids[0]]


async def test_copy_rules(bulk, user_store, ids):
    with pytest.raises(ValidationError):
        await bulk.copy(OwnerType.USER, "same", "same")

    await user_store.assign("target", ids[0])
    with pytest.raises(ValidationError):
        await bulk.copy(OwnerType.USER, "empty-source", "target")
    assert await live_ids(user_store, "target") == {ids[0]}

    result = await bulk.copy(OwnerType.USER, "empty-source", "target", allow_empty=True)
    assert result.removed == [ids[0]]


async def test_role_copy_requires_both_roles(db, clock, catalog, role_store, ids):
    manager = await catalog.create_role("Manager")
    await role_store.assign(manager.id, ids[0])
    bulk = BulkOperationsManager(db, clock=clock)

    with pytest.raises(NotFoundError):
        await bulk.copy(OwnerType.ROLE, manager.id, "missing-role")

    deputy = await catalog.create_role("Deputy")
    result = await bulk.copy(OwnerType.ROLE, manager.id, deputy.id)
    assert result.added == [ids[0]]


async def test_single_mode_failure_rolls_everything_back(bulk, user_store, ids, monkeypatch):
    fail_on_call(monkeypatch, 3)

    with pytest.raises(PartialBulkFailureError) as excinfo:
        await bulk.bulk_assign(OwnerType.USER, "42", ids)

    error = excinfo.value
    assert error.committed is False
    assert error.applied == []
    assert error.failed == [ids[2]]
    statuses = [outcome.status for outcome in error.report.outcomes]
    assert statuses == ["rolled_back", "rolled_back", "failed", "not_attempted", "not_attempted"]
    assert await live_ids(user_store, "42") == set()


async def test_staged_mode_failure_reports_committed_stages(db, clock, user_store, ids, monkeypatch):
    bulk = BulkOperationsManager(db, clock=clock, commit_mode="staged", stage_size=2)
    fail_on_call(monkeypatch, 3)

    with pytest.raises(PartialBulkFailureError) as excinfo:
        await bulk.bulk_assign(OwnerType.USER, "42", ids)

    error = excinfo.value
    assert error.committed is True
    assert error.applied == ids[:2]
    assert error.failed == [ids[2]]
    assert error.report.ids_with_status("not_attempted") == ids[3:]
    assert await live_ids(user_store, "42") == set(ids[:2])


async def test_sync_failure_keeps_previous_edge_set(bulk, user_store, ids, monkeypatch):
    await bulk.sync(OwnerType.USER, "42", ids[:2])
    fail_on_call(monkeypatch, 1)

    with pytest.raises(PartialBulkFailureError):
        await bulk.sync(OwnerType.USER, "42", ids[2:])

    assert await live_ids(user_store, "42") == set(ids[:2])


async def test_bulk_operations_are_audited(db, bulk, ids):
    await bulk.sync(OwnerType.USER, "42", ids[:2], assigned_by="admin")

    logs, total = await list_audit_logs(db, action="bulk_sync")

    assert total == 1
    assert logs[0].actor_id == "admin"
    assert sorted(logs[0].details["added"]) == sorted(ids[:2])


async def test_unknown_commit_mode_is_rejected(db):
    with pytest.raises(ValueError):
        BulkOperationsManager(db, commit_mode="eventually")

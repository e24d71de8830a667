"""
Bulk operations over one owner's edge set: assign, remove, sync and copy.

Each operation plans its writes first, then applies them while holding the
owner's lock. In "single" commit mode the plan runs in one transaction; in
"staged" mode it commits every BULK_STAGE_SIZE steps. Any failure surfaces as
PartialBulkFailureError with per-permission outcomes.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional
from sqlalchemy.ext.asyncio import AsyncSession

from access_engine.core import config
from access_engine.core.clock import Clock, SystemClock, as_utc
from access_engine.core.database.engine import storage_errors
from access_engine.core.exceptions import (
    BulkFailureReport,
    BulkItemOutcome,
    NotFoundError,
    PartialBulkFailureError,
    ValidationError,
)
from access_engine.features.assignments.store import EdgeStore, OwnerLockRegistry, OwnerType, store_for
from access_engine.features.audit.service import record_audit
from access_engine.features.permissions.catalog import PermissionCatalog
from access_engine.utils import get_logger


log = get_logger(__name__)

COMMIT_MODES = ("single", "staged")


@dataclass
class BulkResult:
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "added": list(self.added),
            "removed": list(self.removed),
            "updated": list(self.updated),
            "unchanged": list(self.unchanged),
        }

    def summary(self) -> str:
        return (
            f"added={len(self.added)} removed={len(self.removed)} "
            f"updated={len(self.updated)} unchanged={len(self.unchanged)}"
        )


@dataclass
class _Step:
    permission_id: str
    kind: str  # add | update | remove
    is_granted: bool = True
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None


def _dedupe(permission_ids: Iterable[str]) -> list[str]:
    if permission_ids is None:
        raise ValidationError("permission_ids is required", {"field": "permission_ids"})
    ids = []
    for permission_id in permission_ids:
        if not permission_id or not str(permission_id).strip():
            raise ValidationError("permission ids must be non-empty strings", {"field": "permission_ids"})
        ids.append(permission_id)
    return list(dict.fromkeys(ids))


def _same_effect(edge, is_granted: bool, expires_at: Optional[datetime], reason: Optional[str]) -> bool:
    return (
        edge.is_granted == bool(is_granted)
        and as_utc(edge.expires_at) == as_utc(expires_at)
        and getattr(edge, "reason", None) == reason
    )


class BulkOperationsManager:
    def __init__(
        self,
        db: AsyncSession,
        clock: Optional[Clock] = None,
        locks: Optional[OwnerLockRegistry] = None,
        commit_mode: Optional[str] = None,
        stage_size: Optional[int] = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.locks = locks
        self.commit_mode = (commit_mode or config.BULK_COMMIT_MODE).lower()
        if self.commit_mode not in COMMIT_MODES:
            raise ValueError(f"Unknown bulk commit mode {self.commit_mode!r}; expected one of {COMMIT_MODES}")
        self.stage_size = stage_size or config.BULK_STAGE_SIZE
        if self.stage_size < 1:
            raise ValueError("Bulk stage size must be at least 1")

    def _store(self, owner_type: OwnerType) -> EdgeStore:
        return store_for(owner_type, self.db, clock=self.clock, locks=self.locks)

    async def _require_permissions(self, store: EdgeStore, permission_ids: list[str]) -> dict:
        permissions = await PermissionCatalog(self.db).existing_ids(permission_ids)
        missing = [permission_id for permission_id in permission_ids if permission_id not in permissions]
        if missing:
            raise NotFoundError("Permission", missing)
        inactive = [p.code for p in permissions.values() if not p.is_active]
        if inactive:
            if not store.allow_inactive_permissions:
                raise ValidationError("Inactive permissions cannot be assigned", {"codes": sorted(inactive)})
            log.warning(f"Bulk assignment includes inactive permissions: {sorted(inactive)}")
        return permissions

    async def _existing_edges(self, store: EdgeStore, owner_id: str, permission_ids: list[str]) -> dict:
        edges = {}
        with storage_errors(f"load {store.owner_type.value} edges"):
            for permission_id in permission_ids:
                edge = await store.get(owner_id, permission_id)
                if edge is not None:
                    edges[permission_id] = edge
        return edges

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def bulk_assign(
        self,
        owner_type: OwnerType,
        owner_id: str,
        permission_ids: Iterable[str],
        is_granted: bool = True,
        expires_at: Optional[datetime] = None,
        assigned_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> BulkResult:
        """
        Assign the same effect to every listed permission as one unit.

        Edges that already carry the requested effect, expiry and reason are
        reported unchanged and not rewritten.
        """
        owner_type = OwnerType(owner_type)
        store = self._store(owner_type)
        ids = _dedupe(permission_ids)
        if not ids:
            raise ValidationError("permission_ids must not be empty", {"field": "permission_ids"})
        now = self.clock.now()
        expires_at = store.validate_assignment(owner_id, ids[0], expires_at, reason, now)

        async with store.locks.hold(owner_type, owner_id):
            with storage_errors("bulk assign"):
                await store.check_owner(owner_id)
                await self._require_permissions(store, ids)
            existing = await self._existing_edges(store, owner_id, ids)

            result = BulkResult()
            steps = []
            for permission_id in ids:
                edge = existing.get(permission_id)
                if edge is None:
                    steps.append(_Step(permission_id, "add", is_granted, expires_at, reason))
                    result.added.append(permission_id)
                elif _same_effect(edge, is_granted, expires_at, reason):
                    result.unchanged.append(permission_id)
                else:
                    steps.append(_Step(permission_id, "update", is_granted, expires_at, reason))
                    result.updated.append(permission_id)

            await self._apply("assign", store, owner_id, steps, assigned_by, now, {"is_granted": bool(is_granted)})

        log.info(f"Bulk assign for {owner_type.value} {owner_id} by {assigned_by}: {result.summary()}")
        return result

    async def bulk_remove(
        self,
        owner_type: OwnerType,
        owner_id: str,
        permission_ids: Iterable[str],
        removed_by: Optional[str] = None,
    ) -> BulkResult:
        owner_type = OwnerType(owner_type)
        store = self._store(owner_type)
        store.validate_owner_id(owner_id)
        ids = _dedupe(permission_ids)
        now = self.clock.now()

        async with store.locks.hold(owner_type, owner_id):
            existing = await self._existing_edges(store, owner_id, ids)

            result = BulkResult()
            steps = []
            for permission_id in ids:
                if permission_id in existing:
                    steps.append(_Step(permission_id, "remove"))
                    result.removed.append(permission_id)
                else:
                    result.unchanged.append(permission_id)

            await self._apply("remove", store, owner_id, steps, removed_by, now)

        log.info(f"Bulk remove for {owner_type.value} {owner_id} by {removed_by}: {result.summary()}")
        return result

    async def sync(
        self,
        owner_type: OwnerType,
        owner_id: str,
        desired_permission_ids: Iterable[str],
        assigned_by: Optional[str] = None,
    ) -> BulkResult:
        """
        Make the owner's live edge set equal to desired_permission_ids.

        Undesired edges are removed, new ones are added as plain grants, and
        edges already present are left untouched.
        """
        owner_type = OwnerType(owner_type)
        store = self._store(owner_type)
        store.validate_owner_id(owner_id)
        desired = _dedupe(desired_permission_ids)
        now = self.clock.now()

        async with store.locks.hold(owner_type, owner_id):
            with storage_errors("sync"):
                await store.check_owner(owner_id)
                if desired:
                    await self._require_permissions(store, desired)
            current = {edge.permission_id: edge for edge in await store.current_edges(owner_id, now)}

            result = BulkResult()
            steps = []
            for permission_id in sorted(set(current) - set(desired)):
                steps.append(_Step(permission_id, "remove"))
                result.removed.append(permission_id)
            for permission_id in desired:
                if permission_id in current:
                    result.unchanged.append(permission_id)
                else:
                    steps.append(_Step(permission_id, "add", True, None, None))
                    result.added.append(permission_id)

            await self._apply("sync", store, owner_id, steps, assigned_by, now)

        log.info(f"Sync for {owner_type.value} {owner_id} by {assigned_by}: {result.summary()}")
        return result

    async def copy(
        self,
        owner_type: OwnerType,
        source_owner_id: str,
        target_owner_id: str,
        assigned_by: Optional[str] = None,
        allow_empty: bool = False,
    ) -> BulkResult:
        """
        Sync the target to the source's live edge set.

        Added edges keep the source edge's effect, expiry and reason. Source
        edges whose permission no longer exists are not copied.
        """
        owner_type = OwnerType(owner_type)
        store = self._store(owner_type)
        store.validate_owner_id(source_owner_id)
        store.validate_owner_id(target_owner_id)
        if source_owner_id == target_owner_id:
            raise ValidationError(
                "Source and target must differ", {"source": source_owner_id, "target": target_owner_id}
            )
        now = self.clock.now()

        async with store.locks.hold(owner_type, target_owner_id):
            with storage_errors("copy"):
                await store.check_owner(source_owner_id)
                await store.check_owner(target_owner_id)
            source_edges = await store.current_edges(source_owner_id, now)
            known = await PermissionCatalog(self.db).existing_ids(edge.permission_id for edge in source_edges)
            dangling = [edge.permission_id for edge in source_edges if edge.permission_id not in known]
            if dangling:
                log.warning(f"Copy skipping dangling permission references from {source_owner_id}: {dangling}")
            source = {edge.permission_id: edge for edge in source_edges if edge.permission_id in known}

            if not source and not allow_empty:
                raise ValidationError(
                    f"Source {owner_type.value} '{source_owner_id}' has no current permissions; "
                    "pass allow_empty to clear the target",
                    {"source": source_owner_id},
                )

            current = {edge.permission_id: edge for edge in await store.current_edges(target_owner_id, now)}

            result = BulkResult()
            steps = []
            for permission_id in sorted(set(current) - set(source)):
                steps.append(_Step(permission_id, "remove"))
                result.removed.append(permission_id)
            for permission_id in sorted(source):
                if permission_id in current:
                    result.unchanged.append(permission_id)
                    continue
                edge = source[permission_id]
                steps.append(_Step(
                    permission_id, "add", edge.is_granted, edge.expires_at, getattr(edge, "reason", None)
                ))
                result.added.append(permission_id)

            await self._apply(
                "copy", store, target_owner_id, steps, assigned_by, now, {"source": source_owner_id}
            )

        log.info(
            f"Copy {owner_type.value} {source_owner_id} -> {target_owner_id} by {assigned_by}: {result.summary()}"
        )
        return result

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def _stages(self, steps: list[_Step]) -> list[list[_Step]]:
        if self.commit_mode == "single":
            return [steps]
        return [steps[i:i + self.stage_size] for i in range(0, len(steps), self.stage_size)]

    async def _execute(self, store: EdgeStore, owner_id: str, step: _Step, actor: Optional[str], now: datetime) -> None:
        if step.kind == "remove":
            await store.delete_edge(owner_id, step.permission_id)
        else:
            await store.upsert_edge(
                owner_id, step.permission_id, step.is_granted, step.expires_at, actor, step.reason, now
            )

    async def _apply(
        self,
        operation: str,
        store: EdgeStore,
        owner_id: str,
        steps: list[_Step],
        actor: Optional[str],
        now: datetime,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        if not steps:
            return

        outcomes = {step.permission_id: BulkItemOutcome(step.permission_id, "not_attempted") for step in steps}
        committed = False

        for stage in self._stages(steps):
            executed: list[_Step] = []
            failing: Optional[_Step] = None
            try:
                for step in stage:
                    failing = step
                    await self._execute(store, owner_id, step, actor, now)
                    executed.append(step)
                failing = None
                record_audit(
                    self.db, actor, f"bulk_{operation}", store.owner_type.value, owner_id,
                    {
                        **(details or {}),
                        "added": [s.permission_id for s in stage if s.kind == "add"],
                        "updated": [s.permission_id for s in stage if s.kind == "update"],
                        "removed": [s.permission_id for s in stage if s.kind == "remove"],
                    },
                )
                await self.db.commit()
            except Exception as e:
                await self.db.rollback()
                detail = f"{type(e).__name__}: {e}"
                if failing is not None:
                    for step in executed:
                        outcomes[step.permission_id].status = "rolled_back"
                    outcomes[failing.permission_id].status = "failed"
                    outcomes[failing.permission_id].detail = detail
                else:
                    # The commit itself failed; every step of the stage is lost
                    for step in executed:
                        outcomes[step.permission_id].status = "failed"
                        outcomes[step.permission_id].detail = detail

                report = BulkFailureReport(
                    operation=operation,
                    owner_type=store.owner_type.value,
                    owner_id=owner_id,
                    committed=committed,
                    outcomes=[outcomes[step.permission_id] for step in steps],
                )
                log.warning(
                    f"Bulk {operation} for {store.owner_type.value} {owner_id} failed "
                    f"({'partially applied' if committed else 'rolled back'}): {e}"
                )
                raise PartialBulkFailureError(report) from e

            for step in stage:
                outcomes[step.permission_id].status = "applied"
            committed = True

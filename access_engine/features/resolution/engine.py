"""
Resolution engine: answers "does user U hold permission P right now?".

Order of evaluation:
1. Unknown or inactive permission code: denied
2. Role edges of the user's active roles, deny wins among roles
3. A live user override replaces the role verdict

Storage failures and timeouts are retried once; if the retry fails too the
engine fails closed with evaluation_unavailable=True.
"""
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Sequence
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from access_engine.core import config
from access_engine.core.clock import Clock, SystemClock, as_utc
from access_engine.core.database.engine import storage_errors
from access_engine.core.exceptions import StorageUnavailableError, ValidationError
from access_engine.features.permissions.models import Permission, Role, RolePermission, UserPermission
from access_engine.features.resolution.effects import (
    DecisionSource,
    PermissionDecision,
    decide,
    effect_from_edge,
)
from access_engine.features.resolution.membership import RoleMembershipProvider, SQLRoleMembership
from access_engine.utils import get_logger


log = get_logger(__name__)

retry_storage_once = retry(
    stop=stop_after_attempt(2),
    wait=wait_fixed(config.RESOLUTION_RETRY_BACKOFF_SECONDS),
    retry=retry_if_exception_type(StorageUnavailableError),
    before_sleep=before_sleep_log(log, logging.WARNING),
    reraise=True,
)


@dataclass(frozen=True)
class EffectivePermission:
    permission_id: str
    code: str
    name: str
    module: str
    action: str
    resource_template: str
    source: DecisionSource
    expires_at: Optional[datetime] = None


@dataclass
class EffectivePermissions:
    user_id: str
    evaluated_at: datetime
    role_ids: list[str] = field(default_factory=list)
    direct: list[EffectivePermission] = field(default_factory=list)
    role: list[EffectivePermission] = field(default_factory=list)
    effective: list[EffectivePermission] = field(default_factory=list)
    by_module: dict[str, list[str]] = field(default_factory=dict)

    @property
    def codes(self) -> set[str]:
        return {entry.code for entry in self.effective}


class ResolutionEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Optional[Clock] = None,
        membership: Optional[RoleMembershipProvider] = None,
        timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.membership = membership or SQLRoleMembership()
        self.timeout = config.RESOLUTION_TIMEOUT_SECONDS if timeout is None else timeout

    def _instant(self, now: Optional[datetime]) -> datetime:
        return as_utc(now) or self.clock.now()

    # ------------------------------------------------------------------
    # Single permission
    # ------------------------------------------------------------------

    async def has_permission(
        self,
        user_id: str,
        code: str,
        resource: Optional[str] = None,
        now: Optional[datetime] = None,
        active_role_ids: Optional[Sequence[str]] = None,
    ) -> PermissionDecision:
        if not code:
            raise ValidationError("permission code is required", {"field": "code"})
        now = self._instant(now)

        try:
            decision = await self._check_with_retry(user_id, code, resource, now, active_role_ids)
        except StorageUnavailableError as e:
            log.warning(f"Failing closed for user {user_id} on {code}: {e.message}")
            return PermissionDecision.unavailable(code, resource)

        log.debug(
            f"Decision user={user_id} code={code} granted={decision.granted} "
            f"source={decision.source.value} reason={decision.reason!r}"
        )
        return decision

    @retry_storage_once
    async def _check_with_retry(self, user_id, code, resource, now, active_role_ids) -> PermissionDecision:
        with storage_errors(f"resolve {code}"):
            return await asyncio.wait_for(
                self._check(user_id, code, resource, now, active_role_ids), timeout=self.timeout
            )

    async def _check(self, user_id, code, resource, now, active_role_ids) -> PermissionDecision:
        async with self.session_factory() as db:
            result = await db.execute(select(Permission).where(Permission.code == code))
            permission = result.scalars().first()
            if permission is None or not permission.is_active:
                return PermissionDecision.unknown(code, resource)

            role_ids = await self._role_ids(db, user_id, now, active_role_ids)
            role_edges = await self._role_edges(db, role_ids, [permission.id])
            result = await db.execute(
                select(UserPermission).where(
                    UserPermission.user_id == user_id, UserPermission.permission_id == permission.id
                )
            )
            override_edge = result.scalars().first()

        return decide(
            code=permission.code,
            permission_id=permission.id,
            role_effects=[effect_from_edge(edge) for edge in role_edges],
            override=effect_from_edge(override_edge) if override_edge is not None else None,
            now=now,
            resource_template=permission.resource_template,
            resource=resource,
        )

    async def has_any_permission(
        self,
        user_id: str,
        codes: Iterable[str],
        resource: Optional[str] = None,
        now: Optional[datetime] = None,
        active_role_ids: Optional[Sequence[str]] = None,
    ) -> PermissionDecision:
        """First granted decision, else the last denial; an unavailable check wins over a plain denial."""
        codes = list(codes)
        if not codes:
            raise ValidationError("at least one permission code is required", {"field": "codes"})
        now = self._instant(now)

        decision = None
        unavailable = None
        for code in codes:
            decision = await self.has_permission(user_id, code, resource, now, active_role_ids)
            if decision.granted:
                return decision
            if decision.evaluation_unavailable and unavailable is None:
                unavailable = decision
        return unavailable or decision

    # ------------------------------------------------------------------
    # Effective permission set
    # ------------------------------------------------------------------

    async def get_effective_permissions(
        self,
        user_id: str,
        now: Optional[datetime] = None,
        active_role_ids: Optional[Sequence[str]] = None,
    ) -> EffectivePermissions:
        """
        Every granted permission reachable through the user's active roles or overrides.

        Unlike has_permission this does not fail closed; StorageUnavailableError
        propagates after the retry so callers can distinguish "nothing granted"
        from "could not tell".
        """
        now = self._instant(now)
        effective = await self._effective_with_retry(user_id, now, active_role_ids)
        log.debug(f"Effective permissions for {user_id}: {len(effective.effective)} granted")
        return effective

    @retry_storage_once
    async def _effective_with_retry(self, user_id, now, active_role_ids) -> EffectivePermissions:
        with storage_errors(f"resolve effective permissions for {user_id}"):
            return await asyncio.wait_for(self._effective(user_id, now, active_role_ids), timeout=self.timeout)

    async def _effective(self, user_id, now, active_role_ids) -> EffectivePermissions:
        async with self.session_factory() as db:
            role_ids = await self._role_ids(db, user_id, now, active_role_ids)
            role_edges = await self._role_edges(db, role_ids)
            result = await db.execute(select(UserPermission).where(UserPermission.user_id == user_id))
            overrides = {edge.permission_id: edge for edge in result.scalars().all()}

            permission_ids = {edge.permission_id for edge in role_edges} | set(overrides)
            permissions = {}
            if permission_ids:
                result = await db.execute(
                    select(Permission).where(Permission.id.in_(permission_ids), Permission.is_active.is_(True))
                )
                permissions = {permission.id: permission for permission in result.scalars().all()}

        edges_by_permission = defaultdict(list)
        for edge in role_edges:
            edges_by_permission[edge.permission_id].append(edge)

        effective = EffectivePermissions(user_id=user_id, evaluated_at=now, role_ids=list(role_ids))
        by_module = defaultdict(list)

        # Dangling ids and inactive permissions have no entry in `permissions`
        for permission in sorted(permissions.values(), key=lambda p: p.code):
            override = overrides.get(permission.id)
            decision = decide(
                code=permission.code,
                permission_id=permission.id,
                role_effects=[effect_from_edge(edge) for edge in edges_by_permission[permission.id]],
                override=effect_from_edge(override) if override is not None else None,
                now=now,
                resource_template=permission.resource_template,
            )
            if not decision.granted:
                continue

            entry = EffectivePermission(
                permission_id=permission.id,
                code=permission.code,
                name=permission.name,
                module=permission.module,
                action=permission.action,
                resource_template=permission.resource_template,
                source=decision.source,
                expires_at=decision.expires_at,
            )
            effective.effective.append(entry)
            if decision.source == DecisionSource.USER:
                effective.direct.append(entry)
            else:
                effective.role.append(entry)
            by_module[permission.module].append(permission.code)

        effective.by_module = dict(by_module)
        return effective

    # ------------------------------------------------------------------
    # Loading helpers
    # ------------------------------------------------------------------

    async def _role_ids(self, db: AsyncSession, user_id: str, now: datetime, active_role_ids) -> list[str]:
        if active_role_ids is not None:
            return list(dict.fromkeys(active_role_ids))
        return await self.membership.active_role_ids(db, user_id, now)

    async def _role_edges(
        self, db: AsyncSession, role_ids: Sequence[str], permission_ids: Optional[Sequence[str]] = None
    ) -> list[RolePermission]:
        if not role_ids:
            return []
        # Deactivated roles contribute nothing, even when supplied by the caller
        stmt = (
            select(RolePermission)
            .join(Role, Role.id == RolePermission.role_id)
            .where(RolePermission.role_id.in_(role_ids), Role.is_active.is_(True))
        )
        if permission_ids is not None:
            stmt = stmt.where(RolePermission.permission_id.in_(permission_ids))
        result = await db.execute(stmt)
        return list(result.scalars().all())

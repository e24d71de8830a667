"""
Grant/Deny effects and the precedence rules that combine them.

Nothing in this module touches storage; the engine loads edges, turns them
into effects, and hands them to decide().
"""
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Union

from access_engine.core.clock import as_utc


@dataclass(frozen=True)
class _Effect:
    permission_id: str
    owner_id: str
    assigned_at: Optional[datetime] = None
    assigned_by: Optional[str] = None
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None

    def is_active_at(self, now: datetime) -> bool:
        # Valid on [assigned_at, expires_at)
        return self.expires_at is None or as_utc(now) < as_utc(self.expires_at)


@dataclass(frozen=True)
class Grant(_Effect):
    pass


@dataclass(frozen=True)
class Deny(_Effect):
    pass


Effect = Union[Grant, Deny]


def effect_from_edge(edge, owner_id: Optional[str] = None) -> Effect:
    """Build the effect for a RolePermission or UserPermission row."""
    kind = Grant if edge.is_granted else Deny
    return kind(
        permission_id=edge.permission_id,
        owner_id=owner_id or getattr(edge, "user_id", None) or getattr(edge, "role_id"),
        assigned_at=edge.assigned_at,
        assigned_by=edge.assigned_by,
        expires_at=edge.expires_at,
        reason=getattr(edge, "reason", None),
    )


class DecisionSource(str, enum.Enum):
    USER = "User"
    ROLE = "Role"
    NONE = "None"


REASON_UNKNOWN_PERMISSION = "unknown or inactive permission"
REASON_NO_GRANT = "no grant found"
REASON_UNAVAILABLE = "evaluation unavailable"


@dataclass(frozen=True)
class PermissionDecision:
    granted: bool
    source: DecisionSource
    reason: str
    code: Optional[str] = None
    permission_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    override_reason: Optional[str] = None
    resource_template: str = ""
    resource: Optional[str] = None
    evaluation_unavailable: bool = False

    def __bool__(self) -> bool:
        return self.granted

    @classmethod
    def unknown(cls, code: str, resource: Optional[str] = None) -> "PermissionDecision":
        return cls(granted=False, source=DecisionSource.NONE, reason=REASON_UNKNOWN_PERMISSION,
                   code=code, resource=resource)

    @classmethod
    def unavailable(cls, code: str, resource: Optional[str] = None) -> "PermissionDecision":
        return cls(granted=False, source=DecisionSource.NONE, reason=REASON_UNAVAILABLE,
                   code=code, resource=resource, evaluation_unavailable=True)


@dataclass(frozen=True)
class RoleVerdict:
    granted: bool
    effects: tuple[Effect, ...]

    @property
    def expires_at(self) -> Optional[datetime]:
        return latest_expiry(self.effects)

    @property
    def role_ids(self) -> list[str]:
        return [effect.owner_id for effect in self.effects]


def latest_expiry(effects: Iterable[Effect]) -> Optional[datetime]:
    """Latest expiry among the deciding effects; unbounded if any of them is."""
    expiries = []
    for effect in effects:
        if effect.expires_at is None:
            return None
        expiries.append(as_utc(effect.expires_at))
    return max(expiries) if expiries else None


def combine_role_effects(effects: Iterable[Effect], now: datetime) -> Optional[RoleVerdict]:
    """
    Deny wins among roles: any active Deny denies, else any active Grant grants.
    Returns None when no role edge applies.
    """
    grants: list[Effect] = []
    denies: list[Effect] = []
    for effect in effects:
        if not effect.is_active_at(now):
            continue
        if isinstance(effect, Deny):
            denies.append(effect)
        elif isinstance(effect, Grant):
            grants.append(effect)
    if denies:
        return RoleVerdict(granted=False, effects=tuple(denies))
    if grants:
        return RoleVerdict(granted=True, effects=tuple(grants))
    return None


def decide(
    code: str,
    permission_id: str,
    role_effects: Iterable[Effect],
    override: Optional[Effect],
    now: datetime,
    resource_template: str = "",
    resource: Optional[str] = None,
) -> PermissionDecision:
    """A live user override is returned verbatim; otherwise the role verdict applies."""
    common = dict(code=code, permission_id=permission_id, resource_template=resource_template or "", resource=resource)

    if override is not None and override.is_active_at(now):
        granted = isinstance(override, Grant)
        return PermissionDecision(
            granted=granted,
            source=DecisionSource.USER,
            reason="granted by user override" if granted else "denied by user override",
            expires_at=override.expires_at,
            override_reason=override.reason,
            **common,
        )

    verdict = combine_role_effects(role_effects, now)
    if verdict is None:
        return PermissionDecision(granted=False, source=DecisionSource.NONE, reason=REASON_NO_GRANT, **common)

    roles = ", ".join(verdict.role_ids)
    return PermissionDecision(
        granted=verdict.granted,
        source=DecisionSource.ROLE,
        reason=f"granted by role(s) {roles}" if verdict.granted else f"denied by role(s) {roles}",
        expires_at=verdict.expires_at,
        **common,
    )

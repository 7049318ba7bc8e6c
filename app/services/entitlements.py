"""
Entitlement Resolver

Works out what a tenant may use: the set of feature codes and the map of
numeric limits. Three sources feed it:

1. the tenant's plan (features list, limits map; "*" grants everything)
2. the tenant's non-expired add-ons that are available for its plan
   (feature add-ons grant one code, limit_boost add-ons raise limits)
3. feature toggles (tenant toggles override plan/add-ons, a disabled
   global toggle switches the feature off for everyone)

The merge is a pure function over snapshots (reduce_entitlements) so it
can be tested without a database. EntitlementResolver loads the snapshots
and keeps a short per-tenant TTL cache that MUST be invalidated on plan
change, add-on assign/remove, and toggle mutation.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from app.config import get_settings
from app.core.clock import Clock, system_clock
from app.core.exceptions import FeatureNotAvailable, LimitExceededError
from app.core.features import ALL_FEATURE_CODES, BOOST_KEYS, FEATURE_ALL
from app.models.plan import AddonType, FeatureToggle, TenantAddon
from app.models.tenant import Tenant
import logging

logger = logging.getLogger(__name__)

UNLIMITED = -1


@dataclass(frozen=True)
class PlanSnapshot:
    code: str
    features: Tuple[str, ...] = ()
    limits: Mapping[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class AddonSnapshot:
    code: str
    addon_type: str
    value: Mapping[str, object] = field(default_factory=dict)
    available_for_plans: Tuple[str, ...] = ()
    started_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def active_at(self, now: datetime) -> bool:
        if self.started_at is not None and self.started_at > now:
            return False
        return self.expires_at is None or self.expires_at > now

    def applies_to(self, plan_code: Optional[str]) -> bool:
        return not self.available_for_plans or plan_code in self.available_for_plans


@dataclass(frozen=True)
class ToggleSnapshot:
    code: str
    is_enabled: bool
    is_global: bool = False


@dataclass(frozen=True)
class Entitlements:
    """Effective features and limits for one tenant at one point in time."""
    features: FrozenSet[str]
    limits: Mapping[str, int]
    wildcard: bool = False
    disabled: FrozenSet[str] = frozenset()
    plan_code: Optional[str] = None

    def has(self, code: str) -> bool:
        if not code or code in self.disabled:
            return False
        return self.wildcard or code in self.features

    def has_all(self, codes: Iterable[str]) -> bool:
        return all(self.has(c) for c in codes)

    def has_any(self, codes: Iterable[str]) -> bool:
        return any(self.has(c) for c in codes)

    def feature_codes(self) -> FrozenSet[str]:
        granted = set(self.features)
        if self.wildcard:
            granted |= ALL_FEATURE_CODES
        granted.discard(FEATURE_ALL)
        return frozenset(granted - self.disabled)

    def limit(self, name: str) -> int:
        return int(self.limits.get(name, 0))

    def within(self, name: str, usage: int) -> bool:
        value = self.limit(name)
        return value == UNLIMITED or usage < value

    def remaining(self, name: str, usage: int) -> int:
        value = self.limit(name)
        if value == UNLIMITED:
            return UNLIMITED
        return max(0, value - usage)


def _as_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def reduce_entitlements(
    plan: Optional[PlanSnapshot],
    addons: Sequence[AddonSnapshot],
    toggles: Sequence[ToggleSnapshot],
    now: datetime,
) -> Entitlements:
    """Merge plan, add-ons and toggles into effective entitlements."""
    plan_code = plan.code if plan else None
    features = set(plan.features) if plan else set()

    limits: Dict[str, int] = {}
    if plan:
        for name, raw in plan.limits.items():
            value = _as_int(raw)
            if value is not None:
                limits[name] = value

    for addon in addons:
        if not addon.active_at(now) or not addon.applies_to(plan_code):
            continue
        if addon.addon_type == AddonType.FEATURE:
            code = addon.value.get("feature")
            if code:
                features.add(str(code))
        elif addon.addon_type == AddonType.LIMIT_BOOST:
            for key, raw in addon.value.items():
                name = BOOST_KEYS.get(key)
                boost = _as_int(raw)
                if name is None or boost is None:
                    continue
                current = limits.get(name, 0)
                # -1 is absorbing
                if current == UNLIMITED or boost == UNLIMITED:
                    limits[name] = UNLIMITED
                else:
                    limits[name] = current + boost

    disabled = set()
    for toggle in toggles:
        if toggle.is_global:
            continue
        if toggle.is_enabled:
            features.add(toggle.code)
            disabled.discard(toggle.code)
        else:
            features.discard(toggle.code)
            disabled.add(toggle.code)

    # Global toggles only switch features off
    for toggle in toggles:
        if toggle.is_global and not toggle.is_enabled:
            features.discard(toggle.code)
            disabled.add(toggle.code)

    wildcard = FEATURE_ALL in features
    features.discard(FEATURE_ALL)

    return Entitlements(
        features=frozenset(features),
        limits=dict(limits),
        wildcard=wildcard,
        disabled=frozenset(disabled),
        plan_code=plan_code,
    )


class EntitlementResolver:
    """
    Loads entitlement snapshots from the database and memoizes the result
    per tenant for `ttl`.

    Thread-safe: request handlers, schedulers and queue workers share one
    instance per process.
    """

    def __init__(self, ttl: timedelta, clock: Clock = system_clock):
        self.ttl = ttl
        self.clock = clock
        self._cache: Dict[str, Tuple[datetime, Entitlements]] = {}
        # Bumped by invalidate(); a load that straddles one is not stored
        self._generations: Dict[str, int] = {}
        self._global_generation = 0
        self._lock = Lock()

    def load_snapshots(self, db: Session, tenant_id: str):
        tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
        plan = None
        if tenant is not None and tenant.plan is not None:
            plan = PlanSnapshot(
                code=tenant.plan.code,
                features=tuple(tenant.plan.features or ()),
                limits=dict(tenant.plan.limits or {}),
            )

        addons = [
            AddonSnapshot(
                code=ta.addon.code,
                addon_type=ta.addon.addon_type,
                value=dict(ta.addon.value or {}),
                available_for_plans=tuple(ta.addon.available_for_plans or ()),
                started_at=ta.started_at,
                expires_at=ta.expires_at,
            )
            for ta in db.query(TenantAddon).filter(TenantAddon.tenant_id == tenant_id).all()
            if ta.addon is not None and ta.addon.is_active
        ]

        toggles = [
            ToggleSnapshot(code=t.code, is_enabled=t.is_enabled, is_global=t.tenant_id is None)
            for t in db.query(FeatureToggle).filter(
                (FeatureToggle.tenant_id == tenant_id) | (FeatureToggle.tenant_id.is_(None))
            ).all()
        ]
        return plan, addons, toggles

    def resolve(self, db: Session, tenant_id: str) -> Entitlements:
        now = self.clock.now()
        with self._lock:
            cached = self._cache.get(tenant_id)
            if cached and cached[0] > now:
                return cached[1]
            generation = self._generation(tenant_id)

        plan, addons, toggles = self.load_snapshots(db, tenant_id)
        result = reduce_entitlements(plan, addons, toggles, now)

        with self._lock:
            if self._generation(tenant_id) == generation:
                self._cache[tenant_id] = (now + self.ttl, result)
            else:
                logger.debug(f"Entitlements for tenant {tenant_id} changed during load; not cached")
        return result

    def _generation(self, tenant_id: str) -> Tuple[int, int]:
        return self._global_generation, self._generations.get(tenant_id, 0)

    def invalidate(self, tenant_id: str) -> None:
        with self._lock:
            self._cache.pop(tenant_id, None)
            self._generations[tenant_id] = self._generations.get(tenant_id, 0) + 1
        logger.debug(f"Entitlement cache invalidated for tenant {tenant_id}")

    def invalidate_all(self) -> None:
        with self._lock:
            self._cache.clear()
            self._global_generation += 1
        logger.debug("Entitlement cache cleared")

    # Convenience wrappers

    def has(self, db: Session, tenant_id: str, code: str) -> bool:
        return self.resolve(db, tenant_id).has(code)

    def within(self, db: Session, tenant_id: str, name: str, usage: int) -> bool:
        return self.resolve(db, tenant_id).within(name, usage)

    def require_features(self, db: Session, tenant_id: str, codes: Iterable[str]) -> None:
        codes = list(codes)
        ent = self.resolve(db, tenant_id)
        missing = [c for c in codes if not ent.has(c)]
        if missing:
            raise FeatureNotAvailable(missing)

    def check_limit(self, db: Session, tenant_id: str, name: str, usage: int, adding: int = 1) -> None:
        """Raise LimitExceededError unless `adding` more units fit under the limit."""
        ent = self.resolve(db, tenant_id)
        value = ent.limit(name)
        if value == UNLIMITED:
            return
        if usage + adding > value:
            raise LimitExceededError(name, value, usage)


_resolver: Optional[EntitlementResolver] = None
_resolver_lock = Lock()


def get_entitlement_resolver() -> EntitlementResolver:
    """Process-wide resolver."""
    global _resolver
    with _resolver_lock:
        if _resolver is None:
            _resolver = EntitlementResolver(get_settings().entitlement_cache_ttl)
        return _resolver


def set_entitlement_resolver(resolver: Optional[EntitlementResolver]) -> None:
    global _resolver
    with _resolver_lock:
        _resolver = resolver

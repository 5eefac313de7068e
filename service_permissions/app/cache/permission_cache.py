"""
Per-user permission cache.

The cache holds packed rule sets, never the authoritative copy: that lives on
the user record. Lookups go cache → persisted packed form → compile, and
concurrent misses for the same user share a single load.
"""

import asyncio
import json
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from shared.logging import get_logger
from shared.errors import MalformedRuleSet, RoleDataUnavailable
from shared.metrics import MetricsCollector
from ..rules.codec import pack_rules, unpack_rules, loads_rules
from ..rules.compiler import AbilityCompiler, RoleDataSource, build_user_context
from ..rules.models import RuleSet


DEFAULT_TTL_SECONDS = 300


class CacheBackend(Protocol):
    async def get(self, user_id: str) -> Optional[str]: ...

    async def set(self, user_id: str, value: str, ttl_seconds: int) -> bool: ...

    async def delete(self, user_id: str) -> bool: ...


class PackedPermissionStore(Protocol):
    """Where packed rule sets are persisted (the user record)."""

    async def load_packed_permissions(self, user_id: str) -> Optional[Any]: ...

    async def save_packed_permissions(self, user_id: str, packed: List[Any]) -> bool: ...

    async def clear_packed_permissions(self, user_id: str) -> None: ...


class MemoryCacheBackend:
    """In-process backend with lazy expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[float, str]] = {}

    async def start(self):
        pass

    async def stop(self):
        self._entries.clear()

    async def get(self, user_id: str) -> Optional[str]:
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            self._entries.pop(user_id, None)
            return None
        return value

    async def set(self, user_id: str, value: str, ttl_seconds: int) -> bool:
        self._entries[user_id] = (self._clock() + ttl_seconds, value)
        return True

    async def delete(self, user_id: str) -> bool:
        return self._entries.pop(user_id, None) is not None

    async def get_cache_stats(self) -> Dict[str, Any]:
        return {"backend": "memory", "entries": len(self._entries)}

    async def health_check(self) -> bool:
        return True


class _PendingLoad:
    """An in-flight load; ``stale`` is set when the user is invalidated meanwhile."""

    def __init__(self):
        self.stale = False
        self.task: Optional[asyncio.Task] = None


class PermissionCache:
    """TTL cache of per-user rule sets with explicit invalidation."""

    def __init__(
        self,
        role_source: RoleDataSource,
        store: PackedPermissionStore,
        backend: Optional[CacheBackend] = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.role_source = role_source
        self.store = store
        self.backend = backend if backend is not None else MemoryCacheBackend()
        self.ttl_seconds = ttl_seconds
        self.metrics = metrics
        self.logger = get_logger("permissions.cache")
        self._pending: Dict[str, _PendingLoad] = {}

    def _count(self, metric_name: str, **labels):
        if self.metrics:
            self.metrics.increment_counter(metric_name, **labels)

    async def get_or_compute(self, user_id: str) -> RuleSet:
        """Return the user's rule set, loading or compiling it on a miss."""
        cached = await self._read_cached(user_id)
        if cached is not None:
            self._count("permission_cache_lookups_total", result="hit")
            return cached

        pending = self._pending.get(user_id)
        if pending is None:
            pending = _PendingLoad()
            pending.task = asyncio.ensure_future(self._load(user_id, pending))
            self._pending[user_id] = pending
            pending.task.add_done_callback(lambda _task: self._forget(user_id, pending))

        # Shielded so one cancelled caller does not cancel the shared load
        return await asyncio.shield(pending.task)

    def _forget(self, user_id: str, pending: _PendingLoad):
        if self._pending.get(user_id) is pending:
            del self._pending[user_id]

    async def _read_cached(self, user_id: str) -> Optional[RuleSet]:
        raw = await self.backend.get(user_id)
        if raw is None:
            return None
        try:
            return loads_rules(raw)
        except MalformedRuleSet as e:
            self.logger.warning("Discarding malformed cached permissions", user_id=user_id, error=e.message)
            await self.backend.delete(user_id)
            return None

    async def _load(self, user_id: str, pending: _PendingLoad) -> RuleSet:
        persisted = await self.store.load_packed_permissions(user_id)
        if persisted is not None:
            try:
                rule_set = unpack_rules(persisted)
            except MalformedRuleSet as e:
                self.logger.warning(
                    "Persisted permissions are malformed; recompiling",
                    user_id=user_id,
                    error=e.message,
                )
            else:
                self._count("permission_cache_lookups_total", result="persisted")
                await self._populate(user_id, persisted, pending)
                return rule_set

        self._count("permission_cache_lookups_total", result="miss")
        rule_set = await self._compile(user_id)
        packed = pack_rules(rule_set)

        if pending.stale:
            self.logger.info("Permissions invalidated during compile; not storing", user_id=user_id)
            return rule_set

        await self.store.save_packed_permissions(user_id, packed)
        if pending.stale:
            # The invalidation cleared the user record before this save landed
            self.logger.info("Permissions invalidated during save; clearing", user_id=user_id)
            await self.store.clear_packed_permissions(user_id)
            return rule_set

        await self._populate(user_id, packed, pending)
        return rule_set

    async def _compile(self, user_id: str) -> RuleSet:
        start_time = time.time()
        try:
            context = await build_user_context(user_id, self.role_source)
        except RoleDataUnavailable:
            self._count("permission_compiles_total", status="error")
            raise

        rule_set = AbilityCompiler.compile(context)
        duration = time.time() - start_time
        self._count("permission_compiles_total", status="ok")
        if self.metrics:
            self.metrics.observe_histogram("permission_compile_duration_seconds", duration)

        self.logger.info(
            "Compiled permissions",
            user_id=user_id,
            rules=len(rule_set),
            households=len(context.households),
            duration_ms=round(duration * 1000, 2),
        )
        return rule_set

    async def _populate(self, user_id: str, packed: List[Any], pending: _PendingLoad):
        if pending.stale:
            return
        await self.backend.set(user_id, json.dumps(packed, separators=(",", ":")), self.ttl_seconds)

    async def invalidate(self, user_id: str) -> None:
        """Drop the cached and persisted rule set; unknown users are a no-op."""
        pending = self._pending.pop(user_id, None)
        if pending is not None:
            pending.stale = True

        await self.backend.delete(user_id)
        await self.store.clear_packed_permissions(user_id)
        self._count("permission_invalidations_total", scope="user")
        self.logger.info("Invalidated user permissions", user_id=user_id)

    async def invalidate_household(self, household_id: str) -> List[str]:
        """Invalidate every current member of a household."""
        try:
            members = list(await self.role_source.get_household_members(household_id))
        except Exception as e:
            raise RoleDataUnavailable(
                f"Could not load members of household {household_id}",
                {"household_id": household_id, "error": str(e)},
            ) from e

        await asyncio.gather(*(self.invalidate(user_id) for user_id in members))
        self._count("permission_invalidations_total", scope="household")
        self.logger.info("Invalidated household permissions", household_id=household_id, members=len(members))
        return members

    async def recompute(self, user_id: str) -> RuleSet:
        """Invalidate, then eagerly compile a fresh rule set."""
        await self.invalidate(user_id)
        return await self.get_or_compute(user_id)

"""
Unit tests for the permission cache.
"""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from shared.errors import RoleDataUnavailable
from shared.metrics import MetricsCollector
from service_permissions.app.cache.permission_cache import MemoryCacheBackend, PermissionCache
from service_permissions.app.rules.engine import RuleEngine


class TestMemoryCacheBackend:
    """Test cases for MemoryCacheBackend."""

    @pytest.mark.asyncio
    async def test_set_get_delete(self, memory_backend):
        """Test basic storage."""
        assert await memory_backend.get("u1") is None
        assert await memory_backend.set("u1", "[]", 60)
        assert await memory_backend.get("u1") == "[]"
        assert await memory_backend.delete("u1") is True
        assert await memory_backend.delete("u1") is False

    @pytest.mark.asyncio
    async def test_entries_expire_lazily(self, memory_backend, clock):
        """Test entries disappear once their TTL has passed."""
        await memory_backend.set("u1", "[]", 60)
        clock.advance(59)
        assert await memory_backend.get("u1") == "[]"
        clock.advance(1)
        assert await memory_backend.get("u1") is None
        assert (await memory_backend.get_cache_stats())["entries"] == 0


class TestPermissionCache:
    """Test cases for PermissionCache."""

    @pytest.mark.asyncio
    async def test_miss_compiles_persists_and_caches(self, permission_cache, role_store, memory_backend):
        """Test a cold lookup compiles, persists and caches the packed rules."""
        rule_set = await permission_cache.get_or_compute("u1")

        assert RuleEngine(rule_set).can("read", "Household", {"id": "H1"})
        assert role_store.role_reads == 1
        assert role_store.packed["u1"] == json.loads(await memory_backend.get("u1"))

    @pytest.mark.asyncio
    async def test_hit_does_not_recompile(self, permission_cache, role_store):
        """Test a warm lookup is served from the cache."""
        first = await permission_cache.get_or_compute("u1")
        second = await permission_cache.get_or_compute("u1")

        assert role_store.role_reads == 1
        assert list(first) == list(second)

    @pytest.mark.asyncio
    async def test_persisted_form_used_before_compiling(self, permission_cache, role_store):
        """Test a persisted packed form avoids a compile."""
        role_store.packed["u1"] = [["read", "Message"]]

        rule_set = await permission_cache.get_or_compute("u1")

        assert role_store.role_reads == 0
        assert RuleEngine(rule_set).can("read", "Message", {"household_id": "anything"})

    @pytest.mark.asyncio
    async def test_malformed_persisted_form_is_recompiled(self, permission_cache, role_store):
        """Test unreadable persisted rules fall back to compiling."""
        role_store.packed["u1"] = [["read", "Spaceship"]]

        rule_set = await permission_cache.get_or_compute("u1")

        assert role_store.role_reads == 1
        assert RuleEngine(rule_set).can("read", "Household", {"id": "H1"})
        assert role_store.packed["u1"][0] == ["read", "User", {"id": "u1"}]

    @pytest.mark.asyncio
    async def test_malformed_cache_entry_is_discarded(self, permission_cache, role_store, memory_backend):
        """Test a corrupt cache entry is treated as a miss."""
        await memory_backend.set("u1", "{not json", 300)

        await permission_cache.get_or_compute("u1")

        assert role_store.role_reads == 1
        assert json.loads(await memory_backend.get("u1"))[0] == ["read", "User", {"id": "u1"}]

    @pytest.mark.asyncio
    async def test_ttl_expiry_reloads(self, permission_cache, role_store, clock):
        """Test an expired entry is reloaded."""
        await permission_cache.get_or_compute("u1")
        role_store.packed.clear()
        clock.advance(301)

        await permission_cache.get_or_compute("u1")

        assert role_store.role_reads == 2

    @pytest.mark.asyncio
    async def test_concurrent_misses_compile_once(self, permission_cache, role_store):
        """Test concurrent lookups for one user share a single compile."""
        role_store.read_delay = 0.01

        results = await asyncio.gather(*(permission_cache.get_or_compute("u1") for _ in range(5)))

        assert role_store.role_reads == 1
        assert all(list(result) == list(results[0]) for result in results)

    @pytest.mark.asyncio
    async def test_different_users_compile_independently(self, permission_cache, role_store):
        """Test coalescing is per user."""
        await asyncio.gather(
            permission_cache.get_or_compute("u1"),
            permission_cache.get_or_compute("m1"),
        )
        assert role_store.role_reads == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_recompile(self, permission_cache, role_store, memory_backend):
        """Test invalidation clears cached and persisted rules."""
        await permission_cache.get_or_compute("u1")
        role_store.set_role("H1", "u1", "manager")

        await permission_cache.invalidate("u1")
        assert await memory_backend.get("u1") is None
        assert "u1" not in role_store.packed

        rule_set = await permission_cache.get_or_compute("u1")
        assert role_store.role_reads == 2
        assert RuleEngine(rule_set).can("manage", "Household", {"id": "H1"})

    @pytest.mark.asyncio
    async def test_invalidate_unknown_user_is_noop(self, permission_cache):
        """Test invalidating an unknown user does nothing."""
        await permission_cache.invalidate("nobody")

    @pytest.mark.asyncio
    async def test_invalidate_household(self, permission_cache, role_store):
        """Test every member of the household recompiles after invalidation."""
        for user_id in ("m1", "u1", "bot1", "u2"):
            await permission_cache.get_or_compute(user_id)
        reads_before = role_store.role_reads

        invalidated = await permission_cache.invalidate_household("H1")

        assert sorted(invalidated) == ["bot1", "m1", "u1"]
        for user_id in ("m1", "u1", "bot1"):
            await permission_cache.get_or_compute(user_id)
        assert role_store.role_reads == reads_before + 3

        await permission_cache.get_or_compute("u2")
        assert role_store.role_reads == reads_before + 3

    @pytest.mark.asyncio
    async def test_invalidate_household_role_failure(self, permission_cache, role_store):
        """Test member lookup failures surface as RoleDataUnavailable."""
        role_store.fail_with = ConnectionError("down")
        with pytest.raises(RoleDataUnavailable):
            await permission_cache.invalidate_household("H1")

    @pytest.mark.asyncio
    async def test_invalidation_during_compile_is_not_cached(self, permission_cache, role_store, memory_backend):
        """Test a compile overtaken by an invalidation does not populate the cache."""
        role_store.read_delay = 0.01
        lookup = asyncio.ensure_future(permission_cache.get_or_compute("u1"))
        await asyncio.sleep(0)

        await permission_cache.invalidate("u1")
        await lookup

        assert await memory_backend.get("u1") is None
        assert "u1" not in role_store.packed

    @pytest.mark.asyncio
    async def test_invalidation_during_save_clears_persisted_form(self, permission_cache, role_store, memory_backend):
        """Test a save overtaken by an invalidation does not leave stale rules on the user record."""
        save = role_store.save_packed_permissions
        save_started = asyncio.Event()
        release_save = asyncio.Event()

        async def slow_save(user_id, packed):
            save_started.set()
            await release_save.wait()
            return await save(user_id, packed)

        role_store.save_packed_permissions = slow_save
        lookup = asyncio.ensure_future(permission_cache.get_or_compute("u1"))
        await save_started.wait()

        role_store.remove_member("H1", "u1")
        await permission_cache.invalidate("u1")
        release_save.set()
        await lookup

        assert "u1" not in role_store.packed
        assert await memory_backend.get("u1") is None

        role_store.save_packed_permissions = save
        rule_set = await permission_cache.get_or_compute("u1")
        assert role_store.role_reads == 2
        assert not RuleEngine(rule_set).can("read", "Household", {"id": "H1"})

    @pytest.mark.asyncio
    async def test_role_failure_propagates_and_caches_nothing(self, permission_cache, role_store, memory_backend):
        """Test role data failures are raised and leave no partial state."""
        role_store.fail_with = ConnectionError("database down")

        with pytest.raises(RoleDataUnavailable):
            await permission_cache.get_or_compute("u1")

        assert await memory_backend.get("u1") is None
        assert "u1" not in role_store.packed

        role_store.fail_with = None
        rule_set = await permission_cache.get_or_compute("u1")
        assert len(rule_set) > 3

    @pytest.mark.asyncio
    async def test_recompute(self, permission_cache, role_store):
        """Test recompute compiles fresh rules eagerly."""
        await permission_cache.get_or_compute("u1")
        role_store.remove_member("H1", "u1")

        rule_set = await permission_cache.recompute("u1")

        assert role_store.role_reads == 2
        assert not RuleEngine(rule_set).can("read", "Household", {"id": "H1"})

    @pytest.mark.asyncio
    async def test_backend_delete_failure_propagates(self, role_store):
        """Test a failed cache delete is not swallowed."""
        backend = MemoryCacheBackend()
        cache = PermissionCache(role_store, role_store, backend)
        with patch.object(backend, "delete", new_callable=AsyncMock) as mock_delete:
            mock_delete.side_effect = RuntimeError("redis down")
            with pytest.raises(RuntimeError):
                await cache.invalidate("u1")

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, role_store):
        """Test lookups and compiles are counted."""
        metrics = MetricsCollector("permissions")
        cache = PermissionCache(role_store, role_store, MemoryCacheBackend(), metrics=metrics)

        await cache.get_or_compute("u1")
        await cache.get_or_compute("u1")
        await cache.invalidate("u1")

        registry = metrics.registry
        assert registry.get_sample_value("permission_cache_lookups_total", {"result": "miss"}) == 1
        assert registry.get_sample_value("permission_cache_lookups_total", {"result": "hit"}) == 1
        assert registry.get_sample_value("permission_compiles_total", {"status": "ok"}) == 1
        assert registry.get_sample_value("permission_invalidations_total", {"scope": "user"}) == 1

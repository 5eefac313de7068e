"""
Shared fixtures for Permissions Service tests.
"""

import asyncio
import copy
from typing import Any, Dict, List, Optional, Tuple

import pytest

from service_permissions.app.cache.permission_cache import MemoryCacheBackend, PermissionCache


class InMemoryRoleStore:
    """Role-data source and packed-permission store held in dicts."""

    def __init__(self):
        # (household_id, user_id, role) in join order
        self.memberships: List[Tuple[str, str, str]] = []
        self.managed_by: Dict[str, str] = {}
        self.packed: Dict[str, Any] = {}
        self.role_reads = 0
        self.fail_with: Optional[Exception] = None
        self.read_delay = 0.0

    def add_member(self, household_id: str, user_id: str, role: str) -> "InMemoryRoleStore":
        self.memberships.append((household_id, user_id, role))
        return self

    def remove_member(self, household_id: str, user_id: str):
        self.memberships = [m for m in self.memberships if m[:2] != (household_id, user_id)]

    def set_role(self, household_id: str, user_id: str, role: str):
        self.memberships = [
            (h, u, role) if (h, u) == (household_id, user_id) else (h, u, r)
            for h, u, r in self.memberships
        ]

    async def _before_read(self):
        if self.read_delay:
            await asyncio.sleep(self.read_delay)
        if self.fail_with is not None:
            raise self.fail_with

    async def get_household_roles_for_user(self, user_id: str):
        self.role_reads += 1
        await self._before_read()
        return [{"household_id": h, "role": r} for h, u, r in self.memberships if u == user_id]

    async def get_managed_users(self, user_id: str):
        await self._before_read()
        return [u for u, manager in self.managed_by.items() if manager == user_id]

    async def get_ai_users(self, household_id: str):
        await self._before_read()
        return [u for h, u, r in self.memberships if h == household_id and r == "ai"]

    async def get_household_members(self, household_id: str):
        await self._before_read()
        return [u for h, u, r in self.memberships if h == household_id]

    async def load_packed_permissions(self, user_id: str):
        return copy.deepcopy(self.packed.get(user_id))

    async def save_packed_permissions(self, user_id: str, packed):
        self.packed[user_id] = copy.deepcopy(packed)
        return True

    async def clear_packed_permissions(self, user_id: str):
        self.packed.pop(user_id, None)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def role_store():
    """Household H1: manager m1, member u1, ai bot1. Household H2: member m1."""
    store = InMemoryRoleStore()
    store.add_member("H1", "m1", "manager")
    store.add_member("H1", "u1", "member")
    store.add_member("H1", "bot1", "ai")
    store.add_member("H2", "m1", "member")
    store.add_member("H2", "u2", "manager")
    store.managed_by["kid1"] = "m1"
    return store


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_backend(clock):
    return MemoryCacheBackend(clock=clock)


@pytest.fixture
def permission_cache(role_store, memory_backend):
    return PermissionCache(role_store, role_store, memory_backend, ttl_seconds=300)

"""
Ability compiler: turns a user's household roles into an ordered rule set.
"""

import asyncio
from typing import Dict, List, Protocol, Sequence, Mapping, Any

from shared.logging import get_logger
from shared.errors import RoleDataUnavailable
from .models import (
    Action, SubjectType, HouseholdRole, RuleSet, RuleSetBuilder, UserContext
)


logger = get_logger("permissions.compiler")


class RoleDataSource(Protocol):
    """Read-only access to the authoritative role store."""

    async def get_household_roles_for_user(self, user_id: str) -> Sequence[Mapping[str, Any]]:
        """Return ``[{"household_id": ..., "role": ...}]`` for the user."""

    async def get_managed_users(self, user_id: str) -> Sequence[str]:
        """Return ids of users directly managed by the user."""

    async def get_ai_users(self, household_id: str) -> Sequence[str]:
        """Return ids of AI users in the household."""

    async def get_household_members(self, household_id: str) -> Sequence[str]:
        """Return ids of every member of the household."""


def _dedupe(values) -> List[str]:
    return list(dict.fromkeys(values))


class AbilityCompiler:
    """Compiles a ``UserContext`` into a ``RuleSet``.

    Rules are emitted in a fixed order; deny rules for pure AI actors come
    last so they override the allow rules before them.
    """

    @staticmethod
    def compile(context: UserContext) -> RuleSet:
        builder = RuleSetBuilder()
        user_id = context.user_id

        all_ids = context.household_ids()
        manager_ids = context.household_ids(HouseholdRole.MANAGER)
        member_ids = context.household_ids(HouseholdRole.MEMBER)
        ai_ids = context.household_ids(HouseholdRole.AI)
        pure_ai = context.is_pure_ai

        # Base rules for every authenticated user
        builder.can(Action.READ, SubjectType.USER, {"id": user_id})
        builder.can(Action.CREATE, SubjectType.HOUSEHOLD)
        builder.can(Action.UPDATE, SubjectType.USER, {"id": user_id})

        if context.managed_user_ids and not pure_ai:
            builder.can(
                Action.UPDATE, SubjectType.USER,
                {"id": {"$in": _dedupe(context.managed_user_ids)}},
            )

        if manager_ids:
            manageable_ai_users = _dedupe(
                ai_user
                for household_id in manager_ids
                for ai_user in context.ai_users_by_household.get(household_id, ())
            )
            if manageable_ai_users:
                builder.can(Action.UPDATE, SubjectType.USER, {"id": {"$in": manageable_ai_users}})

        AbilityCompiler._household_rules(builder, user_id, all_ids, manager_ids, member_ids, ai_ids)

        if all_ids:
            readable_users = _dedupe(
                [user_id] + [
                    member
                    for household_id in all_ids
                    for member in context.household_members_by_household.get(household_id, ())
                ]
            )
            builder.can(Action.READ, SubjectType.USER, {"id": {"$in": readable_users}})

        if pure_ai:
            builder.cannot(Action.UPDATE, SubjectType.USER, {"id": {"$ne": user_id}})
            builder.cannot(
                [Action.CREATE, Action.UPDATE, Action.DELETE], SubjectType.HOUSEHOLD_MEMBER
            )

        return builder.build()

    @staticmethod
    def _household_rules(
        builder: RuleSetBuilder,
        user_id: str,
        all_ids: List[str],
        manager_ids: List[str],
        member_ids: List[str],
        ai_ids: List[str],
    ) -> None:
        participant_ids = _dedupe(member_ids + ai_ids)

        if manager_ids:
            builder.can(Action.MANAGE, SubjectType.HOUSEHOLD, {"id": {"$in": manager_ids}})
        if participant_ids:
            builder.can(Action.READ, SubjectType.HOUSEHOLD, {"id": {"$in": participant_ids}})

        if manager_ids:
            # Managers cannot alter other managers
            builder.can(Action.MANAGE, SubjectType.HOUSEHOLD_MEMBER, {
                "household_id": {"$in": manager_ids},
                "role": {"$ne": HouseholdRole.MANAGER.value},
            })
        if all_ids:
            builder.can(Action.READ, SubjectType.HOUSEHOLD_MEMBER, {"household_id": {"$in": all_ids}})

        if manager_ids:
            builder.can(Action.MANAGE, SubjectType.MESSAGE, {"household_id": {"$in": manager_ids}})
        if participant_ids:
            builder.can(
                [Action.CREATE, Action.READ], SubjectType.MESSAGE,
                {"household_id": {"$in": participant_ids}},
            )
        if member_ids:
            # Own messages only
            builder.can([Action.UPDATE, Action.DELETE], SubjectType.MESSAGE, {
                "$and": [
                    {"household_id": {"$in": member_ids}},
                    {"user_id": user_id},
                ]
            })


async def build_user_context(user_id: str, role_source: RoleDataSource) -> UserContext:
    """Load a fresh ``UserContext`` from the role store.

    Any failure of the role source surfaces as ``RoleDataUnavailable``.
    """
    try:
        households = list(await role_source.get_household_roles_for_user(user_id))
        managed_users = list(await role_source.get_managed_users(user_id))

        household_ids = _dedupe(record["household_id"] for record in households)
        manager_ids = _dedupe(
            record["household_id"] for record in households
            if HouseholdRole(record["role"]) == HouseholdRole.MANAGER
        )

        member_lists = await asyncio.gather(
            *(role_source.get_household_members(household_id) for household_id in household_ids)
        )
        ai_lists = await asyncio.gather(
            *(role_source.get_ai_users(household_id) for household_id in manager_ids)
        )
    except RoleDataUnavailable:
        raise
    except Exception as e:
        logger.error("Failed to load role data", user_id=user_id, error=str(e))
        raise RoleDataUnavailable(
            f"Could not load role data for user {user_id}",
            {"user_id": user_id, "error": str(e)},
        ) from e

    members_by_household: Dict[str, List[str]] = dict(zip(household_ids, map(list, member_lists)))
    ai_by_household: Dict[str, List[str]] = dict(zip(manager_ids, map(list, ai_lists)))

    return UserContext.from_records(
        user_id,
        households,
        managed_user_ids=managed_users,
        ai_users_by_household=ai_by_household,
        household_members_by_household=members_by_household,
    )

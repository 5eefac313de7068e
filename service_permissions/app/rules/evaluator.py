"""
Named permission questions over a ``RuleEngine``.

Callers ask ``can_update_own_message(...)`` instead of assembling subject
dicts by hand, which keeps the field names used in conditions in one place.
"""

from typing import Optional

from .engine import RuleEngine
from .models import Action, SubjectType


class PermissionEvaluator:
    """Semantic wrapper around a user's rule engine."""

    def __init__(self, engine: RuleEngine):
        self.engine = engine

    # Users

    def can_read_user(self, target_user_id: str) -> bool:
        return self.engine.can(Action.READ, SubjectType.USER, {"id": target_user_id})

    def can_update_user(self, target_user_id: str) -> bool:
        return self.engine.can(Action.UPDATE, SubjectType.USER, {"id": target_user_id})

    def can_create_user(self) -> bool:
        return self.engine.can(Action.CREATE, SubjectType.USER)

    def can_delete_user(self, target_user_id: str) -> bool:
        return self.engine.can(Action.DELETE, SubjectType.USER, {"id": target_user_id})

    # Households

    def can_create_household(self) -> bool:
        return self.engine.can(Action.CREATE, SubjectType.HOUSEHOLD)

    def can_read_household(self, household_id: str) -> bool:
        return self.engine.can(Action.READ, SubjectType.HOUSEHOLD, {"id": household_id})

    def can_update_household(self, household_id: str) -> bool:
        return self.engine.can(Action.UPDATE, SubjectType.HOUSEHOLD, {"id": household_id})

    def can_delete_household(self, household_id: str) -> bool:
        return self.engine.can(Action.DELETE, SubjectType.HOUSEHOLD, {"id": household_id})

    def can_manage_household(self, household_id: str) -> bool:
        return self.engine.can(Action.MANAGE, SubjectType.HOUSEHOLD, {"id": household_id})

    # Household members

    def can_read_household_member(self, household_id: str) -> bool:
        return self.engine.can(
            Action.READ, SubjectType.HOUSEHOLD_MEMBER, {"household_id": household_id}
        )

    def can_create_household_member(self, household_id: str) -> bool:
        return self.engine.can(
            Action.CREATE, SubjectType.HOUSEHOLD_MEMBER, {"household_id": household_id}
        )

    def can_update_household_member(self, household_id: str, target_role: Optional[str] = None) -> bool:
        instance = {"household_id": household_id}
        if target_role:
            instance["role"] = target_role
        return self.engine.can(Action.UPDATE, SubjectType.HOUSEHOLD_MEMBER, instance)

    def can_delete_household_member(self, household_id: str) -> bool:
        return self.engine.can(
            Action.DELETE, SubjectType.HOUSEHOLD_MEMBER, {"household_id": household_id}
        )

    def can_manage_household_member(self, household_id: str) -> bool:
        return self.engine.can(
            Action.MANAGE, SubjectType.HOUSEHOLD_MEMBER, {"household_id": household_id}
        )

    # Messages

    def can_create_message(self, household_id: str) -> bool:
        return self.engine.can(Action.CREATE, SubjectType.MESSAGE, {"household_id": household_id})

    def can_read_message(self, household_id: str) -> bool:
        return self.engine.can(Action.READ, SubjectType.MESSAGE, {"household_id": household_id})

    def can_manage_message(self, household_id: str) -> bool:
        return self.engine.can(Action.MANAGE, SubjectType.MESSAGE, {"household_id": household_id})

    def can_update_own_message(self, message_id: str, household_id: str, author_id: str) -> bool:
        return self.engine.can(Action.UPDATE, SubjectType.MESSAGE, {
            "id": message_id, "household_id": household_id, "user_id": author_id,
        })

    def can_delete_own_message(self, message_id: str, household_id: str, author_id: str) -> bool:
        return self.engine.can(Action.DELETE, SubjectType.MESSAGE, {
            "id": message_id, "household_id": household_id, "user_id": author_id,
        })

    def can_update_any_message(self, message_id: str, household_id: str) -> bool:
        return self.engine.can(Action.UPDATE, SubjectType.MESSAGE, {
            "id": message_id, "household_id": household_id,
        })

    def can_delete_any_message(self, message_id: str, household_id: str) -> bool:
        return self.engine.can(Action.DELETE, SubjectType.MESSAGE, {
            "id": message_id, "household_id": household_id,
        })

    def has_any_permission(self, subject_type: SubjectType) -> bool:
        """True if any action at all is possible on the subject type."""
        return any(self.engine.can(action, subject_type) for action in Action)

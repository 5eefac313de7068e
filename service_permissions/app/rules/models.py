"""
Rule data models for the Permissions Service.
"""

from typing import Dict, Any, Optional, List, Tuple, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from .conditions import ConditionNode, parse_conditions


class Action(str, Enum):
    """Actions a rule can grant or deny."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    MANAGE = "manage"  # wildcard: satisfies any action


class SubjectType(str, Enum):
    """Domain entities permissions are expressed over."""
    USER = "User"
    HOUSEHOLD = "Household"
    HOUSEHOLD_MEMBER = "HouseholdMember"
    MESSAGE = "Message"
    ALL = "all"  # wildcard: applies to every subject type


class HouseholdRole(str, Enum):
    """Role of a user within one household."""
    MANAGER = "manager"
    MEMBER = "member"
    AI = "ai"


@dataclass(frozen=True)
class Rule:
    """A single can/cannot rule.

    ``inverted`` marks a deny (``cannot``) rule.
    """
    actions: Tuple[Action, ...]
    subject_types: Tuple[SubjectType, ...]
    conditions: Optional[ConditionNode] = None
    inverted: bool = False

    def applies_to(self, action: Action, subject_type: SubjectType) -> bool:
        """Check the action and subject type, ignoring conditions."""
        action_ok = action in self.actions or Action.MANAGE in self.actions
        subject_ok = subject_type in self.subject_types or SubjectType.ALL in self.subject_types
        return action_ok and subject_ok

    def matches_instance(self, instance: Any) -> bool:
        """Check the rule's conditions against a subject instance."""
        if self.conditions is None:
            return True
        return self.conditions.matches(instance)


@dataclass(frozen=True)
class RuleSet:
    """Ordered, immutable collection of rules.

    Order is significant: the last matching rule decides.
    """
    rules: Tuple[Rule, ...] = ()

    def __iter__(self) -> Iterator[Rule]:
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    def __getitem__(self, index: int) -> Rule:
        return self.rules[index]


class RuleSetBuilder:
    """Accumulates rules in order with a can/cannot vocabulary."""

    def __init__(self):
        self._rules: List[Rule] = []

    def can(self, actions, subject_types, conditions: Optional[Mapping[str, Any]] = None) -> "RuleSetBuilder":
        self._rules.append(_make_rule(actions, subject_types, conditions, inverted=False))
        return self

    def cannot(self, actions, subject_types, conditions: Optional[Mapping[str, Any]] = None) -> "RuleSetBuilder":
        self._rules.append(_make_rule(actions, subject_types, conditions, inverted=True))
        return self

    def build(self) -> RuleSet:
        return RuleSet(tuple(self._rules))


def _as_tuple(value, enum_cls) -> tuple:
    if isinstance(value, (str, Enum)):
        value = [value]
    return tuple(enum_cls(item) for item in value)


def _make_rule(actions, subject_types, conditions, inverted: bool) -> Rule:
    return Rule(
        actions=_as_tuple(actions, Action),
        subject_types=_as_tuple(subject_types, SubjectType),
        conditions=parse_conditions(conditions),
        inverted=inverted,
    )


@dataclass(frozen=True)
class HouseholdMembership:
    """A user's role in one household."""
    household_id: str
    role: HouseholdRole


@dataclass(frozen=True)
class UserContext:
    """Everything the compiler needs to know about one user.

    Built fresh from the role store for every compile and never mutated.
    """
    user_id: str
    households: Tuple[HouseholdMembership, ...] = ()
    managed_user_ids: Tuple[str, ...] = ()
    ai_users_by_household: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    household_members_by_household: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)

    def household_ids(self, role: Optional[HouseholdRole] = None) -> List[str]:
        """Household ids in membership order, optionally filtered by role."""
        return [
            membership.household_id
            for membership in self.households
            if role is None or membership.role == role
        ]

    @property
    def is_pure_ai(self) -> bool:
        """True when every household role the user holds is AI."""
        roles = {membership.role for membership in self.households}
        return roles == {HouseholdRole.AI}

    @classmethod
    def from_records(
        cls,
        user_id: str,
        households: Iterable[Mapping[str, Any]],
        managed_user_ids: Iterable[str] = (),
        ai_users_by_household: Optional[Mapping[str, Iterable[str]]] = None,
        household_members_by_household: Optional[Mapping[str, Iterable[str]]] = None,
    ) -> "UserContext":
        """Build a context from plain role-store records."""
        return cls(
            user_id=user_id,
            households=tuple(
                HouseholdMembership(
                    household_id=record["household_id"],
                    role=HouseholdRole(record["role"]),
                )
                for record in households
            ),
            managed_user_ids=tuple(managed_user_ids),
            ai_users_by_household={
                household_id: tuple(users)
                for household_id, users in (ai_users_by_household or {}).items()
            },
            household_members_by_household={
                household_id: tuple(users)
                for household_id, users in (household_members_by_household or {}).items()
            },
        )


@dataclass
class EvaluationResult:
    """Result of evaluating a rule set for one question."""
    allowed: bool
    reason: Optional[str] = None
    matched_rule: Optional[int] = None
    evaluation_time_ms: float = 0.0


class PermissionCheckRequest(BaseModel):
    """Request model for a permission check."""
    user_id: str = Field(..., description="User ID")
    action: Action = Field(..., description="Action to perform")
    subject_type: SubjectType = Field(..., description="Subject type")
    instance: Optional[Dict[str, Any]] = Field(None, description="Subject instance fields")


class PermissionCheckResponse(BaseModel):
    """Response model for a permission check."""
    allowed: bool = Field(..., description="Whether the action is allowed")
    reason: Optional[str] = Field(None, description="Reason for the decision")
    matched_rule: Optional[int] = Field(None, description="Index of the deciding rule")


class PackedRulesResponse(BaseModel):
    """Packed rule set shipped to clients for local evaluation."""
    user_id: str
    rules: List[List[Any]]
    generated_at: datetime = Field(default_factory=datetime.now)


class InvalidationResponse(BaseModel):
    """Response model for cache invalidation."""
    scope: str
    target_id: str
    invalidated_users: List[str] = Field(default_factory=list)

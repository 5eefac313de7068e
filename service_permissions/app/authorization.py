"""
Authorization facade for the Permissions Service.
"""

import time
from typing import Any, List, Optional

from shared.logging import get_logger
from shared.errors import AuthorizationError
from shared.metrics import MetricsCollector
from .cache.permission_cache import PermissionCache
from .rules.codec import pack_rules
from .rules.engine import RuleEngine, ActionLike, SubjectTypeLike
from .rules.models import EvaluationResult


class AuthorizationService:
    """Answers ``can`` questions from cached per-user rule sets."""

    def __init__(self, cache: PermissionCache, metrics: Optional[MetricsCollector] = None):
        self.cache = cache
        self.metrics = metrics
        self.logger = get_logger("permissions.authorization")

    async def ability_for(self, user_id: str) -> RuleEngine:
        """Return a rule engine over the user's current rule set."""
        rule_set = await self.cache.get_or_compute(user_id)
        return RuleEngine(rule_set)

    async def evaluate(
        self,
        user_id: str,
        action: ActionLike,
        subject_type: SubjectTypeLike,
        instance: Optional[Any] = None,
    ) -> EvaluationResult:
        start_time = time.time()
        engine = await self.ability_for(user_id)
        result = engine.evaluate(action, subject_type, instance)

        if self.metrics:
            self.metrics.increment_counter(
                "permission_checks_total", decision="allow" if result.allowed else "deny"
            )
            self.metrics.observe_histogram("permission_check_duration_seconds", time.time() - start_time)

        self.logger.debug(
            "Permission check",
            user_id=user_id,
            action=str(getattr(action, "value", action)),
            subject_type=str(getattr(subject_type, "value", subject_type)),
            allowed=result.allowed,
        )
        return result

    async def can(
        self,
        user_id: str,
        action: ActionLike,
        subject_type: SubjectTypeLike,
        instance: Optional[Any] = None,
    ) -> bool:
        result = await self.evaluate(user_id, action, subject_type, instance)
        return result.allowed

    async def require(
        self,
        user_id: str,
        action: ActionLike,
        subject_type: SubjectTypeLike,
        instance: Optional[Any] = None,
    ) -> None:
        """Raise ``AuthorizationError`` unless the action is allowed."""
        result = await self.evaluate(user_id, action, subject_type, instance)
        if not result.allowed:
            raise AuthorizationError(
                "Permission denied",
                {
                    "user_id": user_id,
                    "action": str(getattr(action, "value", action)),
                    "subject_type": str(getattr(subject_type, "value", subject_type)),
                    "reason": result.reason,
                },
            )

    async def packed_rules_for(self, user_id: str) -> List[List[Any]]:
        """Packed rule set for client-side evaluation."""
        rule_set = await self.cache.get_or_compute(user_id)
        return pack_rules(rule_set)

    async def invalidate_user(self, user_id: str) -> None:
        await self.cache.invalidate(user_id)

    async def invalidate_household(self, household_id: str) -> List[str]:
        return await self.cache.invalidate_household(household_id)

"""
Rule evaluation engine for the Permissions Service.
"""

import time
from typing import Any, Dict, List, Optional, Union

from shared.logging import get_logger
from .models import Action, SubjectType, Rule, RuleSet, EvaluationResult


ActionLike = Union[Action, str]
SubjectTypeLike = Union[SubjectType, str]


class RuleEngine:
    """Answers permission questions over one user's rule set.

    Rules are scanned in order and the last matching rule decides; with no
    matching rule the answer is deny. A rule with unmet conditions never
    affects the verdict.
    """

    def __init__(self, rule_set: RuleSet):
        self.logger = get_logger("permissions.rule_engine")
        self.rule_set = rule_set
        self._index: Dict[tuple, List[int]] = {}

    @property
    def rules(self) -> List[Rule]:
        return list(self.rule_set)

    def rules_for(self, action: ActionLike, subject_type: SubjectTypeLike) -> List[Rule]:
        """Rules relevant to an action/subject pair, in evaluation order."""
        return [self.rule_set[i] for i in self._relevant_indexes(Action(action), SubjectType(subject_type))]

    def _relevant_indexes(self, action: Action, subject_type: SubjectType) -> List[int]:
        key = (action, subject_type)
        if key not in self._index:
            self._index[key] = [
                i for i, rule in enumerate(self.rule_set)
                if rule.applies_to(action, subject_type)
            ]
        return self._index[key]

    def evaluate(
        self,
        action: ActionLike,
        subject_type: SubjectTypeLike,
        instance: Optional[Any] = None,
    ) -> EvaluationResult:
        """Evaluate the rule set for one question.

        Without an instance the question is about the subject type as a
        whole: conditional allow rules count as matching and conditional
        deny rules are skipped.
        """
        start_time = time.time()
        action = Action(action)
        subject_type = SubjectType(subject_type)

        allowed = False
        matched: Optional[int] = None
        for i in self._relevant_indexes(action, subject_type):
            rule = self.rule_set[i]
            if instance is None:
                if rule.conditions is not None and rule.inverted:
                    continue
            elif not rule.matches_instance(instance):
                continue
            allowed = not rule.inverted
            matched = i

        if matched is None:
            reason = "No matching rule"
        else:
            reason = f"Rule {matched} {'allowed' if allowed else 'denied'}"

        result = EvaluationResult(
            allowed=allowed,
            reason=reason,
            matched_rule=matched,
            evaluation_time_ms=(time.time() - start_time) * 1000,
        )
        self.logger.debug(
            "Rule evaluation result",
            action=action.value,
            subject_type=subject_type.value,
            allowed=allowed,
            matched_rule=matched,
        )
        return result

    def can(self, action: ActionLike, subject_type: SubjectTypeLike, instance: Optional[Any] = None) -> bool:
        return self.evaluate(action, subject_type, instance).allowed

    def cannot(self, action: ActionLike, subject_type: SubjectTypeLike, instance: Optional[Any] = None) -> bool:
        return not self.can(action, subject_type, instance)

    def get_engine_stats(self) -> Dict[str, Any]:
        """Get engine statistics."""
        return {
            "total_rules": len(self.rule_set),
            "deny_rules": len([r for r in self.rule_set if r.inverted]),
            "conditional_rules": len([r for r in self.rule_set if r.conditions is not None]),
            "subject_types": sorted({s.value for r in self.rule_set for s in r.subject_types}),
        }

"""
Packing and unpacking of rule sets.

The packed form is a flat JSON array with one tuple per rule::

    [actions, subject_types, conditions, inverted]

``actions`` and ``subject_types`` are comma-joined tokens, ``conditions`` is
the Mongo-style document or ``0``, ``inverted`` is ``1`` or ``0``. Trailing
``0`` entries are dropped, so a packed rule has two to four elements. The same
form is persisted on the user record, stored in the cache and shipped to
clients.
"""

import json
from typing import Any, List

from shared.errors import MalformedRuleSet
from .conditions import ConditionSyntaxError, parse_conditions, to_document
from .models import Action, Rule, RuleSet, SubjectType


PackedRule = List[Any]
PackedRuleSet = List[PackedRule]


def pack_rule(rule: Rule) -> PackedRule:
    packed: PackedRule = [
        ",".join(action.value for action in rule.actions),
        ",".join(subject.value for subject in rule.subject_types),
        to_document(rule.conditions) or 0,
        1 if rule.inverted else 0,
    ]
    while len(packed) > 2 and packed[-1] == 0:
        packed.pop()
    return packed


def pack_rules(rule_set: RuleSet) -> PackedRuleSet:
    """Pack a rule set, preserving rule order."""
    return [pack_rule(rule) for rule in rule_set]


def _split_tokens(raw: Any, enum_cls, label: str, index: int) -> tuple:
    if not isinstance(raw, str) or not raw:
        raise MalformedRuleSet(f"Rule {index}: {label} must be a non-empty string", {"index": index})
    try:
        return tuple(enum_cls(token) for token in raw.split(","))
    except ValueError as e:
        raise MalformedRuleSet(f"Rule {index}: unknown {label} token", {"index": index, "value": raw}) from e


def unpack_rule(packed: Any, index: int = 0) -> Rule:
    if not isinstance(packed, list) or not 2 <= len(packed) <= 4:
        raise MalformedRuleSet(f"Rule {index}: expected an array of 2 to 4 items", {"index": index})

    actions = _split_tokens(packed[0], Action, "action", index)
    subject_types = _split_tokens(packed[1], SubjectType, "subject", index)

    raw_conditions = packed[2] if len(packed) > 2 else 0
    if raw_conditions == 0 and not isinstance(raw_conditions, bool):
        conditions = None
    elif isinstance(raw_conditions, dict):
        try:
            conditions = parse_conditions(raw_conditions)
        except ConditionSyntaxError as e:
            raise MalformedRuleSet(f"Rule {index}: {e}", {"index": index}) from e
    else:
        raise MalformedRuleSet(f"Rule {index}: conditions must be an object or 0", {"index": index})

    raw_inverted = packed[3] if len(packed) > 3 else 0
    if raw_inverted in (0, 1) or isinstance(raw_inverted, bool):
        inverted = bool(raw_inverted)
    else:
        raise MalformedRuleSet(f"Rule {index}: inverted flag must be 0 or 1", {"index": index})

    return Rule(actions=actions, subject_types=subject_types, conditions=conditions, inverted=inverted)


def unpack_rules(packed: Any) -> RuleSet:
    """Rebuild a rule set from its packed form.

    Raises ``MalformedRuleSet`` instead of dropping anything it cannot read.
    """
    if not isinstance(packed, list):
        raise MalformedRuleSet("Packed rules must be an array", {"type": type(packed).__name__})
    return RuleSet(tuple(unpack_rule(item, index) for index, item in enumerate(packed)))


def dumps_rules(rule_set: RuleSet) -> str:
    """Pack a rule set to a JSON string."""
    return json.dumps(pack_rules(rule_set), separators=(",", ":"))


def loads_rules(data: Any) -> RuleSet:
    """Unpack a rule set from a JSON string (or an already-decoded value)."""
    if isinstance(data, (str, bytes, bytearray)):
        try:
            data = json.loads(data)
        except ValueError as e:
            raise MalformedRuleSet("Packed rules are not valid JSON", {"error": str(e)}) from e
    return unpack_rules(data)

"""
Condition matching for permission rules.

Conditions are authored in the Mongo query style used by the clients
(``{"household_id": {"$in": [...]}, "user_id": "u1"}``) and parsed once into a
small immutable node tree. The same tree is evaluated on the server and
serialized back to the dict form for clients, so both sides share a single
definition of equality, ordering and absence.

A field that cannot be resolved on the subject is ``ABSENT``. ``ABSENT`` is
distinct from ``None`` (an explicit null): it never equals anything and every
ordering comparison against it is false.
"""

import copy
import functools
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, Union, runtime_checkable

from pydantic import BaseModel


class _Absent:
    """Marker for a field that is missing from the subject."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT = _Absent()


class Operator(str, Enum):
    """Field-level condition operators."""
    EQ = "$eq"
    NE = "$ne"
    GT = "$gt"
    GTE = "$gte"
    LT = "$lt"
    LTE = "$lte"
    IN = "$in"
    NIN = "$nin"
    EXISTS = "$exists"
    REGEX = "$regex"


class Combinator(str, Enum):
    """Logical combinators."""
    AND = "$and"
    OR = "$or"
    NOT = "$not"


OPERATOR_TOKENS = frozenset(op.value for op in Operator)
COMBINATOR_TOKENS = frozenset(c.value for c in Combinator)


class ConditionSyntaxError(ValueError):
    """Raised when a condition document cannot be parsed."""


@runtime_checkable
class FieldReadable(Protocol):
    """Subjects that expose their fields explicitly.

    ``read_field`` returns the field value, or ``ABSENT`` when the subject has
    no such field.
    """

    def read_field(self, name: str) -> Any:
        ...


@dataclass(frozen=True)
class FieldCondition:
    """A single ``field <operator> value`` check."""
    field: str
    operator: Operator
    value: Any

    def matches(self, subject: Any) -> bool:
        return apply_operator(self.operator, resolve_field(subject, self.field), self.value)


@dataclass(frozen=True)
class AllOf:
    children: Tuple["ConditionNode", ...]

    def matches(self, subject: Any) -> bool:
        return all(child.matches(subject) for child in self.children)


@dataclass(frozen=True)
class AnyOf:
    children: Tuple["ConditionNode", ...]

    def matches(self, subject: Any) -> bool:
        return any(child.matches(subject) for child in self.children)


@dataclass(frozen=True)
class Not:
    child: "ConditionNode"

    def matches(self, subject: Any) -> bool:
        return not self.child.matches(subject)


ConditionNode = Union[FieldCondition, AllOf, AnyOf, Not]
_NODE_TYPES = (FieldCondition, AllOf, AnyOf, Not)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def parse_conditions(raw: Any) -> Optional[ConditionNode]:
    """Parse a Mongo-style condition document.

    Returns ``None`` for absent or empty conditions (the rule is
    unconditional). Raises ``ConditionSyntaxError`` for unknown operator
    tokens, misplaced operators and malformed combinators.
    """
    if raw is None:
        return None
    if isinstance(raw, _NODE_TYPES):
        return raw
    if not isinstance(raw, Mapping):
        raise ConditionSyntaxError(f"Conditions must be an object, got {type(raw).__name__}")
    if not raw:
        return None
    node = _parse_document(raw)
    # {"id": {}} and {"$and": []} constrain nothing
    if isinstance(node, AllOf) and not node.children:
        return None
    return node


def _parse_document(doc: Mapping) -> ConditionNode:
    nodes: List[ConditionNode] = []
    for key, value in doc.items():
        if not isinstance(key, str):
            raise ConditionSyntaxError(f"Field names must be strings, got {key!r}")
        if key in COMBINATOR_TOKENS:
            nodes.append(_parse_combinator(Combinator(key), value))
        elif key.startswith("$"):
            raise ConditionSyntaxError(f"Unknown or misplaced operator {key!r}")
        else:
            nodes.extend(_parse_field(key, value))

    if len(nodes) == 1:
        return nodes[0]
    return AllOf(tuple(nodes))


def _parse_combinator(combinator: Combinator, value: Any) -> ConditionNode:
    if combinator is Combinator.NOT:
        if not isinstance(value, Mapping):
            raise ConditionSyntaxError("$not expects an object")
        return Not(_parse_document(value))

    if not isinstance(value, (list, tuple)):
        raise ConditionSyntaxError(f"{combinator.value} expects a list")
    children = []
    for item in value:
        if not isinstance(item, Mapping):
            raise ConditionSyntaxError(f"{combinator.value} items must be objects")
        children.append(_parse_document(item))

    if combinator is Combinator.AND:
        return AllOf(tuple(children))
    return AnyOf(tuple(children))


def _parse_field(path: str, value: Any) -> List[ConditionNode]:
    if not isinstance(value, Mapping):
        return [FieldCondition(path, Operator.EQ, copy.deepcopy(value))]

    keys = list(value)
    if all(key in OPERATOR_TOKENS for key in keys):
        return [
            FieldCondition(path, Operator(key), copy.deepcopy(operand))
            for key, operand in value.items()
        ]

    if any(isinstance(key, str) and key.startswith("$") for key in keys):
        raise ConditionSyntaxError(
            f"Field {path!r} mixes operators with nested fields or uses an unknown operator"
        )

    nested: List[ConditionNode] = []
    for key, operand in value.items():
        if not isinstance(key, str):
            raise ConditionSyntaxError(f"Field names must be strings, got {key!r}")
        nested.extend(_parse_field(f"{path}.{key}", operand))
    return nested


# ---------------------------------------------------------------------------
# Serialization back to the document form
# ---------------------------------------------------------------------------

def to_document(node: Optional[ConditionNode]) -> Optional[Dict[str, Any]]:
    """Render a parsed node back to the Mongo-style dict form."""
    if node is None:
        return None
    if isinstance(node, FieldCondition):
        return _field_documents([node])
    if isinstance(node, AllOf):
        fields = [child for child in node.children if isinstance(child, FieldCondition)]
        pairs = {(child.field, child.operator) for child in fields}
        if len(fields) == len(node.children) and len(pairs) == len(fields):
            return _field_documents(fields)
        return {Combinator.AND.value: [to_document(child) for child in node.children]}
    if isinstance(node, AnyOf):
        return {Combinator.OR.value: [to_document(child) for child in node.children]}
    return {Combinator.NOT.value: to_document(node.child)}


def _field_documents(conditions: List[FieldCondition]) -> Dict[str, Any]:
    by_field: Dict[str, Dict[str, Any]] = {}
    for condition in conditions:
        by_field.setdefault(condition.field, {})[condition.operator.value] = copy.deepcopy(condition.value)

    document: Dict[str, Any] = {}
    for field_path, operators in by_field.items():
        only_eq = list(operators) == [Operator.EQ.value]
        if only_eq and not isinstance(operators[Operator.EQ.value], Mapping):
            document[field_path] = operators[Operator.EQ.value]
        else:
            document[field_path] = operators
    return document


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def matches(conditions: Any, subject: Any) -> bool:
    """Check a condition expression against a subject.

    ``conditions`` may be a parsed node, a raw document or ``None``.
    """
    node = parse_conditions(conditions)
    if node is None:
        return True
    return node.matches(subject)


def resolve_field(subject: Any, path: str) -> Any:
    """Resolve a dotted field path, returning ``ABSENT`` when it is missing."""
    current = subject
    for segment in path.split("."):
        current = _read_segment(current, segment)
        if current is ABSENT:
            return ABSENT
    return current


def _read_segment(value: Any, name: str) -> Any:
    if value is None or value is ABSENT:
        return ABSENT
    if isinstance(value, FieldReadable):
        return value.read_field(name)
    if isinstance(value, Mapping):
        return value[name] if name in value else ABSENT
    if isinstance(value, BaseModel):
        if name in type(value).model_fields:
            return getattr(value, name)
        return ABSENT
    # Scalars, lists and opaque objects have no addressable fields
    return ABSENT


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def values_equal(actual: Any, expected: Any) -> bool:
    """Equality shared by ``$eq``, ``$ne``, ``$in`` and ``$nin``."""
    if actual is ABSENT or expected is ABSENT:
        return False
    if actual is None or expected is None:
        return actual is None and expected is None
    if isinstance(actual, bool) or isinstance(expected, bool):
        return isinstance(actual, bool) and isinstance(expected, bool) and actual == expected
    if _is_number(actual) and _is_number(expected):
        return actual == expected
    if isinstance(actual, str) or isinstance(expected, str):
        return isinstance(actual, str) and isinstance(expected, str) and actual == expected
    if isinstance(actual, Mapping) and isinstance(expected, Mapping):
        return (
            set(actual) == set(expected)
            and all(values_equal(actual[key], expected[key]) for key in actual)
        )
    if isinstance(actual, (list, tuple)) and isinstance(expected, (list, tuple)):
        return len(actual) == len(expected) and all(
            values_equal(a, e) for a, e in zip(actual, expected)
        )
    return type(actual) is type(expected) and actual == expected


def _compare(actual: Any, expected: Any) -> Optional[int]:
    """Three-way compare for number/number and str/str, else None."""
    comparable = (
        (_is_number(actual) and _is_number(expected))
        or (isinstance(actual, str) and isinstance(expected, str))
    )
    if not comparable:
        return None
    if actual < expected:
        return -1
    if actual > expected:
        return 1
    return 0


@functools.lru_cache(maxsize=256)
def _compile_pattern(pattern: str) -> Optional["re.Pattern[str]"]:
    try:
        return re.compile(pattern)
    except re.error:
        return None


def apply_operator(operator: Operator, actual: Any, expected: Any) -> bool:
    """Apply one operator to a resolved field value."""
    if operator is Operator.EQ:
        return values_equal(actual, expected)

    if operator is Operator.NE:
        return not values_equal(actual, expected)

    if operator in (Operator.GT, Operator.GTE, Operator.LT, Operator.LTE):
        order = _compare(actual, expected)
        if order is None:
            return False
        if operator is Operator.GT:
            return order > 0
        if operator is Operator.GTE:
            return order >= 0
        if operator is Operator.LT:
            return order < 0
        return order <= 0

    if operator is Operator.IN:
        if not isinstance(expected, (list, tuple)):
            return False
        return any(values_equal(actual, item) for item in expected)

    if operator is Operator.NIN:
        if not isinstance(expected, (list, tuple)):
            return False
        return not any(values_equal(actual, item) for item in expected)

    if operator is Operator.EXISTS:
        should_exist = expected if isinstance(expected, bool) else True
        return (actual is not ABSENT) == should_exist

    if operator is Operator.REGEX:
        if not isinstance(actual, str) or not isinstance(expected, str):
            return False
        pattern = _compile_pattern(expected)
        return pattern is not None and pattern.search(actual) is not None

    return False

"""
Guard and Mutation values for guarded writes.

A ``Guard`` is a conjunction of field predicates (plus optional ``$elemMatch``
and ``$or`` clauses) over a MongoDB-shaped document. It compiles to a filter
for ``find_one_and_update`` and can also evaluate a plain ``dict`` in memory,
so a guard can be unit tested without a database.

A ``Mutation`` is the matching update value: ``$set``, ``$unset``, ``$push``,
``$pull``, ``$inc`` and ``$setOnInsert``, with support for the positional
``$`` operator on array paths.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union


class Op(str, Enum):
    EQ = "$eq"
    NE = "$ne"
    IN = "$in"
    NIN = "$nin"
    EXISTS = "$exists"
    LT = "$lt"
    LTE = "$lte"
    GT = "$gt"
    GTE = "$gte"


# =====================================
# DOCUMENT PATH HELPERS
# =====================================

def _normalize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def resolve_path(value: Any, parts: Sequence[str]) -> List[Any]:
    """Resolve a dotted path the way MongoDB does, fanning out over arrays."""
    if not parts:
        return [value]
    head, rest = parts[0], parts[1:]
    if isinstance(value, list):
        if head.isdigit():
            index = int(head)
            return resolve_path(value[index], rest) if index < len(value) else []
        resolved: List[Any] = []
        for item in value:
            resolved.extend(resolve_path(item, parts))
        return resolved
    if isinstance(value, dict) and head in value:
        return resolve_path(value[head], rest)
    return []


def _candidates(doc: Dict[str, Any], path: str) -> List[Any]:
    values = resolve_path(doc, path.split("."))
    expanded: List[Any] = []
    for value in values:
        expanded.append(value)
        if isinstance(value, list):
            expanded.extend(value)
    return expanded


def _compare(op: Op, left: Any, right: Any) -> bool:
    left, right = _normalize(left), _normalize(right)
    if left is None or right is None:
        return False
    try:
        if op == Op.LT:
            return left < right
        if op == Op.LTE:
            return left <= right
        if op == Op.GT:
            return left > right
        return left >= right
    except TypeError:
        return False


def _equals(candidates: List[Any], expected: Any) -> bool:
    expected = _normalize(expected)
    if expected is None:
        return not candidates or any(c is None for c in candidates)
    return any(_normalize(c) == expected for c in candidates)


def _plain(value: Any) -> Any:
    """Strip enums so compiled filters only carry BSON-friendly values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


# =====================================
# GUARD CLAUSES
# =====================================

@dataclass(frozen=True)
class FieldPredicate:
    path: str
    op: Op
    value: Any = None

    def matches(self, doc: Dict[str, Any]) -> bool:
        candidates = _candidates(doc, self.path)
        if self.op == Op.EQ:
            return _equals(candidates, self.value)
        if self.op == Op.NE:
            return not _equals(candidates, self.value)
        if self.op == Op.IN:
            return any(_equals(candidates, v) for v in self.value)
        if self.op == Op.NIN:
            return not any(_equals(candidates, v) for v in self.value)
        if self.op == Op.EXISTS:
            return bool(resolve_path(doc, self.path.split("."))) == bool(self.value)
        return any(_compare(self.op, c, self.value) for c in candidates)

    def compile(self) -> Dict[str, Any]:
        return {self.op.value: _plain(self.value)}


@dataclass(frozen=True)
class ElemMatch:
    path: str
    guard: "Guard"
    negate: bool = False

    def elements(self, doc: Dict[str, Any]) -> List[Any]:
        elements: List[Any] = []
        for value in resolve_path(doc, self.path.split(".")):
            if isinstance(value, list):
                elements.extend(value)
        return elements

    def matches(self, doc: Dict[str, Any]) -> bool:
        found = any(
            isinstance(element, dict) and self.guard.matches(element)
            for element in self.elements(doc)
        )
        return not found if self.negate else found

    def compile(self) -> Dict[str, Any]:
        clause = {"$elemMatch": self.guard.to_filter()}
        return {"$not": clause} if self.negate else clause


@dataclass(frozen=True)
class AnyOf:
    guards: Tuple["Guard", ...]

    def matches(self, doc: Dict[str, Any]) -> bool:
        return any(g.matches(doc) for g in self.guards)


Clause = Union[FieldPredicate, ElemMatch, AnyOf]


@dataclass(frozen=True)
class Guard:
    """Immutable conjunction of clauses. Builder methods return a new Guard."""

    clauses: Tuple[Clause, ...] = ()

    @classmethod
    def by_id(cls, doc_id: Any) -> "Guard":
        return cls().eq("_id", doc_id)

    def _with(self, clause: Clause) -> "Guard":
        return Guard(self.clauses + (clause,))

    def eq(self, path: str, value: Any) -> "Guard":
        return self._with(FieldPredicate(path, Op.EQ, value))

    def ne(self, path: str, value: Any) -> "Guard":
        return self._with(FieldPredicate(path, Op.NE, value))

    def in_(self, path: str, values: Sequence[Any]) -> "Guard":
        return self._with(FieldPredicate(path, Op.IN, tuple(values)))

    def nin(self, path: str, values: Sequence[Any]) -> "Guard":
        return self._with(FieldPredicate(path, Op.NIN, tuple(values)))

    def exists(self, path: str, present: bool = True) -> "Guard":
        return self._with(FieldPredicate(path, Op.EXISTS, present))

    def absent(self, path: str) -> "Guard":
        return self.exists(path, False)

    def lt(self, path: str, value: Any) -> "Guard":
        return self._with(FieldPredicate(path, Op.LT, value))

    def lte(self, path: str, value: Any) -> "Guard":
        return self._with(FieldPredicate(path, Op.LTE, value))

    def gt(self, path: str, value: Any) -> "Guard":
        return self._with(FieldPredicate(path, Op.GT, value))

    def gte(self, path: str, value: Any) -> "Guard":
        return self._with(FieldPredicate(path, Op.GTE, value))

    def elem_match(self, path: str, guard: "Guard") -> "Guard":
        return self._with(ElemMatch(path, guard))

    def no_elem_match(self, path: str, guard: "Guard") -> "Guard":
        return self._with(ElemMatch(path, guard, negate=True))

    def any_of(self, *guards: "Guard") -> "Guard":
        return self._with(AnyOf(tuple(guards)))

    def __and__(self, other: "Guard") -> "Guard":
        return Guard(self.clauses + other.clauses)

    # -------------------------------------
    # Evaluation
    # -------------------------------------

    def matches(self, doc: Dict[str, Any]) -> bool:
        return all(clause.matches(doc) for clause in self.clauses)

    def positional_index(self, doc: Dict[str, Any], array_path: str) -> Optional[int]:
        """
        Index of the first element of ``array_path`` satisfying every clause
        that addresses that array. Mirrors what the positional ``$`` operator
        resolves to on the server.
        """
        element_checks = []
        prefix = array_path + "."
        for clause in self.clauses:
            if isinstance(clause, ElemMatch) and clause.path == array_path and not clause.negate:
                element_checks.append(clause.guard.matches)
            elif isinstance(clause, FieldPredicate) and clause.path.startswith(prefix):
                sub = FieldPredicate(clause.path[len(prefix):], clause.op, clause.value)
                element_checks.append(sub.matches)
        if not element_checks:
            return None

        values = resolve_path(doc, array_path.split("."))
        array = values[0] if values and isinstance(values[0], list) else []
        for index, element in enumerate(array):
            if isinstance(element, dict) and all(check(element) for check in element_checks):
                return index
        return None

    def equality_fields(self) -> Dict[str, Any]:
        """Fields pinned by equality, used to seed an upserted document."""
        return {
            clause.path: _plain(clause.value)
            for clause in self.clauses
            if isinstance(clause, FieldPredicate) and clause.op == Op.EQ
        }

    # -------------------------------------
    # Compilation
    # -------------------------------------

    def to_filter(self) -> Dict[str, Any]:
        fields: Dict[str, Dict[str, Any]] = {}
        extra: List[Dict[str, Any]] = []
        disjunctions: List[List[Dict[str, Any]]] = []

        for clause in self.clauses:
            if isinstance(clause, AnyOf):
                disjunctions.append([g.to_filter() for g in clause.guards])
                continue
            compiled = clause.compile()
            ops = fields.setdefault(clause.path, {})
            if any(key in ops for key in compiled):
                extra.append({clause.path: compiled})
            else:
                ops.update(compiled)

        query: Dict[str, Any] = {}
        for path, ops in fields.items():
            if list(ops) == ["$eq"]:
                query[path] = ops["$eq"]
            else:
                query[path] = ops

        conjuncts = extra + [{"$or": branches} for branches in disjunctions]
        if len(conjuncts) == 1 and "$or" in conjuncts[0]:
            query.update(conjuncts[0])
        elif conjuncts:
            query["$and"] = conjuncts
        return query

    def describe(self) -> str:
        return repr(self.to_filter())


# =====================================
# MUTATION
# =====================================

def _walk(doc: Dict[str, Any], parts: Sequence[str], create: bool) -> Tuple[Any, str]:
    """Return (container, last_key) for a dotted path."""
    node: Any = doc
    for part in parts[:-1]:
        if isinstance(node, list):
            node = node[int(part)]
            continue
        if part not in node or node[part] is None:
            if not create:
                return None, parts[-1]
            node[part] = {}
        node = node[part]
    return node, parts[-1]


def _split(path: str, position: Optional[int]) -> List[str]:
    parts = path.split(".")
    if "$" in parts:
        if position is None:
            raise ValueError(f"Positional path '{path}' used without a matching array guard")
        parts = [str(position) if part == "$" else part for part in parts]
    return parts


def _get(doc: Dict[str, Any], parts: Sequence[str]) -> Any:
    container, key = _walk(doc, parts, create=False)
    if container is None:
        return None
    if isinstance(container, list):
        return container[int(key)]
    return container.get(key)


def _put(doc: Dict[str, Any], parts: Sequence[str], value: Any) -> None:
    container, key = _walk(doc, parts, create=True)
    if isinstance(container, list):
        container[int(key)] = value
    else:
        container[key] = value


@dataclass
class Mutation:
    """
    Update document builder. Every builder method returns ``self`` so calls
    can be chained, e.g. ``Mutation().set_field("status", "active").inc_field("amount", 10)``.
    """

    sets: Dict[str, Any] = field(default_factory=dict)
    unsets: List[str] = field(default_factory=list)
    pushes: Dict[str, List[Any]] = field(default_factory=dict)
    pulls: Dict[str, Any] = field(default_factory=dict)
    incs: Dict[str, Any] = field(default_factory=dict)
    on_insert: Dict[str, Any] = field(default_factory=dict)

    def set_field(self, path: str, value: Any) -> "Mutation":
        self.sets[path] = value
        return self

    def set_fields(self, values: Dict[str, Any]) -> "Mutation":
        self.sets.update(values)
        return self

    def unset_field(self, *paths: str) -> "Mutation":
        for path in paths:
            if path not in self.unsets:
                self.unsets.append(path)
        return self

    def push_item(self, path: str, value: Any) -> "Mutation":
        self.pushes.setdefault(path, []).append(value)
        return self

    def push_items(self, path: str, values: Sequence[Any]) -> "Mutation":
        self.pushes.setdefault(path, []).extend(values)
        return self

    def pull_where(self, path: str, condition: Any) -> "Mutation":
        """Pull array elements equal to ``condition`` or matching it when it is a Guard."""
        self.pulls[path] = condition
        return self

    def inc_field(self, path: str, amount: Union[int, float]) -> "Mutation":
        self.incs[path] = self.incs.get(path, 0) + amount
        return self

    def set_on_insert(self, values: Dict[str, Any]) -> "Mutation":
        self.on_insert.update(values)
        return self

    def merge(self, other: "Mutation") -> "Mutation":
        self.sets.update(other.sets)
        self.unset_field(*other.unsets)
        for path, values in other.pushes.items():
            self.push_items(path, values)
        self.pulls.update(other.pulls)
        for path, amount in other.incs.items():
            self.inc_field(path, amount)
        self.on_insert.update(other.on_insert)
        return self

    @property
    def is_empty(self) -> bool:
        return not (self.sets or self.unsets or self.pushes or self.pulls or self.incs or self.on_insert)

    def to_update(self) -> Dict[str, Any]:
        update: Dict[str, Any] = {}
        if self.sets:
            update["$set"] = _plain(self.sets)
        if self.unsets:
            update["$unset"] = {path: "" for path in self.unsets}
        if self.pushes:
            update["$push"] = {
                path: _plain(values[0]) if len(values) == 1 else {"$each": _plain(values)}
                for path, values in self.pushes.items()
            }
        if self.pulls:
            update["$pull"] = {
                path: cond.to_filter() if isinstance(cond, Guard) else _plain(cond)
                for path, cond in self.pulls.items()
            }
        if self.incs:
            update["$inc"] = dict(self.incs)
        if self.on_insert:
            update["$setOnInsert"] = _plain(self.on_insert)
        return update

    def apply(
        self,
        doc: Dict[str, Any],
        position: Optional[int] = None,
        inserting: bool = False,
    ) -> Dict[str, Any]:
        """Return a new document with this mutation applied, as the server would."""
        result = copy.deepcopy(doc)

        if inserting:
            for path, value in _plain(self.on_insert).items():
                _put(result, _split(path, position), value)
        for path, value in _plain(self.sets).items():
            _put(result, _split(path, position), value)
        for path in self.unsets:
            container, key = _walk(result, _split(path, position), create=False)
            if isinstance(container, dict):
                container.pop(key, None)
        for path, amount in self.incs.items():
            parts = _split(path, position)
            _put(result, parts, (_get(result, parts) or 0) + amount)
        for path, values in self.pushes.items():
            parts = _split(path, position)
            current = _get(result, parts)
            if current is None:
                current = []
                _put(result, parts, current)
            current.extend(_plain(values))
        for path, condition in self.pulls.items():
            parts = _split(path, position)
            current = _get(result, parts)
            if not isinstance(current, list):
                continue
            if isinstance(condition, Guard):
                kept = [e for e in current if not (isinstance(e, dict) and condition.matches(e))]
            else:
                kept = [e for e in current if e != _plain(condition)]
            _put(result, parts, kept)
        return result

    def positional_array(self) -> Optional[str]:
        """The array path addressed by a positional ``$`` segment, if any."""
        paths = list(self.sets) + self.unsets + list(self.pushes) + list(self.pulls) + list(self.incs)
        for path in paths:
            if ".$." in path or path.endswith(".$"):
                return path.split(".$", 1)[0]
        return None

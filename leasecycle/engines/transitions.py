from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional, Union

from leasecycle.models.contract import Contract, ContractStatus
from leasecycle.utils.exceptions import PreconditionFailedError

S = ContractStatus

ASSIGNMENT_TRANSITIONS: Mapping[str, FrozenSet[str]] = {
    S.NEW.value: frozenset({S.UPCOMING.value, S.IN_PROGRESS.value}),
    S.UPCOMING.value: frozenset({S.ACTIVE.value, S.CLOSED.value}),
    S.IN_PROGRESS.value: frozenset({S.ACTIVE.value, S.CLOSED.value}),
    S.ACTIVE.value: frozenset({S.CLOSED.value}),
    S.CLOSED.value: frozenset(),
}

RENTAL_TRANSITIONS: Mapping[str, FrozenSet[str]] = {
    S.NEW.value: frozenset({S.UPCOMING.value, S.IN_PROGRESS.value, S.ACTIVE.value}),
    S.IN_PROGRESS.value: frozenset({S.UPCOMING.value, S.ACTIVE.value, S.CLOSED.value}),
    S.UPCOMING.value: frozenset({S.ACTIVE.value, S.CLOSED.value}),
    S.ACTIVE.value: frozenset({S.CLOSED.value}),
    S.CLOSED.value: frozenset(),
}


def allowed_sources(table: Mapping[str, FrozenSet[str]], target: str) -> FrozenSet[str]:
    """Statuses from which ``target`` is reachable in one step."""
    target = ContractStatus(target).value
    return frozenset(source for source, targets in table.items() if target in targets)


@dataclass
class TransitionContext:
    """Who asked for the change and any data the mutation needs"""
    user_id: str = "SYSTEM"
    partner_id: Optional[str] = None
    contract_end_date: Optional[Any] = None
    queue_id: Optional[str] = None
    rental_sources: Optional[FrozenSet[str]] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TransitionApplied:
    previous: Contract
    updated: Contract
    operation: str = "status"

    @property
    def applied(self) -> bool:
        return True


@dataclass
class TransitionRejected:
    """The guard matched nothing: the contract is no longer in a state that allows the change"""
    contract_id: str
    reason: str
    guard: Optional[Dict[str, Any]] = None
    operation: str = "status"

    @property
    def applied(self) -> bool:
        return False


TransitionOutcome = Union[TransitionApplied, TransitionRejected]


def raise_for_rejection(outcome: TransitionOutcome) -> TransitionApplied:
    """Turn a rejection into ``PreconditionFailedError`` for callers that want exceptions."""
    if isinstance(outcome, TransitionRejected):
        raise PreconditionFailedError(outcome.reason, contract_id=outcome.contract_id, guard=outcome.guard)
    return outcome

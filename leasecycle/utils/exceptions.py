from typing import Iterable, Optional


class ContractEngineError(Exception):
    pass


class NotFoundError(ContractEngineError):
    def __init__(self, entity: str, entity_id: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found" + (f": {entity_id}" if entity_id else ""))


class ValidationFailedError(ContractEngineError):
    def __init__(self, message: str, fields: Iterable[str] = ()):
        self.fields = list(fields)
        super().__init__(message)


class InvalidTransitionError(ValidationFailedError):
    pass


class PreconditionFailedError(ContractEngineError):
    """A guarded write matched no document; the caller should re-read and decide."""

    def __init__(self, message: str, contract_id: Optional[str] = None, guard: Optional[dict] = None):
        self.contract_id = contract_id
        self.guard = guard
        super().__init__(message)


class DownstreamFailureError(ContractEngineError):
    """A side effect failed after the contract write committed. Nothing is rolled back."""

    def __init__(self, effect: str, contract_id: Optional[str] = None):
        self.effect = effect
        self.contract_id = contract_id
        super().__init__(f"Side effect '{effect}' failed for contract {contract_id}")

"""Error taxonomy for ledger runs."""

from __future__ import annotations


class LedgerError(Exception):
    can_resume = True


class DataQualityError(LedgerError):
    """A single certificate or premium could not resolve; routed to an exception path."""

    def __init__(self, reason: str, entity_id: str | None = None) -> None:
        self.reason = reason
        self.entity_id = entity_id
        super().__init__(f"{reason}: {entity_id}" if entity_id else reason)


class HashCollisionError(LedgerError):
    can_resume = False

    def __init__(self, content_hash: str, existing: str, incoming: str, context: str | None = None) -> None:
        self.content_hash = content_hash
        self.existing = existing
        self.incoming = incoming
        self.context = context
        where = f" for {context}" if context else ""
        super().__init__(
            f"Hash collision detected{where}: {content_hash}\nExisting: {existing}\nNew: {incoming}"
        )


class TransientInfraError(LedgerError):
    def __init__(self, operation: str, attempts: int, cause: BaseException | None = None) -> None:
        self.operation = operation
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"{operation} failed after {attempts} attempts: {cause}")


class ExportPreconditionError(LedgerError):
    def __init__(self, check: str, detail: str) -> None:
        self.check = check
        self.detail = detail
        super().__init__(f"Export precondition '{check}' failed: {detail}")


class RunAbortedError(LedgerError):
    def __init__(self, run_id: str, stage: str, invariant: str, can_resume: bool) -> None:
        self.run_id = run_id
        self.stage = stage
        self.invariant = invariant
        self.can_resume = can_resume
        super().__init__(f"Run {run_id} aborted at stage '{stage}': {invariant}")

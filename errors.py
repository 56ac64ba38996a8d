"""Typed failures raised by the ledger core and its persistence services.

``LedgerValidationError`` and ``InvalidReference`` abort a single user action,
and stop an import at the offending row. ``DuplicateExternalId`` is a skip
during an import. ``PersistenceError`` wraps anything the storage layer
rejects or cannot reach.
"""


class LedgerError(Exception):
    pass


class LedgerValidationError(LedgerError, ValueError):
    """Unparseable input or a missing/contradictory reference."""


class InvalidTransfer(LedgerValidationError):
    pass


class InvalidReference(LedgerError, LookupError):
    """An account, category or schedule id that does not exist for the user."""

    def __init__(self, kind: str, ref_id: object) -> None:
        super().__init__(f"{kind} not found: {ref_id}")
        self.kind = kind
        self.ref_id = ref_id


class DuplicateExternalId(LedgerError):
    def __init__(self, external_id: str) -> None:
        super().__init__(f"Transaction with external id {external_id!r} already exists")
        self.external_id = external_id


class ScheduleBusy(LedgerError):
    def __init__(self, schedule_id: int) -> None:
        super().__init__(f"Schedule {schedule_id} is already being paid")
        self.schedule_id = schedule_id


class PersistenceError(LedgerError):
    pass

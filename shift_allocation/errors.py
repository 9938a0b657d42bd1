"""
Exceptions raised by the allocation core.

Claim gating failures are not exceptions; they come back as
`ClaimRejection` values.
"""


class AllocationError(Exception):
    retryable: bool = False


class NotFoundError(AllocationError):
    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(AllocationError):
    """Contention or a stale write on a shift. Safe to retry with backoff."""

    retryable = True


class ShiftContendedError(ConflictError):
    def __init__(self, shift_id: str, timeout: float) -> None:
        super().__init__(
            f"Shift {shift_id} is busy (lock not acquired within {timeout}s), "
            "try again"
        )
        self.shift_id = shift_id
        self.timeout = timeout


class StaleShiftError(ConflictError):
    def __init__(self, shift_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Shift {shift_id} changed concurrently "
            f"(expected version {expected}, found {actual})"
        )
        self.shift_id = shift_id
        self.expected = expected
        self.actual = actual


class InternalError(AllocationError):
    pass


class ClaimAlreadyResolvedError(ConflictError):
    retryable = False

    def __init__(self, claim_id: str, status: str) -> None:
        super().__init__(f"Claim {claim_id} has already been resolved ({status})")
        self.claim_id = claim_id
        self.status = status


class ShiftUnavailableError(ConflictError):
    retryable = False

    def __init__(self, shift_id: str, status: str) -> None:
        super().__init__(f"Shift {shift_id} is not open for assignment ({status})")
        self.shift_id = shift_id
        self.status = status

class SettlementError(Exception):
    pass


class RewardNotFoundError(SettlementError):
    pass


class InvalidStateTransitionError(SettlementError):
    pass


class DuplicateReferenceError(SettlementError):
    def __init__(self, transaction_ref: str, owner_id=None):
        self.transaction_ref = transaction_ref
        self.owner_id = owner_id
        super().__init__(f"Transaction {transaction_ref} is already attached to reward {owner_id}")


class IdempotencyConflictError(SettlementError):
    pass


class ImmutableFieldError(SettlementError):
    pass


class LedgerError(Exception):
    kind = "error"


class LedgerRejectedError(LedgerError):
    """The ledger explicitly refused the transfer; nothing was broadcast."""
    kind = "rejected"


class LedgerUnavailableError(LedgerError):
    """Network failure or timeout: whether the ledger applied the call is unknown."""
    kind = "unavailable"

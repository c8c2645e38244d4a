"""
Leash error types.

Every failure aborts the current operation before its ledger transaction
commits, so callers can always retry an identical request safely.
"""


class LeashError(Exception):
    """Base error for all Leash operations."""

    code = "LeashError"


class AddressMismatchError(LeashError):
    """Supplied account does not match its re-derived address."""

    code = "AddressMismatch"

    def __init__(self, role: str, expected: str, actual: str):
        self.role = role
        self.expected = expected
        self.actual = actual
        super().__init__(f"{role} account mismatch: expected {expected}, got {actual}")


class SignerMismatchError(LeashError):
    """Transaction signer is not the identity the record delegates to."""

    code = "SignerMismatch"


class ConstraintViolationError(LeashError):
    """Related records disagree on a field that must be equal."""

    code = "ConstraintViolation"


class InvalidAmountError(ConstraintViolationError):
    """Amount is outside the range the operation accepts."""

    code = "InvalidAmount"


class BudgetExceededError(LeashError):
    """Spend would push a permission past its budget."""

    code = "BudgetExceeded"

    def __init__(self, amount: int, remaining: int):
        self.amount = amount
        self.remaining = remaining
        super().__init__(f"Amount {amount} exceeds remaining budget {remaining}")


class AlreadyInitializedError(LeashError):
    """Account already exists at the derived address."""

    code = "AlreadyInitialized"


class AccountNotFoundError(LeashError):
    """No record exists at the supplied address."""

    code = "AccountNotFound"

    def __init__(self, kind: str, address: str):
        self.kind = kind
        self.address = address
        super().__init__(f"{kind} account not found: {address}")


class ArithmeticOverflowError(LeashError):
    """Result does not fit an unsigned 64-bit amount."""

    code = "ArithmeticOverflow"


class UnauthorizedError(LeashError):
    """Signer is not the authority of the record."""

    code = "Unauthorized"


# Host ledger errors
class InsufficientFundsError(LeashError):
    """Source balance cannot cover the debit."""

    code = "InsufficientFunds"

    def __init__(self, address: str, needed: int, available: int):
        self.address = address
        self.needed = needed
        self.available = available
        super().__init__(f"{address} needs {needed}, has {available}")


class DuplicateInstructionError(LeashError):
    """Signed instruction was already processed."""

    code = "DuplicateInstruction"


class AuditIntegrityError(LeashError):
    """Audit trail entry fails hash-chain verification."""

    code = "AuditIntegrity"

    def __init__(self, line: int, reason: str):
        self.line = line
        self.reason = reason
        super().__init__(f"Audit chain broken at line {line}: {reason}")

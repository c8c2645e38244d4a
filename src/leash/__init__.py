"""
Leash — bounded, revocable spending permissions for AI agents.

An authority funds a vault and delegates per-agent budgets:
Authority deposits → Agent spends within budget → Authority revokes or closes.
"""

__version__ = "0.1.0"

from .errors import (
    AccountNotFoundError,
    AddressMismatchError,
    AuditIntegrityError,
    AlreadyInitializedError,
    ArithmeticOverflowError,
    BudgetExceededError,
    ConstraintViolationError,
    DuplicateInstructionError,
    InsufficientFundsError,
    InvalidAmountError,
    LeashError,
    SignerMismatchError,
    UnauthorizedError,
)
from .derive import DerivedAddress, create_derived_address, find_derived_address, verify_derived_address
from .ledger import Ledger
from .token import TokenProgram
from .vault import Vault, VaultLedger
from .permission import Permission, PermissionRegistry
from .spend import SpendAuthorizer, SpendResult
from .lifecycle import CloseResult, LifecycleManager
from .instruction import Instruction, SignedInstruction, sign_instruction
from .program import LeashProgram
from .audit import AuditTrail, EventType
from .config import LeashConfig

__all__ = [
    "LeashError", "AddressMismatchError", "SignerMismatchError", "ConstraintViolationError",
    "InvalidAmountError", "BudgetExceededError", "AlreadyInitializedError",
    "AccountNotFoundError", "ArithmeticOverflowError", "UnauthorizedError",
    "InsufficientFundsError", "DuplicateInstructionError", "AuditIntegrityError",
    "DerivedAddress", "create_derived_address", "find_derived_address", "verify_derived_address",
    "Ledger", "TokenProgram", "Vault", "VaultLedger", "Permission", "PermissionRegistry",
    "SpendAuthorizer", "SpendResult", "CloseResult", "LifecycleManager",
    "Instruction", "SignedInstruction", "sign_instruction", "LeashProgram",
    "AuditTrail", "EventType", "LeashConfig",
]

"""
Budget-checked spending.

Flow, inside one ledger transaction:
1. Load and re-derive every account argument
2. Check signer, vault relationship, amount and remaining budget
3. Increment ``spent`` and transfer from the holding account
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from .derive import normalize_address
from .errors import (
    ArithmeticOverflowError,
    BudgetExceededError,
    ConstraintViolationError,
    InvalidAmountError,
    SignerMismatchError,
)
from .money import U64_MAX, checked_add
from .permission import Permission, PermissionRegistry
from .token import TokenProgram
from .vault import VaultLedger

logger = logging.getLogger(__name__)


@dataclass
class SpendResult:
    """Outcome of a committed spend."""

    permission: str
    agent: str
    destination: str
    amount: int
    spent: int
    budget: int
    holding_balance: int

    @property
    def remaining(self) -> int:
        return max(0, self.budget - self.spent)

    def to_dict(self) -> dict:
        return {
            "permission": self.permission,
            "agent": self.agent,
            "destination": self.destination,
            "amount": self.amount,
            "spent": self.spent,
            "budget": self.budget,
            "remaining": self.remaining,
            "holding_balance": self.holding_balance,
        }


def check_spend(permission: Permission, amount: int) -> int:
    """Return the new ``spent`` total or raise the first failing budget rule."""
    if amount <= 0 or amount > U64_MAX:
        raise InvalidAmountError(f"Spend amount must be in 1..{U64_MAX}: {amount}")
    remaining = permission.budget - permission.spent
    if amount > remaining:
        raise BudgetExceededError(amount, max(0, remaining))
    new_spent = checked_add(permission.spent, amount)
    if new_spent is None:
        raise ArithmeticOverflowError(f"Spent overflow on {permission.address}")
    return new_spent


class SpendAuthorizer:
    """Executes agent spends against Permission records."""

    def __init__(self, permissions: PermissionRegistry, vaults: VaultLedger, tokens: TokenProgram):
        self.permissions = permissions
        self.vaults = vaults
        self.tokens = tokens

    def spend(
        self,
        conn: sqlite3.Connection,
        agent_signer: str,
        amount: int,
        *,
        permission: str,
        vault: str,
        holding: str,
        destination: str,
    ) -> SpendResult:
        agent_signer = normalize_address(agent_signer)

        record = self.permissions.load(conn, permission)
        owner_vault = self.vaults.load(conn, vault, holding=holding)
        dest = self.tokens.get_account(conn, destination)

        if agent_signer != record.agent:
            raise SignerMismatchError(f"Signer {agent_signer} is not the permitted agent {record.agent}")
        if record.authority != owner_vault.authority:
            raise ConstraintViolationError(
                f"Permission authority {record.authority} does not match vault authority {owner_vault.authority}"
            )
        if dest.address == owner_vault.holding_account:
            raise ConstraintViolationError(
                f"Destination {dest.address} is the vault holding account"
            )
        record.spent = check_spend(record, amount)

        self.permissions.save_spent(conn, record)
        self.tokens.transfer(
            conn,
            owner_vault.holding_account,
            dest.address,
            amount,
            self.vaults.signer_for(owner_vault),
        )

        holding_balance = self.tokens.get_account(conn, owner_vault.holding_account).balance
        logger.info(
            "Spend %s by %s from %s (spent %s of %s)",
            amount,
            agent_signer,
            record.address,
            record.spent,
            record.budget,
        )
        return SpendResult(
            permission=record.address,
            agent=agent_signer,
            destination=dest.address,
            amount=amount,
            spent=record.spent,
            budget=record.budget,
            holding_balance=holding_balance,
        )

"""
Permission records: one per (authority, agent) pair, tracking the agent's
cumulative budget and spend.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass

from .derive import find_derived_address, normalize_address, permission_seeds, verify_derived_address
from .errors import (
    AccountNotFoundError,
    ArithmeticOverflowError,
    ConstraintViolationError,
    InvalidAmountError,
    UnauthorizedError,
)
from .ledger import PERMISSION_SPACE, Ledger
from .money import U64_MAX
from .vault import VaultLedger

logger = logging.getLogger(__name__)


@dataclass
class Permission:
    """A delegation from one authority to one agent."""

    address: str
    authority: str
    agent: str
    budget: int
    spent: int
    nonce: int
    storage_deposit: int = 0
    created_at: int = 0
    updated_at: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.budget - self.spent)

    @property
    def locked_out(self) -> bool:
        return self.spent > self.budget

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "authority": self.authority,
            "agent": self.agent,
            "budget": self.budget,
            "spent": self.spent,
            "remaining": self.remaining,
            "nonce": self.nonce,
            "storage_deposit": self.storage_deposit,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class PermissionRegistry:
    """Creates, updates and revokes Permission records."""

    def __init__(self, ledger: Ledger, vaults: VaultLedger, program_id: str):
        self.ledger = ledger
        self.vaults = vaults
        self.program_id = normalize_address(program_id)

    def permission_address(self, authority: str, agent: str) -> str:
        return find_derived_address(permission_seeds(authority, agent), self.program_id).address

    def _row_to_permission(self, row: sqlite3.Row) -> Permission:
        return Permission(
            address=row["address"],
            authority=row["authority"],
            agent=row["agent"],
            budget=int(row["budget"]),
            spent=int(row["spent"]),
            nonce=row["nonce"],
            storage_deposit=int(row["storage_deposit"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def find(self, conn: sqlite3.Connection, address: str) -> Permission | None:
        row = conn.execute(
            "SELECT * FROM permissions WHERE address = ?",
            (normalize_address(address),),
        ).fetchone()
        return self._row_to_permission(row) if row else None

    def load(self, conn: sqlite3.Connection, address: str) -> Permission:
        """Load a permission and re-verify its address from its own fields."""
        permission = self.find(conn, address)
        if permission is None:
            raise AccountNotFoundError("Permission", normalize_address(address))
        verify_derived_address(
            "permission",
            address,
            permission_seeds(permission.authority, permission.agent),
            permission.nonce,
            self.program_id,
        )
        return permission

    def list_for_authority(self, conn: sqlite3.Connection, authority: str) -> list[Permission]:
        rows = conn.execute(
            "SELECT * FROM permissions WHERE authority = ? ORDER BY created_at ASC, agent ASC",
            (normalize_address(authority),),
        ).fetchall()
        return [self._row_to_permission(r) for r in rows]

    def save_spent(self, conn: sqlite3.Connection, permission: Permission) -> None:
        conn.execute(
            "UPDATE permissions SET spent = ?, updated_at = ? WHERE address = ?",
            (str(permission.spent), int(time.time()), permission.address),
        )

    def authorize(
        self,
        conn: sqlite3.Connection,
        authority: str,
        agent: str,
        budget: int,
        *,
        vault: str,
        permission: str,
    ) -> Permission:
        """Create or update the (authority, agent) permission; ``spent`` is preserved."""
        authority = normalize_address(authority)
        agent = normalize_address(agent)
        seeds = permission_seeds(authority, agent)

        owner_vault = self.vaults.load(conn, vault)
        existing = self.find(conn, permission)
        nonce = existing.nonce if existing else find_derived_address(seeds, self.program_id).nonce
        verify_derived_address("permission", permission, seeds, nonce, self.program_id)

        if owner_vault.authority != authority:
            raise UnauthorizedError(f"Signer {authority} is not the vault authority")
        if existing is not None and existing.authority != authority:
            raise UnauthorizedError(f"Signer {authority} is not the permission authority")
        if budget < 0:
            raise InvalidAmountError(f"Budget must be non-negative: {budget}")
        if budget > U64_MAX:
            raise ArithmeticOverflowError(f"Budget exceeds u64: {budget}")

        now = int(time.time())
        if existing is None:
            deposit = self.ledger.charge_storage(conn, authority, PERMISSION_SPACE)
            address = normalize_address(permission)
            conn.execute(
                """
                INSERT INTO permissions (
                    address, authority, agent, budget, spent, nonce,
                    storage_deposit, created_at, updated_at
                ) VALUES (?, ?, ?, ?, '0', ?, ?, ?, ?)
                """,
                (address, authority, agent, str(budget), nonce, str(deposit), now, now),
            )
            logger.info("Permission created: %s (agent %s, budget %s)", address, agent, budget)
            return Permission(
                address=address,
                authority=authority,
                agent=agent,
                budget=budget,
                spent=0,
                nonce=nonce,
                storage_deposit=deposit,
                created_at=now,
                updated_at=now,
            )

        conn.execute(
            "UPDATE permissions SET budget = ?, updated_at = ? WHERE address = ?",
            (str(budget), now, existing.address),
        )
        existing.budget = budget
        existing.updated_at = now
        if existing.locked_out:
            logger.warning(
                "Permission %s budget %s is below spent %s; agent %s cannot spend until revoked",
                existing.address,
                budget,
                existing.spent,
                agent,
            )
        else:
            logger.info("Permission updated: %s (budget %s)", existing.address, budget)
        return existing

    def revoke(
        self,
        conn: sqlite3.Connection,
        authority: str,
        agent: str,
        *,
        permission: str,
    ) -> Permission:
        """Destroy the (authority, agent) permission and refund its deposit."""
        authority = normalize_address(authority)
        agent = normalize_address(agent)

        record = self.load(conn, permission)
        if record.authority != authority:
            raise ConstraintViolationError(
                f"Permission authority {record.authority} does not match signer {authority}"
            )
        if record.agent != agent:
            raise ConstraintViolationError(
                f"Permission agent {record.agent} does not match {agent}"
            )

        conn.execute("DELETE FROM permissions WHERE address = ?", (record.address,))
        self.ledger.refund_storage(conn, authority, record.storage_deposit)
        logger.info("Permission revoked: %s (agent %s)", record.address, agent)
        return record

"""
Vault records: one per authority, owning the holding account that stores
the authority's delegated funds.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass

from .derive import find_derived_address, normalize_address, vault_seeds, verify_derived_address
from .errors import (
    AccountNotFoundError,
    AddressMismatchError,
    AlreadyInitializedError,
    ArithmeticOverflowError,
    InvalidAmountError,
)
from .ledger import VAULT_SPACE, Ledger
from .money import U64_MAX
from .token import DerivedAuthority, SignerAuthority, TokenProgram

logger = logging.getLogger(__name__)


@dataclass
class Vault:
    """An authority's budget root."""

    address: str
    authority: str
    holding_account: str
    nonce: int
    storage_deposit: int
    created_at: int

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "authority": self.authority,
            "holding_account": self.holding_account,
            "nonce": self.nonce,
            "storage_deposit": self.storage_deposit,
            "created_at": self.created_at,
        }


class VaultLedger:
    """Creates and loads Vault records."""

    def __init__(self, ledger: Ledger, tokens: TokenProgram, program_id: str):
        self.ledger = ledger
        self.tokens = tokens
        self.program_id = normalize_address(program_id)

    def vault_address(self, authority: str) -> str:
        return find_derived_address(vault_seeds(authority), self.program_id).address

    def holding_address(self, vault_address: str) -> str:
        return self.tokens.associated_address(vault_address)

    def signer_for(self, vault: Vault) -> DerivedAuthority:
        """Controller proof for transfers out of the vault's holding account."""
        return DerivedAuthority(
            seeds=tuple(vault_seeds(vault.authority)),
            nonce=vault.nonce,
            program_id=self.program_id,
        )

    def _row_to_vault(self, row: sqlite3.Row) -> Vault:
        return Vault(
            address=row["address"],
            authority=row["authority"],
            holding_account=row["holding_account"],
            nonce=row["nonce"],
            storage_deposit=int(row["storage_deposit"]),
            created_at=row["created_at"],
        )

    def find(self, conn: sqlite3.Connection, address: str) -> Vault | None:
        row = conn.execute(
            "SELECT * FROM vaults WHERE address = ?",
            (normalize_address(address),),
        ).fetchone()
        return self._row_to_vault(row) if row else None

    def load(self, conn: sqlite3.Connection, address: str, holding: str | None = None) -> Vault:
        """Load a vault and re-verify its address (and holding account, if given)."""
        vault = self.find(conn, address)
        if vault is None:
            raise AccountNotFoundError("Vault", normalize_address(address))
        verify_derived_address(
            "vault", address, vault_seeds(vault.authority), vault.nonce, self.program_id
        )
        if holding is not None:
            self.verify_holding(vault, holding)
        return vault

    def verify_holding(self, vault: Vault, holding: str) -> None:
        expected = self.holding_address(vault.address)
        supplied = normalize_address(holding)
        if supplied != expected or vault.holding_account != expected:
            raise AddressMismatchError("holding", expected, supplied)

    def initialize(
        self,
        conn: sqlite3.Connection,
        authority: str,
        amount: int,
        *,
        vault: str,
        holding: str,
        source: str,
    ) -> Vault:
        """Create the authority's vault and holding account and deposit ``amount``."""
        authority = normalize_address(authority)
        derived = find_derived_address(vault_seeds(authority), self.program_id)
        verify_derived_address("vault", vault, vault_seeds(authority), derived.nonce, self.program_id)
        expected_holding = self.holding_address(derived.address)
        if normalize_address(holding) != expected_holding:
            raise AddressMismatchError("holding", expected_holding, normalize_address(holding))

        if self.find(conn, derived.address) is not None:
            raise AlreadyInitializedError(f"Vault already exists for {authority}")
        if amount < 0:
            raise InvalidAmountError(f"Deposit must be non-negative: {amount}")
        if amount > U64_MAX:
            raise ArithmeticOverflowError(f"Deposit exceeds u64: {amount}")

        now = int(time.time())
        deposit = self.ledger.charge_storage(conn, authority, VAULT_SPACE)
        conn.execute(
            """
            INSERT INTO vaults (
                address, authority, holding_account, nonce, storage_deposit, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (derived.address, authority, expected_holding, derived.nonce, str(deposit), now),
        )
        holding_account = self.tokens.find_account(conn, expected_holding)
        if holding_account is None:
            self.tokens.create_account(conn, authority, derived.address)
        elif holding_account.owner != derived.address:
            raise AddressMismatchError("holding owner", derived.address, holding_account.owner)
        else:
            # Opened ahead of time by another payer; any balance already there stays in the vault
            logger.info("Adopting existing holding account %s (balance %s)", expected_holding, holding_account.balance)
        self.tokens.transfer(conn, source, expected_holding, amount, SignerAuthority(authority))

        logger.info("Vault initialized: %s (authority %s, deposit %s)", derived.address, authority, amount)
        return Vault(
            address=derived.address,
            authority=authority,
            holding_account=expected_holding,
            nonce=derived.nonce,
            storage_deposit=deposit,
            created_at=now,
        )

    def close(self, conn: sqlite3.Connection, vault: Vault, recipient: str) -> int:
        conn.execute("DELETE FROM vaults WHERE address = ?", (vault.address,))
        self.ledger.refund_storage(conn, recipient, vault.storage_deposit)
        return vault.storage_deposit

"""
Local host ledger.

All records live in one SQLite database. Every operation runs inside a
``BEGIN IMMEDIATE`` transaction on its own connection, so SQLite's write lock
serializes operations that touch the same records across threads and
processes, and any exception rolls back every effect of the operation.

Amounts are unsigned 64-bit integers and are stored as TEXT because SQLite
INTEGER is signed.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .derive import normalize_address
from .errors import ArithmeticOverflowError, InsufficientFundsError, InvalidAmountError
from .money import U64_MAX, checked_add
from .storage import ensure_private_dir, secure_database_files

logger = logging.getLogger(__name__)


ACCOUNT_STORAGE_OVERHEAD = 128
LAMPORTS_PER_BYTE_YEAR = 3480
EXEMPTION_THRESHOLD_YEARS = 2

# Record sizes in bytes: 8-byte discriminator plus fields
VAULT_SPACE = 8 + 20 + 32 + 1
PERMISSION_SPACE = 8 + 20 + 20 + 8 + 8 + 1
TOKEN_ACCOUNT_SPACE = 165


def storage_deposit(space: int) -> int:
    """Native amount a record of ``space`` bytes must hold while it exists."""
    return (ACCOUNT_STORAGE_OVERHEAD + space) * LAMPORTS_PER_BYTE_YEAR * EXEMPTION_THRESHOLD_YEARS


class Ledger:
    """SQLite-backed record store and transaction boundary."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        ensure_private_dir(self.db_path.parent)
        self._init_db()
        secure_database_files(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS wallets (
                    address TEXT PRIMARY KEY,
                    lamports TEXT NOT NULL DEFAULT '0'
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS vaults (
                    address TEXT PRIMARY KEY,
                    authority TEXT NOT NULL UNIQUE,
                    holding_account TEXT NOT NULL,
                    nonce INTEGER NOT NULL,
                    storage_deposit TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS permissions (
                    address TEXT PRIMARY KEY,
                    authority TEXT NOT NULL,
                    agent TEXT NOT NULL,
                    budget TEXT NOT NULL,
                    spent TEXT NOT NULL,
                    nonce INTEGER NOT NULL,
                    storage_deposit TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    UNIQUE (authority, agent)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS token_accounts (
                    address TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    balance TEXT NOT NULL,
                    storage_deposit TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS processed_instructions (
                    instruction_hash TEXT PRIMARY KEY,
                    operation TEXT NOT NULL,
                    signer TEXT NOT NULL,
                    processed_at INTEGER NOT NULL
                )
                """
            )
        finally:
            conn.close()

    @contextmanager
    def transaction(self, commit: bool = True) -> Iterator[sqlite3.Connection]:
        """Run a block as one all-or-nothing ledger transaction.

        With ``commit=False`` every effect is rolled back after the block
        completes (dry-run simulation).
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT" if commit else "ROLLBACK")
        finally:
            conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    # ── Native balances ───────────────────────────────────────────

    def get_lamports(self, conn: sqlite3.Connection, address: str) -> int:
        row = conn.execute(
            "SELECT lamports FROM wallets WHERE address = ?",
            (normalize_address(address),),
        ).fetchone()
        return int(row["lamports"]) if row else 0

    def credit(self, conn: sqlite3.Connection, address: str, amount: int) -> None:
        address = normalize_address(address)
        total = checked_add(self.get_lamports(conn, address), amount)
        if total is None:
            raise ArithmeticOverflowError(f"Native balance overflow for {address}")
        conn.execute(
            """
            INSERT INTO wallets (address, lamports) VALUES (?, ?)
            ON CONFLICT(address) DO UPDATE SET lamports = excluded.lamports
            """,
            (address, str(total)),
        )

    def debit(self, conn: sqlite3.Connection, address: str, amount: int) -> None:
        address = normalize_address(address)
        available = self.get_lamports(conn, address)
        if amount > available:
            raise InsufficientFundsError(address, amount, available)
        conn.execute(
            "UPDATE wallets SET lamports = ? WHERE address = ?",
            (str(available - amount), address),
        )

    def charge_storage(self, conn: sqlite3.Connection, payer: str, space: int) -> int:
        """Debit ``payer`` by the storage deposit for a new record."""
        deposit = storage_deposit(space)
        self.debit(conn, payer, deposit)
        return deposit

    def refund_storage(self, conn: sqlite3.Connection, recipient: str, deposit: int) -> None:
        self.credit(conn, recipient, deposit)

    def lamports(self, address: str) -> int:
        with self.read() as conn:
            return self.get_lamports(conn, address)

    def airdrop(self, address: str, lamports: int) -> int:
        """Credit native balance to a wallet (local development faucet)."""
        if not 0 < lamports <= U64_MAX:
            raise InvalidAmountError(f"Airdrop amount out of range: {lamports}")
        with self.transaction() as conn:
            self.credit(conn, address, lamports)
            balance = self.get_lamports(conn, address)
        logger.info("Airdropped %s lamports to %s", lamports, address)
        return balance

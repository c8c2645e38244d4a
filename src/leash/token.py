"""
Token program: the host ledger's token-transfer primitive.

Token accounts hold a single token. Moving tokens out of an account requires
a controller proof for the account's owner: a ``SignerAuthority`` for an
authenticated wallet, or a ``DerivedAuthority`` whose seeds re-derive to the
owner's address under the owning program's id. Derived owners have no
private key, so the seeds are the only way to control them.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Sequence, Union

from .config import TOKEN_PROGRAM_ID
from .derive import (
    Seed,
    create_derived_address,
    find_derived_address,
    normalize_address,
    token_account_seeds,
)
from .errors import (
    AccountNotFoundError,
    AlreadyInitializedError,
    ArithmeticOverflowError,
    ConstraintViolationError,
    InsufficientFundsError,
    InvalidAmountError,
)
from .ledger import TOKEN_ACCOUNT_SPACE, Ledger
from .money import U64_MAX, checked_add

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignerAuthority:
    """Wallet that signed the enclosing instruction."""

    address: str


@dataclass(frozen=True)
class DerivedAuthority:
    """Capability proof for an account owned by a derived address."""

    seeds: Sequence[Seed]
    nonce: int
    program_id: str


ControllerProof = Union[SignerAuthority, DerivedAuthority]


@dataclass
class TokenAccount:
    address: str
    owner: str
    balance: int
    storage_deposit: int


def _resolve_authority(authority: ControllerProof) -> str:
    if isinstance(authority, SignerAuthority):
        return normalize_address(authority.address)
    try:
        return create_derived_address(authority.seeds, authority.nonce, authority.program_id)
    except ValueError as e:
        raise ConstraintViolationError(f"Invalid derived authority: {e}") from e


class TokenProgram:
    """Single-mint token accounts stored in the ledger database."""

    def __init__(self, ledger: Ledger, program_id: str = TOKEN_PROGRAM_ID):
        self.ledger = ledger
        self.program_id = normalize_address(program_id)

    def associated_address(self, owner: str) -> str:
        """Canonical token account address for ``owner``."""
        return find_derived_address(token_account_seeds(owner), self.program_id).address

    def _row_to_account(self, row: sqlite3.Row) -> TokenAccount:
        return TokenAccount(
            address=row["address"],
            owner=row["owner"],
            balance=int(row["balance"]),
            storage_deposit=int(row["storage_deposit"]),
        )

    def _save_balance(self, conn: sqlite3.Connection, address: str, balance: int) -> None:
        conn.execute(
            "UPDATE token_accounts SET balance = ? WHERE address = ?",
            (str(balance), address),
        )

    def find_account(self, conn: sqlite3.Connection, address: str) -> TokenAccount | None:
        row = conn.execute(
            "SELECT * FROM token_accounts WHERE address = ?",
            (normalize_address(address),),
        ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account(self, conn: sqlite3.Connection, address: str) -> TokenAccount:
        account = self.find_account(conn, address)
        if account is None:
            raise AccountNotFoundError("Token", normalize_address(address))
        return account

    def create_account(self, conn: sqlite3.Connection, payer: str, owner: str) -> TokenAccount:
        """Create the associated token account of ``owner``, paid for by ``payer``."""
        address = self.associated_address(owner)
        if self.find_account(conn, address) is not None:
            raise AlreadyInitializedError(f"Token account already exists: {address}")
        deposit = self.ledger.charge_storage(conn, payer, TOKEN_ACCOUNT_SPACE)
        conn.execute(
            """
            INSERT INTO token_accounts (address, owner, balance, storage_deposit)
            VALUES (?, ?, '0', ?)
            """,
            (address, normalize_address(owner), str(deposit)),
        )
        return TokenAccount(address=address, owner=normalize_address(owner), balance=0, storage_deposit=deposit)

    def mint_to(self, conn: sqlite3.Connection, destination: str, amount: int) -> int:
        if not 0 < amount <= U64_MAX:
            raise InvalidAmountError(f"Mint amount out of range: {amount}")
        account = self.get_account(conn, destination)
        total = checked_add(account.balance, amount)
        if total is None:
            raise ArithmeticOverflowError(f"Token balance overflow for {account.address}")
        self._save_balance(conn, account.address, total)
        return total

    def transfer(
        self,
        conn: sqlite3.Connection,
        source: str,
        destination: str,
        amount: int,
        authority: ControllerProof,
    ) -> None:
        """Move ``amount`` between token accounts under ``authority``'s control proof."""
        if not 0 <= amount <= U64_MAX:
            raise InvalidAmountError(f"Transfer amount out of range: {amount}")
        src = self.get_account(conn, source)
        dst = self.get_account(conn, destination)

        controller = _resolve_authority(authority)
        if controller != src.owner:
            raise ConstraintViolationError(
                f"Transfer authority {controller} does not own {src.address}"
            )
        if src.address == dst.address:
            raise ConstraintViolationError(f"Source and destination are the same account: {src.address}")
        if amount > src.balance:
            raise InsufficientFundsError(src.address, amount, src.balance)
        total = checked_add(dst.balance, amount)
        if total is None:
            raise ArithmeticOverflowError(f"Token balance overflow for {dst.address}")

        self._save_balance(conn, src.address, src.balance - amount)
        self._save_balance(conn, dst.address, total)

    def close_account(
        self,
        conn: sqlite3.Connection,
        address: str,
        authority: ControllerProof,
        recipient: str,
    ) -> int:
        """Delete an empty token account and refund its deposit to ``recipient``."""
        account = self.get_account(conn, address)
        controller = _resolve_authority(authority)
        if controller != account.owner:
            raise ConstraintViolationError(
                f"Close authority {controller} does not own {account.address}"
            )
        if account.balance != 0:
            raise ConstraintViolationError(
                f"Cannot close {account.address} with non-zero balance {account.balance}"
            )
        conn.execute("DELETE FROM token_accounts WHERE address = ?", (account.address,))
        self.ledger.refund_storage(conn, recipient, account.storage_deposit)
        return account.storage_deposit

    # ── Self-contained helpers ────────────────────────────────────

    def open_account(self, owner: str, payer: str) -> TokenAccount:
        """Open ``owner``'s associated account; ``payer`` must be an authenticated signer."""
        with self.ledger.transaction() as conn:
            account = self.create_account(conn, payer, owner)
        logger.info("Token account opened: %s (owner %s)", account.address, account.owner)
        return account

    def mint(self, owner: str, amount: int) -> int:
        """Mint into ``owner``'s associated account (local development faucet)."""
        with self.ledger.transaction() as conn:
            balance = self.mint_to(conn, self.associated_address(owner), amount)
        logger.info("Minted %s to %s", amount, owner)
        return balance

    def balance(self, address: str) -> int:
        with self.ledger.read() as conn:
            return self.get_account(conn, address).balance

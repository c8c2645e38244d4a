"""Vault teardown: withdraw everything, then close the holding account and vault."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from .derive import normalize_address
from .errors import ConstraintViolationError, UnauthorizedError
from .token import TokenProgram
from .vault import VaultLedger

logger = logging.getLogger(__name__)


@dataclass
class CloseResult:
    vault: str
    authority: str
    withdrawn: int
    refunded_deposit: int

    def to_dict(self) -> dict:
        return {
            "vault": self.vault,
            "authority": self.authority,
            "withdrawn": self.withdrawn,
            "refunded_deposit": self.refunded_deposit,
        }


class LifecycleManager:
    def __init__(self, vaults: VaultLedger, tokens: TokenProgram):
        self.vaults = vaults
        self.tokens = tokens

    def withdraw_and_close(
        self,
        conn: sqlite3.Connection,
        authority: str,
        *,
        vault: str,
        holding: str,
        destination: str,
    ) -> CloseResult:
        """Return the full holding balance to the authority and destroy the vault.

        Outstanding permissions are left in place; spends against them fail
        once the vault is gone.
        """
        authority = normalize_address(authority)

        record = self.vaults.load(conn, vault, holding=holding)
        dest = self.tokens.get_account(conn, destination)

        if record.authority != authority:
            raise UnauthorizedError(f"Signer {authority} is not the vault authority")
        if dest.owner != authority:
            raise ConstraintViolationError(
                f"Destination {dest.address} is not owned by authority {authority}"
            )

        signer = self.vaults.signer_for(record)
        holding_account = self.tokens.get_account(conn, record.holding_account)
        withdrawn = holding_account.balance
        if withdrawn:
            self.tokens.transfer(conn, holding_account.address, dest.address, withdrawn, signer)
        else:
            logger.info("Vault %s holds no tokens; closing accounts", record.address)

        refunded = self.tokens.close_account(conn, holding_account.address, signer, authority)
        refunded += self.vaults.close(conn, record, authority)

        logger.info("Vault closed: %s (withdrew %s to %s)", record.address, withdrawn, dest.address)
        return CloseResult(
            vault=record.address,
            authority=authority,
            withdrawn=withdrawn,
            refunded_deposit=refunded,
        )

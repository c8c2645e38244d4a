"""
The Leash program: the operation surface over the local ledger.

Flow for every operation:
1. Authenticate the signer (signed instructions only)
2. Open one ledger transaction and record the instruction hash
3. Re-verify accounts and run the component's business checks
4. Commit (or roll back on any error, or always in dry-run mode)
5. Write the outcome to the audit trail
"""

from __future__ import annotations

import logging
import sqlite3
import time
from typing import Any, Callable, Optional

from .audit import AuditTrail, EventType
from .config import DEFAULT_CHAIN_ID, LEASH_PROGRAM_ID, TOKEN_PROGRAM_ID, LeashConfig
from .derive import normalize_address
from .errors import DuplicateInstructionError, LeashError
from .instruction import (
    Instruction,
    SignedInstruction,
    build_authorize,
    build_initialize,
    build_revoke,
    build_spend,
    build_withdraw_and_close,
    verify_instruction,
)
from .ledger import Ledger
from .lifecycle import CloseResult, LifecycleManager
from .permission import Permission, PermissionRegistry
from .spend import SpendAuthorizer, SpendResult
from .token import TokenProgram
from .vault import Vault, VaultLedger

logger = logging.getLogger(__name__)


_SUCCESS_EVENTS = {
    "initialize": EventType.VAULT_INITIALIZED,
    "authorize": EventType.PERMISSION_AUTHORIZED,
    "revoke": EventType.PERMISSION_REVOKED,
    "spend": EventType.SPEND_COMPLETED,
    "withdraw_and_close": EventType.VAULT_CLOSED,
}


class LeashProgram:
    """Vault, permission and spend operations over one ledger."""

    def __init__(
        self,
        ledger: Ledger,
        audit: Optional[AuditTrail] = None,
        program_id: str = LEASH_PROGRAM_ID,
        chain_id: int = DEFAULT_CHAIN_ID,
        token_program_id: str = TOKEN_PROGRAM_ID,
        dry_run: bool = False,
    ):
        self.ledger = ledger
        self.audit = audit
        self.program_id = normalize_address(program_id)
        self.chain_id = chain_id
        self.dry_run = dry_run

        self.tokens = TokenProgram(ledger, token_program_id)
        self.vaults = VaultLedger(ledger, self.tokens, self.program_id)
        self.permissions = PermissionRegistry(ledger, self.vaults, self.program_id)
        self.spender = SpendAuthorizer(self.permissions, self.vaults, self.tokens)
        self.lifecycle = LifecycleManager(self.vaults, self.tokens)

        self._handlers: dict[str, Callable[[sqlite3.Connection, Instruction], Any]] = {
            "initialize": self._initialize,
            "authorize": self._authorize,
            "revoke": self._revoke,
            "spend": self._spend,
            "withdraw_and_close": self._withdraw_and_close,
        }

    @classmethod
    def from_config(
        cls,
        config: LeashConfig,
        audit: Optional[AuditTrail] = None,
        dry_run: bool = False,
    ) -> LeashProgram:
        return cls(
            Ledger(config.db_path),
            audit=audit,
            program_id=config.program_id,
            chain_id=config.chain_id,
            dry_run=dry_run,
        )

    # ── Operation surface ─────────────────────────────────────────

    def initialize(self, authority: str, amount: int) -> Vault:
        return self.execute(build_initialize(authority, amount, self.program_id, self.tokens.program_id))

    def authorize(self, authority: str, agent: str, budget: int) -> Permission:
        return self.execute(build_authorize(authority, agent, budget, self.program_id))

    def revoke(self, authority: str, agent: str) -> Permission:
        return self.execute(build_revoke(authority, agent, self.program_id))

    def spend(
        self,
        agent: str,
        amount: int,
        authority: str,
        destination: Optional[str] = None,
    ) -> SpendResult:
        return self.execute(
            build_spend(authority, agent, amount, destination, self.program_id, self.tokens.program_id)
        )

    def withdraw_and_close(self, authority: str, destination: Optional[str] = None) -> CloseResult:
        return self.execute(
            build_withdraw_and_close(authority, destination, self.program_id, self.tokens.program_id)
        )

    def process(self, signed: SignedInstruction) -> Any:
        """Authenticate and execute a signed instruction exactly once."""
        instruction = signed.instruction
        try:
            verify_instruction(signed, self.program_id, self.chain_id)
        except LeashError as e:
            self._log_failure(instruction, e)
            raise
        return self.execute(
            instruction,
            instruction_hash=instruction.instruction_hash(self.program_id, self.chain_id),
        )

    def simulate(self, instruction: Instruction) -> Any:
        """Run every check and effect, then roll back."""
        return self.execute(instruction, commit=False)

    def execute(
        self,
        instruction: Instruction,
        instruction_hash: Optional[str] = None,
        commit: Optional[bool] = None,
    ) -> Any:
        """Execute an instruction whose ``signer`` is already authenticated."""
        if commit is None:
            commit = not self.dry_run
        handler = self._handlers[instruction.operation]
        try:
            with self.ledger.transaction(commit=commit) as conn:
                if instruction_hash is not None:
                    self._record_instruction(conn, instruction, instruction_hash)
                result = handler(conn, instruction)
        except LeashError as e:
            logger.info("%s rejected: %s", instruction.operation, e)
            self._log_failure(instruction, e, simulated=not commit)
            raise

        if commit:
            logger.info("%s committed for %s", instruction.operation, instruction.signer)
        else:
            logger.info("%s simulated for %s (rolled back)", instruction.operation, instruction.signer)
        self._log_success(instruction, result, simulated=not commit)
        return result

    # ── Handlers ──────────────────────────────────────────────────

    def _initialize(self, conn: sqlite3.Connection, ix: Instruction) -> Vault:
        return self.vaults.initialize(
            conn,
            ix.signer,
            ix.amount,
            vault=ix.account("vault"),
            holding=ix.account("holding"),
            source=ix.account("source"),
        )

    def _authorize(self, conn: sqlite3.Connection, ix: Instruction) -> Permission:
        return self.permissions.authorize(
            conn,
            ix.signer,
            ix.agent,
            ix.amount,
            vault=ix.account("vault"),
            permission=ix.account("permission"),
        )

    def _revoke(self, conn: sqlite3.Connection, ix: Instruction) -> Permission:
        return self.permissions.revoke(conn, ix.signer, ix.agent, permission=ix.account("permission"))

    def _spend(self, conn: sqlite3.Connection, ix: Instruction) -> SpendResult:
        return self.spender.spend(
            conn,
            ix.signer,
            ix.amount,
            permission=ix.account("permission"),
            vault=ix.account("vault"),
            holding=ix.account("holding"),
            destination=ix.account("destination"),
        )

    def _withdraw_and_close(self, conn: sqlite3.Connection, ix: Instruction) -> CloseResult:
        return self.lifecycle.withdraw_and_close(
            conn,
            ix.signer,
            vault=ix.account("vault"),
            holding=ix.account("holding"),
            destination=ix.account("destination"),
        )

    def _record_instruction(self, conn: sqlite3.Connection, ix: Instruction, instruction_hash: str) -> None:
        row = conn.execute(
            "SELECT 1 FROM processed_instructions WHERE instruction_hash = ?",
            (instruction_hash,),
        ).fetchone()
        if row is not None:
            raise DuplicateInstructionError(f"Instruction already processed: {instruction_hash}")
        conn.execute(
            """
            INSERT INTO processed_instructions (instruction_hash, operation, signer, processed_at)
            VALUES (?, ?, ?, ?)
            """,
            (instruction_hash, ix.operation, ix.signer, int(time.time())),
        )

    # ── Audit ─────────────────────────────────────────────────────

    def _log_success(self, ix: Instruction, result: Any, simulated: bool = False) -> None:
        details = result.to_dict() if hasattr(result, "to_dict") else None
        self._audit(
            _SUCCESS_EVENTS[ix.operation],
            ix,
            amount=ix.amount if ix.operation != "withdraw_and_close" else result.withdrawn,
            success=True,
            dry_run=simulated,
            details=_jsonable(details),
        )

    def _log_failure(self, ix: Instruction, error: LeashError, simulated: bool = False) -> None:
        event = EventType.SPEND_DENIED if ix.operation == "spend" else EventType.OPERATION_FAILED
        self._audit(
            event,
            ix,
            amount=ix.amount,
            success=False,
            dry_run=simulated,
            reason=f"{error.code}: {error}",
        )

    def _audit(self, event: EventType, ix: Instruction, **fields: Any) -> None:
        """Append one outcome to the audit trail.

        Runs after the ledger transaction has finished; write failures are
        logged, never raised.
        """
        if self.audit is None:
            return
        try:
            self.audit.log(
                event,
                operation=ix.operation,
                instruction=ix.instruction_hash(self.program_id, self.chain_id),
                authority=ix.signer if ix.operation != "spend" else None,
                agent=ix.agent,
                account=ix.accounts.get("permission") or ix.accounts.get("vault"),
                **fields,
            )
        except OSError:
            logger.exception("Audit entry for %s could not be written", ix.operation)

    # ── Reads ─────────────────────────────────────────────────────

    def get_vault(self, authority: str) -> Optional[Vault]:
        with self.ledger.read() as conn:
            return self.vaults.find(conn, self.vaults.vault_address(authority))

    def get_permission(self, authority: str, agent: str) -> Optional[Permission]:
        with self.ledger.read() as conn:
            return self.permissions.find(conn, self.permissions.permission_address(authority, agent))

    def list_permissions(self, authority: str) -> list[Permission]:
        with self.ledger.read() as conn:
            return self.permissions.list_for_authority(conn, authority)

    def holding_balance(self, authority: str) -> int:
        vault_address = self.vaults.vault_address(authority)
        return self.tokens.balance(self.vaults.holding_address(vault_address))

    def token_balance(self, owner: str) -> int:
        return self.tokens.balance(self.tokens.associated_address(owner))

    def permission_summary(self, authority: str, agent: str) -> dict:
        """Get a human-readable budget summary for one permission."""
        permission = self.get_permission(authority, agent)
        if permission is None:
            return {"exists": False, "authority": normalize_address(authority), "agent": normalize_address(agent)}
        utilization = (
            f"{(permission.spent / permission.budget * 100):.1f}%"
            if permission.budget > 0
            else "N/A"
        )
        return {
            "exists": True,
            "address": permission.address,
            "authority": permission.authority,
            "agent": permission.agent,
            "budget": permission.budget,
            "spent": permission.spent,
            "remaining": permission.remaining,
            "utilization": utilization,
            "locked_out": permission.locked_out,
        }


def _jsonable(details: Optional[dict]) -> Optional[dict]:
    # u64 values are stringified so the audit chain round-trips exactly
    if details is None:
        return None
    return {k: str(v) if isinstance(v, int) and not isinstance(v, bool) else v for k, v in details.items()}

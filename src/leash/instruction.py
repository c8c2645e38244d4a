"""
Signed instructions.

An Instruction names one operation, its signer, its account arguments and
its scalar inputs. Clients build the account list through the same address
derivation the program re-checks, sign it as EIP-712 typed data, and submit
the SignedInstruction. The program recovers the signer from the signature,
so the signer field can never be claimed without the matching key.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import keccak, to_checksum_address

from .config import DEFAULT_CHAIN_ID, LEASH_PROGRAM_ID, TOKEN_PROGRAM_ID
from .derive import (
    find_derived_address,
    normalize_address,
    permission_seeds,
    token_account_seeds,
    vault_seeds,
)
from .errors import SignerMismatchError


ZERO_ADDRESS = "0x" + "0" * 40
DOMAIN_NAME = "Leash"
DOMAIN_VERSION = "1"

ACCOUNT_ROLES = {
    "initialize": ("vault", "holding", "source"),
    "authorize": ("vault", "permission"),
    "revoke": ("permission",),
    "spend": ("permission", "vault", "holding", "destination"),
    "withdraw_and_close": ("vault", "holding", "destination"),
}

INSTRUCTION_TYPES = {
    "Instruction": [
        {"name": "operation", "type": "string"},
        {"name": "signer", "type": "address"},
        {"name": "agent", "type": "address"},
        {"name": "amount", "type": "uint256"},
        {"name": "accountsHash", "type": "bytes32"},
        {"name": "nonce", "type": "uint256"},
    ],
}


@dataclass
class Instruction:
    """One operation request with its account arguments."""

    operation: str
    signer: str
    accounts: dict[str, str]
    amount: int = 0
    agent: Optional[str] = None
    nonce: int = field(default_factory=time.time_ns)

    def __post_init__(self) -> None:
        if self.operation not in ACCOUNT_ROLES:
            raise ValueError(f"Unknown operation: {self.operation}")
        self.signer = normalize_address(self.signer)
        if self.agent is not None:
            self.agent = normalize_address(self.agent)
        if self.operation in {"authorize", "revoke"} and self.agent is None:
            raise ValueError(f"{self.operation} requires an agent")
        missing = [role for role in ACCOUNT_ROLES[self.operation] if role not in self.accounts]
        if missing:
            raise ValueError(f"{self.operation} is missing accounts: {', '.join(missing)}")
        self.accounts = {role: normalize_address(addr) for role, addr in self.accounts.items()}

    def account(self, role: str) -> str:
        return self.accounts[role]

    def accounts_hash(self) -> str:
        canonical = json.dumps(self.accounts, sort_keys=True, separators=(",", ":"))
        return "0x" + keccak(canonical.encode("utf-8")).hex()

    def to_eip712_message(
        self,
        program_id: str = LEASH_PROGRAM_ID,
        chain_id: int = DEFAULT_CHAIN_ID,
    ) -> dict:
        """Convert the instruction to EIP-712 typed data for signing."""
        return {
            "types": INSTRUCTION_TYPES,
            "primaryType": "Instruction",
            "domain": {
                "name": DOMAIN_NAME,
                "version": DOMAIN_VERSION,
                "chainId": chain_id,
                "verifyingContract": to_checksum_address(program_id),
            },
            "message": {
                "operation": self.operation,
                "signer": to_checksum_address(self.signer),
                "agent": to_checksum_address(self.agent or ZERO_ADDRESS),
                "amount": self.amount,
                "accountsHash": self.accounts_hash(),
                "nonce": self.nonce,
            },
        }

    def instruction_hash(
        self,
        program_id: str = LEASH_PROGRAM_ID,
        chain_id: int = DEFAULT_CHAIN_ID,
    ) -> str:
        typed = self.to_eip712_message(program_id, chain_id)
        canonical = json.dumps(
            {"domain": typed["domain"], "message": typed["message"]},
            sort_keys=True,
            separators=(",", ":"),
        )
        return "0x" + keccak(canonical.encode("utf-8")).hex()

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "signer": self.signer,
            "accounts": dict(self.accounts),
            "amount": str(self.amount),
            "agent": self.agent,
            "nonce": self.nonce,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Instruction:
        return cls(
            operation=str(payload["operation"]),
            signer=str(payload["signer"]),
            accounts=dict(payload["accounts"]),
            amount=int(payload.get("amount", 0)),
            agent=payload.get("agent"),
            nonce=int(payload["nonce"]),
        )


@dataclass
class SignedInstruction:
    instruction: Instruction
    signature: str

    def to_dict(self) -> dict[str, Any]:
        return {"instruction": self.instruction.to_dict(), "signature": self.signature}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> SignedInstruction:
        return cls(
            instruction=Instruction.from_dict(payload["instruction"]),
            signature=str(payload["signature"]),
        )


def sign_instruction(
    private_key: str,
    instruction: Instruction,
    program_id: str = LEASH_PROGRAM_ID,
    chain_id: int = DEFAULT_CHAIN_ID,
) -> SignedInstruction:
    """Sign an instruction with the signer's private key."""
    account = Account.from_key(private_key)
    if normalize_address(account.address) != instruction.signer:
        raise SignerMismatchError(
            f"Key for {account.address} cannot sign for {instruction.signer}"
        )
    typed_data = instruction.to_eip712_message(program_id, chain_id)
    signed = Account.sign_typed_data(
        account.key,
        typed_data["domain"],
        typed_data["types"],
        typed_data["message"],
    )
    return SignedInstruction(instruction=instruction, signature="0x" + bytes(signed.signature).hex())


def recover_signer(
    signed: SignedInstruction,
    program_id: str = LEASH_PROGRAM_ID,
    chain_id: int = DEFAULT_CHAIN_ID,
) -> str:
    """Recover the address that produced ``signed.signature``."""
    typed_data = signed.instruction.to_eip712_message(program_id, chain_id)
    signable = encode_typed_data(
        typed_data["domain"],
        typed_data["types"],
        typed_data["message"],
    )
    signature = signed.signature[2:] if signed.signature.startswith("0x") else signed.signature
    return normalize_address(Account.recover_message(signable, signature=bytes.fromhex(signature)))


def verify_instruction(
    signed: SignedInstruction,
    program_id: str = LEASH_PROGRAM_ID,
    chain_id: int = DEFAULT_CHAIN_ID,
) -> str:
    """Return the authenticated signer or raise SignerMismatchError."""
    try:
        recovered = recover_signer(signed, program_id, chain_id)
    except Exception as e:
        raise SignerMismatchError(f"Signature verification failed: {e}") from e
    if recovered != signed.instruction.signer:
        raise SignerMismatchError(
            f"Signature recovers to {recovered}, instruction names {signed.instruction.signer}"
        )
    return recovered


# ── Client-side builders ──────────────────────────────────────────


def _derive(seeds, program_id: str) -> str:
    return find_derived_address(seeds, program_id).address


def build_initialize(
    authority: str,
    amount: int,
    program_id: str = LEASH_PROGRAM_ID,
    token_program_id: str = TOKEN_PROGRAM_ID,
) -> Instruction:
    vault = _derive(vault_seeds(authority), program_id)
    return Instruction(
        operation="initialize",
        signer=authority,
        amount=amount,
        accounts={
            "vault": vault,
            "holding": _derive(token_account_seeds(vault), token_program_id),
            "source": _derive(token_account_seeds(authority), token_program_id),
        },
    )


def build_authorize(
    authority: str,
    agent: str,
    budget: int,
    program_id: str = LEASH_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        operation="authorize",
        signer=authority,
        agent=agent,
        amount=budget,
        accounts={
            "vault": _derive(vault_seeds(authority), program_id),
            "permission": _derive(permission_seeds(authority, agent), program_id),
        },
    )


def build_revoke(authority: str, agent: str, program_id: str = LEASH_PROGRAM_ID) -> Instruction:
    return Instruction(
        operation="revoke",
        signer=authority,
        agent=agent,
        accounts={"permission": _derive(permission_seeds(authority, agent), program_id)},
    )


def build_spend(
    authority: str,
    agent: str,
    amount: int,
    destination: Optional[str] = None,
    program_id: str = LEASH_PROGRAM_ID,
    token_program_id: str = TOKEN_PROGRAM_ID,
) -> Instruction:
    """Spend instruction paying ``destination`` (default: the agent's token account)."""
    vault = _derive(vault_seeds(authority), program_id)
    return Instruction(
        operation="spend",
        signer=agent,
        agent=agent,
        amount=amount,
        accounts={
            "permission": _derive(permission_seeds(authority, agent), program_id),
            "vault": vault,
            "holding": _derive(token_account_seeds(vault), token_program_id),
            "destination": destination or _derive(token_account_seeds(agent), token_program_id),
        },
    )


def build_withdraw_and_close(
    authority: str,
    destination: Optional[str] = None,
    program_id: str = LEASH_PROGRAM_ID,
    token_program_id: str = TOKEN_PROGRAM_ID,
) -> Instruction:
    vault = _derive(vault_seeds(authority), program_id)
    return Instruction(
        operation="withdraw_and_close",
        signer=authority,
        accounts={
            "vault": vault,
            "holding": _derive(token_account_seeds(vault), token_program_id),
            "destination": destination or _derive(token_account_seeds(authority), token_program_id),
        },
    )

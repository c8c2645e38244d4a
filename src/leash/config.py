"""Environment-driven configuration for the local Leash ledger."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from eth_utils import keccak

from .money import DEFAULT_DECIMALS, U64_MAX


def _program_address(label: bytes) -> str:
    return "0x" + keccak(label)[12:].hex()


LEASH_PROGRAM_ID = _program_address(b"leash.program.v1")
TOKEN_PROGRAM_ID = _program_address(b"leash.token-program.v1")
DEFAULT_CHAIN_ID = 31337
MAX_TOKEN_DECIMALS = 18


def _env_int(env: Mapping[str, str], name: str, default: int, low: int, high: int) -> int:
    raw = env.get(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if not low <= value <= high:
        raise ValueError(f"{name} must be in {low}..{high}, got {value}")
    return value


def _env_program_id(env: Mapping[str, str]) -> str:
    raw = env.get("LEASH_PROGRAM_ID")
    if not raw:
        return LEASH_PROGRAM_ID
    # Also the EIP-712 verifyingContract
    if not re.fullmatch(r"0[xX][0-9a-fA-F]{40}", raw.strip()):
        raise ValueError(f"LEASH_PROGRAM_ID must be a 20-byte hex address, got {raw!r}")
    return raw.strip().lower()


@dataclass
class LeashConfig:
    """Resolved settings for one ledger home directory."""

    home: Path
    db_path: Path
    audit_path: Path
    audit_key_path: Path
    program_id: str = LEASH_PROGRAM_ID
    chain_id: int = DEFAULT_CHAIN_ID
    decimals: int = DEFAULT_DECIMALS

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> LeashConfig:
        env = os.environ if env is None else env
        home = Path(env["LEASH_HOME"]) if env.get("LEASH_HOME") else Path.home() / ".leash"
        db_path = Path(env["LEASH_DB_PATH"]) if env.get("LEASH_DB_PATH") else home / "ledger.sqlite3"
        return cls(
            home=home,
            db_path=db_path,
            audit_path=home / "audit.jsonl",
            audit_key_path=home.parent / ".leash-secrets" / "audit_hmac.key",
            program_id=_env_program_id(env),
            chain_id=_env_int(env, "LEASH_CHAIN_ID", DEFAULT_CHAIN_ID, 1, U64_MAX),
            decimals=_env_int(env, "LEASH_TOKEN_DECIMALS", DEFAULT_DECIMALS, 0, MAX_TOKEN_DECIMALS),
        )

"""
Deterministic derived addressing.

A derived address is a pure function of a seed tuple and the id of the
program that owns it. Candidates are keccak256 digests; one whose 32 bytes
form a valid secp256k1 x-coordinate is rejected, so no private key can ever
sign for a derived address. The canonical nonce is the first value, counting
down from 255, that yields an off-curve candidate.

Every record access re-derives the expected address from the record's
logical seeds and stored nonce and compares it with the account the caller
supplied.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Sequence, Union

from eth_utils import keccak

from .errors import AddressMismatchError


MAX_SEEDS = 16
MAX_SEED_LEN = 32
DERIVED_ADDRESS_MARKER = b"LeashDerivedAddress"

# secp256k1 field prime
_P = 2**256 - 2**32 - 977

_ADDRESS_RE = re.compile(r"^0x(?:[a-fA-F0-9]{40}|[a-fA-F0-9]{64})$")

Seed = Union[bytes, str]


@dataclass(frozen=True)
class DerivedAddress:
    address: str
    nonce: int


def normalize_address(address: str) -> str:
    """Normalize 20-byte identities and 32-byte derived addresses to lower-case hex."""
    candidate = address.strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid address: {address}")
    return "0x" + candidate[2:].lower()


def encode_seed(seed: Seed) -> bytes:
    """Hex addresses encode to their raw bytes, other strings to UTF-8."""
    if isinstance(seed, bytes):
        raw = seed
    elif _ADDRESS_RE.match(seed.strip()):
        raw = bytes.fromhex(seed.strip()[2:])
    else:
        raw = seed.encode("utf-8")
    if len(raw) > MAX_SEED_LEN:
        raise ValueError(f"Seed exceeds {MAX_SEED_LEN} bytes: {seed!r}")
    return raw


def is_on_curve(digest: bytes) -> bool:
    """True when ``digest`` is the x-coordinate of a secp256k1 point."""
    x = int.from_bytes(digest, "big")
    if x >= _P:
        return False
    rhs = (pow(x, 3, _P) + 7) % _P
    return rhs == 0 or pow(rhs, (_P - 1) // 2, _P) == 1


def create_derived_address(seeds: Sequence[Seed], nonce: int, program_id: str) -> str:
    """Compute the candidate address for one nonce.

    Raises ValueError if the candidate lies on the curve.
    """
    if len(seeds) > MAX_SEEDS:
        raise ValueError(f"At most {MAX_SEEDS} seeds are allowed")
    if not 0 <= nonce <= 255:
        raise ValueError(f"Nonce out of range: {nonce}")

    preimage = bytearray()
    for seed in seeds:
        raw = encode_seed(seed)
        preimage.append(len(raw))
        preimage.extend(raw)
    preimage.append(nonce)
    preimage.extend(encode_seed(normalize_address(program_id)))
    preimage.extend(DERIVED_ADDRESS_MARKER)

    digest = keccak(bytes(preimage))
    if is_on_curve(digest):
        raise ValueError("Derived address lies on the secp256k1 curve")
    return "0x" + digest.hex()


def find_derived_address(seeds: Sequence[Seed], program_id: str) -> DerivedAddress:
    """Return the canonical derived address and its nonce."""
    for nonce in range(255, -1, -1):
        try:
            address = create_derived_address(seeds, nonce, program_id)
        except ValueError:
            continue
        return DerivedAddress(address=address, nonce=nonce)
    raise RuntimeError("Unable to find an off-curve derived address")


def verify_derived_address(
    role: str,
    address: str,
    seeds: Sequence[Seed],
    nonce: int,
    program_id: str,
) -> None:
    """Raise AddressMismatchError unless ``address`` re-derives from ``seeds``."""
    supplied = normalize_address(address)
    try:
        expected = create_derived_address(seeds, nonce, program_id)
    except ValueError:
        raise AddressMismatchError(role, "<invalid seeds>", supplied)
    if expected != supplied:
        raise AddressMismatchError(role, expected, supplied)


def vault_seeds(authority: str) -> list[Seed]:
    return [b"vault", normalize_address(authority)]


def permission_seeds(authority: str, agent: str) -> list[Seed]:
    return [b"permission", normalize_address(authority), normalize_address(agent)]


def token_account_seeds(owner: str) -> list[Seed]:
    return [b"token-account", normalize_address(owner)]

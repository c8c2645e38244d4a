"""Shared fixtures: an isolated ledger per test plus funded wallets."""

import pytest
from eth_account import Account

from leash.audit import AuditTrail
from leash.ledger import Ledger
from leash.program import LeashProgram


FUNDING_LAMPORTS = 1_000_000_000


@pytest.fixture
def audit(tmp_path):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


@pytest.fixture
def program(tmp_path, audit):
    return LeashProgram(Ledger(tmp_path / "ledger.sqlite3"), audit=audit)


@pytest.fixture
def make_wallet(program):
    """Create a wallet with native balance, a token account and optional tokens."""

    def _make(tokens: int = 0):
        acct = Account.create()
        program.ledger.airdrop(acct.address, FUNDING_LAMPORTS)
        program.tokens.open_account(acct.address, payer=acct.address)
        if tokens:
            program.tokens.mint(acct.address, tokens)
        return acct

    return _make


@pytest.fixture
def authority(make_wallet):
    return make_wallet(tokens=1000)


@pytest.fixture
def agent(make_wallet):
    return make_wallet()

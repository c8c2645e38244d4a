"""Tests for the token-transfer primitive and controller proofs."""

import pytest
from eth_account import Account

from leash.derive import find_derived_address
from leash.errors import (
    AccountNotFoundError,
    AlreadyInitializedError,
    ArithmeticOverflowError,
    ConstraintViolationError,
    InsufficientFundsError,
)
from leash.ledger import TOKEN_ACCOUNT_SPACE, storage_deposit
from leash.money import U64_MAX
from leash.token import DerivedAuthority, SignerAuthority


PROGRAM = "0x" + "42" * 20


class TestTokenAccounts:
    def test_open_account_charges_storage_deposit(self, program):
        acct = Account.create()
        program.ledger.airdrop(acct.address, 10_000_000)
        account = program.tokens.open_account(acct.address, payer=acct.address)
        assert account.balance == 0
        assert account.owner == acct.address.lower()
        assert program.ledger.lamports(acct.address) == 10_000_000 - storage_deposit(TOKEN_ACCOUNT_SPACE)

    def test_open_account_twice_fails(self, program, agent):
        with pytest.raises(AlreadyInitializedError):
            program.tokens.open_account(agent.address, payer=agent.address)

    def test_open_account_without_lamports_fails(self, program):
        acct = Account.create()
        with pytest.raises(InsufficientFundsError):
            program.tokens.open_account(acct.address, payer=acct.address)
        with program.ledger.read() as conn:
            assert program.tokens.find_account(conn, program.tokens.associated_address(acct.address)) is None

    def test_mint_overflow_rejected(self, program, agent):
        program.tokens.mint(agent.address, U64_MAX)
        with pytest.raises(ArithmeticOverflowError):
            program.tokens.mint(agent.address, 1)
        assert program.token_balance(agent.address) == U64_MAX

    def test_balance_of_missing_account(self, program):
        with pytest.raises(AccountNotFoundError):
            program.tokens.balance("0x" + "11" * 32)


class TestTransfer:
    def test_signer_transfer(self, program, authority, agent):
        src = program.tokens.associated_address(authority.address)
        dst = program.tokens.associated_address(agent.address)
        with program.ledger.transaction() as conn:
            program.tokens.transfer(conn, src, dst, 400, SignerAuthority(authority.address))
        assert program.tokens.balance(src) == 600
        assert program.tokens.balance(dst) == 400

    def test_transfer_requires_owner(self, program, authority, agent):
        src = program.tokens.associated_address(authority.address)
        dst = program.tokens.associated_address(agent.address)
        with pytest.raises(ConstraintViolationError, match="does not own"):
            with program.ledger.transaction() as conn:
                program.tokens.transfer(conn, src, dst, 1, SignerAuthority(agent.address))
        assert program.tokens.balance(src) == 1000

    def test_transfer_insufficient_funds(self, program, authority, agent):
        src = program.tokens.associated_address(authority.address)
        dst = program.tokens.associated_address(agent.address)
        with pytest.raises(InsufficientFundsError):
            with program.ledger.transaction() as conn:
                program.tokens.transfer(conn, src, dst, 1001, SignerAuthority(authority.address))

    def test_transfer_to_same_account_rejected(self, program, authority):
        src = program.tokens.associated_address(authority.address)
        with pytest.raises(ConstraintViolationError, match="same account"):
            with program.ledger.transaction() as conn:
                program.tokens.transfer(conn, src, src, 10, SignerAuthority(authority.address))
        assert program.tokens.balance(src) == 1000

    def test_derived_authority_controls_derived_owner(self, program, authority, agent):
        seeds = (b"escrow", authority.address.lower())
        owner = find_derived_address(seeds, PROGRAM)
        with program.ledger.transaction() as conn:
            escrow = program.tokens.create_account(conn, authority.address, owner.address)
            program.tokens.mint_to(conn, escrow.address, 50)

        dst = program.tokens.associated_address(agent.address)
        with program.ledger.transaction() as conn:
            program.tokens.transfer(conn, escrow.address, dst, 20, DerivedAuthority(seeds, owner.nonce, PROGRAM))
        assert program.tokens.balance(dst) == 20

        forged = DerivedAuthority(seeds, owner.nonce, "0x" + "43" * 20)
        with pytest.raises(ConstraintViolationError):
            with program.ledger.transaction() as conn:
                program.tokens.transfer(conn, escrow.address, dst, 20, forged)
        assert program.tokens.balance(escrow.address) == 30


class TestCloseAccount:
    def test_close_refunds_deposit(self, program, agent):
        before = program.ledger.lamports(agent.address)
        address = program.tokens.associated_address(agent.address)
        with program.ledger.transaction() as conn:
            refunded = program.tokens.close_account(conn, address, SignerAuthority(agent.address), agent.address)
        assert refunded == storage_deposit(TOKEN_ACCOUNT_SPACE)
        assert program.ledger.lamports(agent.address) == before + refunded

    def test_close_non_empty_rejected(self, program, authority):
        address = program.tokens.associated_address(authority.address)
        with pytest.raises(ConstraintViolationError, match="non-zero"):
            with program.ledger.transaction() as conn:
                program.tokens.close_account(conn, address, SignerAuthority(authority.address), authority.address)

"""Tests for permission authorize/revoke."""

import logging

import pytest

from leash.errors import (
    AccountNotFoundError,
    ArithmeticOverflowError,
    BudgetExceededError,
    ConstraintViolationError,
    InvalidAmountError,
    UnauthorizedError,
)
from leash.instruction import Instruction, build_authorize, build_revoke
from leash.money import U64_MAX


@pytest.fixture
def vault(program, authority):
    return program.initialize(authority.address, 1000)


class TestAuthorize:
    def test_creates_permission_with_zero_spent(self, program, authority, agent, vault):
        permission = program.authorize(authority.address, agent.address, 200)
        assert permission.budget == 200
        assert permission.spent == 0
        assert permission.authority == authority.address.lower()
        assert permission.agent == agent.address.lower()
        assert program.get_permission(authority.address, agent.address) == permission

    def test_idempotent_upsert(self, program, authority, agent, vault):
        program.authorize(authority.address, agent.address, 200)
        program.spend(agent.address, 50, authority=authority.address)
        lamports = program.ledger.lamports(authority.address)

        again = program.authorize(authority.address, agent.address, 200)
        twice = program.authorize(authority.address, agent.address, 200)

        assert again.spent == twice.spent == 50
        assert twice.budget == 200
        assert program.ledger.lamports(authority.address) == lamports

    def test_update_preserves_spent(self, program, authority, agent, vault):
        program.authorize(authority.address, agent.address, 100)
        program.spend(agent.address, 80, authority=authority.address)

        updated = program.authorize(authority.address, agent.address, 300)

        assert updated.budget == 300
        assert updated.spent == 80
        assert updated.remaining == 220

    def test_requires_vault(self, program, authority, agent):
        with pytest.raises(AccountNotFoundError):
            program.authorize(authority.address, agent.address, 100)
        assert program.get_permission(authority.address, agent.address) is None

    def test_lowering_budget_below_spent_locks_agent_out(self, program, authority, agent, vault, caplog):
        program.authorize(authority.address, agent.address, 200)
        program.spend(agent.address, 150, authority=authority.address)

        with caplog.at_level(logging.WARNING, logger="leash.permission"):
            locked = program.authorize(authority.address, agent.address, 100)

        assert locked.locked_out
        assert "cannot spend" in caplog.text
        with pytest.raises(BudgetExceededError):
            program.spend(agent.address, 1, authority=authority.address)
        assert program.get_permission(authority.address, agent.address).spent == 150

    def test_cannot_authorize_against_foreign_vault(self, program, authority, agent, vault, make_wallet):
        attacker = make_wallet()
        own = build_authorize(attacker.address, agent.address, 500)
        victim_vault = build_authorize(authority.address, agent.address, 500).account("vault")
        ix = Instruction(
            operation="authorize",
            signer=attacker.address,
            agent=agent.address,
            amount=500,
            accounts=dict(own.accounts, vault=victim_vault),
        )
        with pytest.raises(UnauthorizedError):
            program.execute(ix)
        assert program.get_permission(attacker.address, agent.address) is None

    def test_budget_range(self, program, authority, agent, vault):
        with pytest.raises(InvalidAmountError):
            program.authorize(authority.address, agent.address, -1)
        with pytest.raises(ArithmeticOverflowError):
            program.authorize(authority.address, agent.address, U64_MAX + 1)
        assert program.authorize(authority.address, agent.address, U64_MAX).budget == U64_MAX

    def test_list_permissions(self, program, authority, vault, make_wallet):
        agents = [make_wallet(), make_wallet()]
        for a in agents:
            program.authorize(authority.address, a.address, 10)
        listed = program.list_permissions(authority.address)
        assert {p.agent for p in listed} == {a.address.lower() for a in agents}


class TestRevoke:
    def test_revoke_destroys_and_refunds(self, program, authority, agent, vault):
        lamports = program.ledger.lamports(authority.address)
        program.authorize(authority.address, agent.address, 200)
        assert program.ledger.lamports(authority.address) < lamports

        program.revoke(authority.address, agent.address)

        assert program.get_permission(authority.address, agent.address) is None
        assert program.ledger.lamports(authority.address) == lamports

    def test_revoke_missing_permission(self, program, authority, agent, vault):
        with pytest.raises(AccountNotFoundError):
            program.revoke(authority.address, agent.address)

    def test_revoke_by_other_signer_rejected(self, program, authority, agent, vault, make_wallet):
        program.authorize(authority.address, agent.address, 200)
        attacker = make_wallet()
        ix = Instruction(
            operation="revoke",
            signer=attacker.address,
            agent=agent.address,
            accounts=build_revoke(authority.address, agent.address).accounts,
        )
        with pytest.raises(ConstraintViolationError, match="authority"):
            program.execute(ix)
        assert program.get_permission(authority.address, agent.address) is not None

    def test_revoke_with_wrong_agent_rejected(self, program, authority, agent, vault, make_wallet):
        program.authorize(authority.address, agent.address, 200)
        other = make_wallet()
        ix = Instruction(
            operation="revoke",
            signer=authority.address,
            agent=other.address,
            accounts=build_revoke(authority.address, agent.address).accounts,
        )
        with pytest.raises(ConstraintViolationError, match="agent"):
            program.execute(ix)

    def test_reauthorize_after_revoke_resets_spent(self, program, authority, agent, vault):
        program.authorize(authority.address, agent.address, 200)
        program.spend(agent.address, 200, authority=authority.address)
        program.revoke(authority.address, agent.address)

        fresh = program.authorize(authority.address, agent.address, 200)
        assert fresh.spent == 0


class TestReads:
    def test_permission_summary(self, program, authority, agent, vault):
        assert program.permission_summary(authority.address, agent.address)["exists"] is False

        program.authorize(authority.address, agent.address, 200)
        program.spend(agent.address, 50, authority=authority.address)
        summary = program.permission_summary(authority.address, agent.address)

        assert summary["remaining"] == 150
        assert summary["utilization"] == "25.0%"
        assert summary["locked_out"] is False

    def test_simulate_rolls_back(self, program, authority, agent, vault):
        permission = program.simulate(build_authorize(authority.address, agent.address, 200))
        assert permission.budget == 200
        assert program.get_permission(authority.address, agent.address) is None

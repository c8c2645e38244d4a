"""Tests for tamper-evident audit trail behavior."""

import json
import logging
from concurrent.futures import ThreadPoolExecutor

import pytest

from leash.audit import AuditTrail, EventType
from leash.errors import AuditIntegrityError, BudgetExceededError
from leash.instruction import build_spend
from leash.money import U64_MAX


def _trail(tmp_path):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


def test_audit_hash_chain_detects_tampering(tmp_path):
    trail = _trail(tmp_path)
    trail.log(EventType.PERMISSION_AUTHORIZED, "authorize", account="0xabc", amount=200)
    trail.log(EventType.SPEND_COMPLETED, "spend", account="0xabc", amount=150)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    first = json.loads(lines[0])
    first["amount"] = "9999"
    lines[0] = json.dumps(first, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(AuditIntegrityError, match="line 1: event hash mismatch"):
        trail.read_events()


def test_audit_detects_deleted_entry(tmp_path):
    trail = _trail(tmp_path)
    for amount in (1, 2, 3):
        trail.log(EventType.SPEND_COMPLETED, "spend", amount=amount)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    (tmp_path / "audit.jsonl").write_text("\n".join([lines[0], lines[2]]) + "\n")

    with pytest.raises(AuditIntegrityError, match="previous hash mismatch"):
        trail.verify()


def test_independent_writers_extend_one_chain(tmp_path):
    first = _trail(tmp_path)
    second = _trail(tmp_path)

    first.log(EventType.VAULT_INITIALIZED, "initialize", amount=U64_MAX)
    second.log(EventType.PERMISSION_AUTHORIZED, "authorize", amount=10)
    first.log(EventType.VAULT_CLOSED, "withdraw_and_close", amount=0)

    events = second.read_events()
    assert [e.operation for e in events] == ["initialize", "authorize", "withdraw_and_close"]
    assert events[0].amount == U64_MAX
    assert events[1].prev_hash == events[0].event_hash
    assert events[2].prev_hash == events[1].event_hash


def test_concurrent_writers_keep_chain_intact(tmp_path):
    trails = [_trail(tmp_path) for _ in range(4)]

    def write(i):
        trails[i % 4].log(EventType.SPEND_COMPLETED, "spend", amount=i)

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(write, range(40)))

    assert _trail(tmp_path).verify() == 40


def test_program_records_outcomes(program, audit, authority, agent):
    program.initialize(authority.address, 1000)
    permission = program.authorize(authority.address, agent.address, 200)
    program.spend(agent.address, 150, authority=authority.address)
    with pytest.raises(BudgetExceededError):
        program.spend(agent.address, 100, authority=authority.address)

    events = audit.read_events(account=permission.address)
    assert [e.event_type for e in events] == [
        "permission_authorized",
        "spend_completed",
        "spend_denied",
    ]
    denied = events[-1]
    assert not denied.success
    assert denied.reason.startswith("BudgetExceeded")
    assert denied.agent == agent.address.lower()

    summary = audit.summary()
    assert summary["total_events"] == 4
    assert summary["failures"] == 1
    assert summary["spent"] == 150
    assert summary["by_operation"]["spend"] == 2


def test_events_are_keyed_by_instruction_hash(program, audit, authority, agent):
    program.initialize(authority.address, 1000)
    program.authorize(authority.address, agent.address, 200)
    ix = build_spend(authority.address, agent.address, 40)

    program.execute(ix)

    events = audit.read_events(instruction=ix.instruction_hash(program.program_id, program.chain_id))
    assert len(events) == 1
    assert events[0].event_type == "spend_completed"
    assert events[0].amount == 40


def test_simulated_outcomes_are_marked(program, audit, authority, agent):
    program.initialize(authority.address, 1000)
    program.authorize(authority.address, agent.address, 200)

    program.simulate(build_spend(authority.address, agent.address, 50))

    events = audit.read_events()
    assert events[-1].event_type == "spend_completed"
    assert events[-1].dry_run
    assert audit.summary()["spent"] == 0
    assert program.get_permission(authority.address, agent.address).spent == 0


def test_audit_write_failure_does_not_mask_committed_operation(program, audit, authority, caplog, monkeypatch):
    def disk_full(*args, **kwargs):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(audit, "log", disk_full)
    with caplog.at_level(logging.ERROR, logger="leash.program"):
        vault = program.initialize(authority.address, 300)

    assert program.get_vault(authority.address) == vault
    assert program.holding_balance(authority.address) == 300
    assert "could not be written" in caplog.text

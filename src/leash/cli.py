"""
Leash CLI — vaults and bounded spending permissions for AI agents.

Commands:
    leash keygen           Generate a throwaway wallet
    leash airdrop          Credit native balance for storage deposits
    leash open-account     Open a wallet's token account
    leash mint             Mint tokens into a wallet's token account
    leash init             Create and fund a vault
    leash authorize        Grant or update an agent's budget
    leash revoke           Revoke an agent's permission
    leash spend            Spend from a vault as an agent
    leash withdraw         Withdraw everything and close the vault
    leash show-vault       Show a vault
    leash show-permission  Show a permission's budget
    leash balance          Show a wallet's token balance
    leash audit            View audit trail
    leash demo             Run a full demo flow
"""

from __future__ import annotations

import logging
import subprocess
import sys
import time
from typing import Callable, Optional

import click
from click.core import ParameterSource
from eth_account import Account

from .audit import AuditTrail
from .config import LeashConfig
from .errors import LeashError
from .instruction import (
    Instruction,
    build_authorize,
    build_initialize,
    build_revoke,
    build_spend,
    build_withdraw_and_close,
    sign_instruction,
)
from .money import amount_to_base_units, format_base_units, limit_to_base_units
from .program import LeashProgram


# ── Helpers ───────────────────────────────────────────────────────

def _config() -> LeashConfig:
    try:
        return LeashConfig.from_env()
    except ValueError as e:
        click.echo(f"❌ Invalid configuration: {e}", err=True)
        sys.exit(1)


def _audit(config: LeashConfig) -> AuditTrail:
    return AuditTrail(config.audit_path, config.audit_key_path)


def _program(dry_run: bool = False) -> LeashProgram:
    config = _config()
    return LeashProgram.from_config(config, audit=_audit(config), dry_run=dry_run)


def _fmt(value: int) -> str:
    return format_base_units(value, _config().decimals)


def _parse_amount(value: str, convert: Callable[[str, int], int]) -> int:
    try:
        return convert(value, _config().decimals)
    except ValueError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)


def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("op://"):
        result = subprocess.run(
            ["op", "read", candidate],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode != 0:
            raise RuntimeError(f"Failed to read key from 1Password reference: {result.stderr.strip()}")
        candidate = result.stdout.strip()

    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string or valid op:// reference")
    int(candidate, 16)
    return "0x" + candidate


def _refuse_key_from_argv(unsafe_allow_key_arg: bool) -> None:
    ctx = click.get_current_context(silent=True)
    key_from_argv = (
        ctx is not None
        and ctx.get_parameter_source("key") == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            "❌ Refusing --key from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)


def _key_options(func):
    func = click.option(
        "--dry-run", is_flag=True, help="Simulate without committing",
    )(func)
    func = click.option(
        "--unsafe-allow-key-arg",
        is_flag=True,
        default=False,
        help="Allow passing --key via argv (unsafe; can leak in shell/process history).",
    )(func)
    func = click.option(
        "--key", prompt=True, hide_input=True,
        help="Signer private key hex or op:// reference",
    )(func)
    return func


def _load_signer(key: str, unsafe_allow_key_arg: bool) -> tuple[str, str]:
    _refuse_key_from_argv(unsafe_allow_key_arg)
    try:
        private_key = _resolve_private_key(key)
        signer = Account.from_key(private_key).address
    except Exception as e:
        click.echo(f"❌ Failed to load signer key: {e}", err=True)
        sys.exit(1)
    return private_key, signer


def _submit(key: str, unsafe_allow_key_arg: bool, dry_run: bool, build: Callable[[str, LeashProgram], Instruction]):
    """Sign the instruction built for the key's address and process it."""
    private_key, signer = _load_signer(key, unsafe_allow_key_arg)
    program = _program(dry_run=dry_run)
    if dry_run:
        click.echo("🔍 DRY RUN — nothing will be committed")
    try:
        instruction = build(signer, program)
        signed = sign_instruction(private_key, instruction, program.program_id, program.chain_id)
        return program, program.process(signed)
    except LeashError as e:
        click.echo(f"❌ {e.code}: {e}", err=True)
        sys.exit(1)
    except ValueError as e:
        click.echo(f"❌ Invalid request: {e}", err=True)
        sys.exit(1)


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Logging verbosity",
)
def main(log_level: str):
    """Leash — bounded, revocable spending permissions for AI agents."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
def keygen():
    """Generate a new wallet (for local testing only)."""
    acct = Account.create()
    click.echo(f"Address:     {acct.address}")
    click.echo(f"Private key: {acct.key.hex()}")
    click.echo("⚠️  Store the private key securely; it is shown only once.")


@main.command()
@click.argument("address")
@click.option("--lamports", type=int, default=1_000_000_000, help="Native amount to credit")
def airdrop(address: str, lamports: int):
    """Credit native balance used for storage deposits."""
    program = _program()
    try:
        balance = program.ledger.airdrop(address, lamports)
    except (LeashError, ValueError) as e:
        click.echo(f"❌ Airdrop failed: {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ {address} now holds {balance} lamports")


@main.command("open-account")
@click.option("--owner", default=None, help="Wallet address (default: the signer)")
@click.option("--key", prompt=True, hide_input=True, help="Payer private key hex or op:// reference")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --key via argv (unsafe; can leak in shell/process history).",
)
def open_account(owner: Optional[str], key: str, unsafe_allow_key_arg: bool):
    """Open the associated token account for a wallet; the signer pays the deposit."""
    _, payer = _load_signer(key, unsafe_allow_key_arg)
    program = _program()
    try:
        account = program.tokens.open_account(owner or payer, payer=payer)
    except (LeashError, ValueError) as e:
        click.echo(f"❌ Failed to open token account: {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ Token account: {account.address}")


@main.command()
@click.option("--owner", required=True, help="Wallet address")
@click.option("--amount", required=True, help="Token amount")
def mint(owner: str, amount: str):
    """Mint tokens into a wallet's token account (local development)."""
    program = _program()
    try:
        balance = program.tokens.mint(owner, _parse_amount(amount, limit_to_base_units))
    except (LeashError, ValueError) as e:
        click.echo(f"❌ Mint failed: {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ Balance: {_fmt(balance)}")


@main.command()
@click.option("--amount", required=True, help="Initial deposit (token units)")
@_key_options
def init(amount: str, key: str, unsafe_allow_key_arg: bool, dry_run: bool):
    """Create a vault for the signer and deposit funds."""
    base_units = _parse_amount(amount, limit_to_base_units)
    program, vault = _submit(
        key,
        unsafe_allow_key_arg,
        dry_run,
        lambda signer, p: build_initialize(signer, base_units, p.program_id, p.tokens.program_id),
    )
    click.echo(f"✅ Vault {'simulated' if dry_run else 'created'}: {vault.address}")
    click.echo(f"   Authority: {vault.authority}")
    click.echo(f"   Holding:   {vault.holding_account}")
    click.echo(f"   Deposit:   {_fmt(base_units)}")


@main.command()
@click.option("--agent", required=True, help="Agent wallet address")
@click.option("--budget", required=True, help="Cumulative budget (token units)")
@_key_options
def authorize(agent: str, budget: str, key: str, unsafe_allow_key_arg: bool, dry_run: bool):
    """Grant or update an agent's cumulative budget."""
    base_units = _parse_amount(budget, limit_to_base_units)
    program, permission = _submit(
        key,
        unsafe_allow_key_arg,
        dry_run,
        lambda signer, p: build_authorize(signer, agent, base_units, p.program_id),
    )
    click.echo(f"✅ Permission {'simulated' if dry_run else 'saved'}: {permission.address}")
    click.echo(f"   Agent:  {permission.agent}")
    click.echo(f"   Budget: {_fmt(permission.budget)} (spent {_fmt(permission.spent)})")
    if permission.locked_out:
        click.echo("   ⚠️  Budget is below amount already spent; agent cannot spend.")


@main.command()
@click.option("--agent", required=True, help="Agent wallet address")
@_key_options
def revoke(agent: str, key: str, unsafe_allow_key_arg: bool, dry_run: bool):
    """Revoke an agent's permission and reclaim its deposit."""
    program, permission = _submit(
        key,
        unsafe_allow_key_arg,
        dry_run,
        lambda signer, p: build_revoke(signer, agent, p.program_id),
    )
    click.echo(f"✅ Permission {'revocation simulated' if dry_run else 'revoked'}: {permission.address}")


@main.command()
@click.option("--authority", required=True, help="Vault authority address")
@click.option("--amount", required=True, help="Amount to spend (token units)")
@click.option("--destination", default=None, help="Destination token account (default: agent's)")
@_key_options
def spend(
    authority: str,
    amount: str,
    destination: Optional[str],
    key: str,
    unsafe_allow_key_arg: bool,
    dry_run: bool,
):
    """Spend from an authority's vault as the permitted agent."""
    base_units = _parse_amount(amount, amount_to_base_units)
    program, result = _submit(
        key,
        unsafe_allow_key_arg,
        dry_run,
        lambda signer, p: build_spend(
            authority, signer, base_units, destination, p.program_id, p.tokens.program_id
        ),
    )
    click.echo(f"✅ Spend {'simulated' if dry_run else 'completed'}!")
    click.echo(f"   Amount:    {_fmt(result.amount)} → {result.destination}")
    click.echo(f"   Remaining: {_fmt(result.remaining)} of {_fmt(result.budget)}")


@main.command()
@click.option("--destination", default=None, help="Destination token account (default: authority's)")
@_key_options
def withdraw(destination: Optional[str], key: str, unsafe_allow_key_arg: bool, dry_run: bool):
    """Withdraw the full vault balance and close the vault."""
    program, result = _submit(
        key,
        unsafe_allow_key_arg,
        dry_run,
        lambda signer, p: build_withdraw_and_close(
            signer, destination, p.program_id, p.tokens.program_id
        ),
    )
    click.echo(f"✅ Vault {'close simulated' if dry_run else 'closed'}: {result.vault}")
    click.echo(f"   Withdrawn: {_fmt(result.withdrawn)}")
    click.echo(f"   Deposits refunded: {result.refunded_deposit} lamports")


@main.command("show-vault")
@click.option("--authority", required=True, help="Vault authority address")
def show_vault(authority: str):
    """Show a vault and its holding balance."""
    program = _program()
    vault = program.get_vault(authority)
    if vault is None:
        click.echo(f"❌ No vault for {authority}", err=True)
        sys.exit(1)
    click.echo(f"🏦 Vault {vault.address}")
    click.echo(f"   Authority: {vault.authority}")
    click.echo(f"   Holding:   {vault.holding_account}")
    click.echo(f"   Balance:   {_fmt(program.holding_balance(authority))}")
    click.echo(f"   Created:   {time.strftime('%Y-%m-%d %H:%M', time.localtime(vault.created_at))}")
    for permission in program.list_permissions(authority):
        click.echo(
            f"   • {permission.agent}: {_fmt(permission.spent)} of {_fmt(permission.budget)}"
        )


@main.command("show-permission")
@click.option("--authority", required=True, help="Vault authority address")
@click.option("--agent", required=True, help="Agent wallet address")
def show_permission(authority: str, agent: str):
    """Show budget status for one permission."""
    program = _program()
    summary = program.permission_summary(authority, agent)
    if not summary["exists"]:
        click.echo(f"❌ No permission for agent {agent}", err=True)
        sys.exit(1)
    click.echo(f"📊 Permission {summary['address']}")
    click.echo(f"   Spent:       {_fmt(summary['spent'])} of {_fmt(summary['budget'])}")
    click.echo(f"   Remaining:   {_fmt(summary['remaining'])}")
    click.echo(f"   Utilization: {summary['utilization']}")
    if summary["locked_out"]:
        click.echo("   ⚠️  Locked out: budget is below amount spent")


@main.command()
@click.option("--owner", required=True, help="Wallet address")
def balance(owner: str):
    """Show a wallet's token and native balances."""
    program = _program()
    try:
        tokens = program.token_balance(owner)
    except LeashError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(f"Tokens:   {_fmt(tokens)}")
    click.echo(f"Lamports: {program.ledger.lamports(owner)}")


@main.command()
@click.option("--account", default=None, help="Filter by vault or permission address")
@click.option("--instruction", default=None, help="Filter by instruction hash")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(account: Optional[str], instruction: Optional[str], limit: int):
    """View the audit trail (the whole hash chain is verified first)."""
    trail = _audit(_config())
    try:
        events = trail.read_events(
            account=account.lower() if account else None,
            instruction=instruction.lower() if instruction else None,
            limit=limit,
        )
    except LeashError as e:
        click.echo(f"❌ {e.code}: {e}", err=True)
        sys.exit(1)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {_fmt(event.amount)}" if event.amount else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        simulated = " [dry run]" if event.dry_run else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{reason}{simulated}")


@main.command()
def demo():
    """Run a full demo of the vault → permission → spend → close flow."""
    program = _program()
    decimals = _config().decimals

    def units(value: str) -> int:
        return limit_to_base_units(value, decimals)

    click.echo("🎬 Leash Demo — Bounded Agent Spending")
    click.echo("=" * 50)

    click.echo("\n1️⃣  Generating test accounts...")
    authority = Account.create()
    agent = Account.create()
    click.echo(f"   Authority: {authority.address}")
    click.echo(f"   Agent:     {agent.address}")

    program.ledger.airdrop(authority.address, 1_000_000_000)
    program.ledger.airdrop(agent.address, 1_000_000_000)
    program.tokens.open_account(authority.address, payer=authority.address)
    program.tokens.open_account(agent.address, payer=agent.address)
    program.tokens.mint(authority.address, units("1000"))

    click.echo("\n2️⃣  Creating vault with 1000 tokens...")
    vault = program.initialize(authority.address, units("1000"))
    click.echo(f"   ✅ Vault: {vault.address}")

    click.echo("\n3️⃣  Authorizing agent for 200 tokens...")
    program.authorize(authority.address, agent.address, units("200"))

    click.echo("\n4️⃣  Spending...")
    for value in ("150", "100"):
        try:
            result = program.spend(agent.address, units(value), authority=authority.address)
            click.echo(f"   ✅ {value} spent (remaining {_fmt(result.remaining)})")
        except LeashError as e:
            click.echo(f"   ❌ {value}: {e.code}")

    click.echo("\n5️⃣  Revoking agent...")
    program.revoke(authority.address, agent.address)
    try:
        program.spend(agent.address, units("1"), authority=authority.address)
    except LeashError as e:
        click.echo(f"   ❌ Spend after revoke: {e.code}")

    click.echo("\n6️⃣  Withdrawing and closing...")
    closed = program.withdraw_and_close(authority.address)
    click.echo(f"   ✅ Returned {_fmt(closed.withdrawn)} to authority")
    click.echo(f"   Authority balance: {_fmt(program.token_balance(authority.address))}")

    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Vault → Authorize → Spend → Revoke → Close")


if __name__ == "__main__":
    main()

"""CLI flow and key-handling tests."""

from pathlib import Path

from click.testing import CliRunner
from eth_account import Account

from leash.cli import main


def _base_env(tmp_path: Path) -> dict[str, str]:
    return {
        "HOME": str(tmp_path),
        "LEASH_HOME": str(tmp_path / "leash"),
        "LEASH_AUDIT_HMAC_KEY": "test-audit-key",
    }


def _fund(runner: CliRunner, env: dict[str, str], acct, tokens: str = "0") -> None:
    assert runner.invoke(main, ["airdrop", acct.address], env=env).exit_code == 0
    result = runner.invoke(main, ["open-account"], input=acct.key.hex() + "\n", env=env)
    assert result.exit_code == 0, result.output
    if tokens != "0":
        assert runner.invoke(main, ["mint", "--owner", acct.address, "--amount", tokens], env=env).exit_code == 0


def test_init_rejects_raw_key_on_argv(tmp_path):
    runner = CliRunner()
    authority = Account.create()

    result = runner.invoke(
        main,
        ["init", "--amount", "1", "--key", authority.key.hex()],
        env=_base_env(tmp_path),
    )

    assert result.exit_code != 0
    assert "Refusing --key from argv" in result.output


def test_unsafe_flag_allows_argv_key(tmp_path):
    runner = CliRunner()
    env = _base_env(tmp_path)
    authority = Account.create()
    _fund(runner, env, authority, tokens="10")

    result = runner.invoke(
        main,
        ["init", "--amount", "10", "--key", authority.key.hex(), "--unsafe-allow-key-arg"],
        env=env,
    )

    assert result.exit_code == 0, result.output
    assert "Vault created" in result.output


def test_full_flow(tmp_path):
    runner = CliRunner()
    env = _base_env(tmp_path)
    authority = Account.create()
    agent = Account.create()
    _fund(runner, env, authority, tokens="1000")
    _fund(runner, env, agent)

    def signed(args, key):
        return runner.invoke(main, args, input=key.hex() + "\n", env=env)

    result = signed(["init", "--amount", "1000"], authority.key)
    assert result.exit_code == 0, result.output

    result = signed(["authorize", "--agent", agent.address, "--budget", "200"], authority.key)
    assert result.exit_code == 0, result.output

    result = signed(["spend", "--authority", authority.address, "--amount", "150"], agent.key)
    assert result.exit_code == 0, result.output
    assert "Remaining: 50.000000 of 200.000000" in result.output

    result = signed(["spend", "--authority", authority.address, "--amount", "100"], agent.key)
    assert result.exit_code == 1
    assert "BudgetExceeded" in result.output

    result = runner.invoke(
        main, ["show-permission", "--authority", authority.address, "--agent", agent.address], env=env
    )
    assert "Spent:       150.000000 of 200.000000" in result.output

    result = signed(["withdraw"], authority.key)
    assert result.exit_code == 0, result.output
    assert "Withdrawn: 850.000000" in result.output

    result = runner.invoke(main, ["balance", "--owner", authority.address], env=env)
    assert "Tokens:   850.000000" in result.output

    result = runner.invoke(main, ["audit"], env=env)
    assert "spend_denied" in result.output


def test_dry_run_does_not_commit(tmp_path):
    runner = CliRunner()
    env = _base_env(tmp_path)
    authority = Account.create()
    _fund(runner, env, authority, tokens="100")

    result = runner.invoke(
        main, ["init", "--amount", "100", "--dry-run"], input=authority.key.hex() + "\n", env=env
    )
    assert result.exit_code == 0, result.output
    assert "DRY RUN" in result.output

    result = runner.invoke(main, ["show-vault", "--authority", authority.address], env=env)
    assert result.exit_code == 1
    assert "No vault" in result.output


def test_spend_without_permission(tmp_path):
    runner = CliRunner()
    env = _base_env(tmp_path)
    authority = Account.create()
    agent = Account.create()
    stranger = Account.create()
    _fund(runner, env, authority, tokens="100")
    _fund(runner, env, agent)
    _fund(runner, env, stranger)

    runner.invoke(main, ["init", "--amount", "100"], input=authority.key.hex() + "\n", env=env)
    runner.invoke(
        main,
        ["authorize", "--agent", agent.address, "--budget", "50"],
        input=authority.key.hex() + "\n",
        env=env,
    )

    # The stranger has no permission of their own
    result = runner.invoke(
        main,
        ["spend", "--authority", authority.address, "--amount", "10"],
        input=stranger.key.hex() + "\n",
        env=env,
    )
    assert result.exit_code == 1
    assert "AccountNotFound" in result.output


def test_invalid_amount(tmp_path):
    runner = CliRunner()
    authority = Account.create()
    result = runner.invoke(
        main, ["init", "--amount=-5"], input=authority.key.hex() + "\n", env=_base_env(tmp_path)
    )
    assert result.exit_code == 1
    assert "Invalid amount" in result.output


def test_demo(tmp_path):
    result = CliRunner().invoke(main, ["demo"], env=_base_env(tmp_path))
    assert result.exit_code == 0, result.output
    assert "BudgetExceeded" in result.output
    assert "AccountNotFound" in result.output


def test_open_account_for_another_owner_charges_signer(tmp_path):
    runner = CliRunner()
    env = _base_env(tmp_path)
    payer = Account.create()
    owner = Account.create()
    assert runner.invoke(main, ["airdrop", payer.address], env=env).exit_code == 0

    result = runner.invoke(
        main, ["open-account", "--owner", owner.address], input=payer.key.hex() + "\n", env=env
    )
    assert result.exit_code == 0, result.output

    result = runner.invoke(main, ["balance", "--owner", owner.address], env=env)
    assert "Tokens:   0.000000" in result.output
    assert "Lamports: 0" in result.output


def test_open_account_rejects_raw_key_on_argv(tmp_path):
    payer = Account.create()
    result = CliRunner().invoke(
        main, ["open-account", "--key", payer.key.hex()], env=_base_env(tmp_path)
    )
    assert result.exit_code != 0
    assert "Refusing --key from argv" in result.output


def test_invalid_configuration_is_reported(tmp_path):
    env = dict(_base_env(tmp_path), LEASH_CHAIN_ID="not-a-number")
    result = CliRunner().invoke(main, ["show-vault", "--authority", Account.create().address], env=env)
    assert result.exit_code == 1
    assert "Invalid configuration: LEASH_CHAIN_ID must be an integer" in result.output

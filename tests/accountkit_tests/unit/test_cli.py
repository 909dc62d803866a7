import json
import time

import pytest
from click.testing import CliRunner

from accountkit.cli.main import cli
from accountkit.core.config import LOG_LEVEL
from accountkit.core.contracts.account_factory import AccountFactory
from accountkit.core.contracts.user_operation import UserOperation, parse_paymaster_and_data
from accountkit.core.crypto_utils import private_key_to_address, recover_address, to_eth_signed_message_hash

FACTORY = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"


@pytest.fixture
def runner():
    return CliRunner()


def _json(result):
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


class TestInformationalCommands:
    def test_networks_json(self, runner):
        networks = _json(runner.invoke(cli, ["--json-output", "networks"]))
        assert len(networks) == 8
        assert any(n["chain_id"] == 11155111 for n in networks)

    def test_networks_table(self, runner):
        result = runner.invoke(cli, ["networks"])
        assert result.exit_code == 0
        assert "Supported Networks" in result.output

    def test_generate_wallet(self, runner):
        wallet = _json(runner.invoke(cli, ["--json-output", "generate-wallet"]))
        assert private_key_to_address(wallet["private_key"]) == wallet["address"]

    def test_info(self, runner, owner):
        info = _json(
            runner.invoke(cli, ["--json-output", "info", "--private-key", owner.private_key, "--chain-id", "31337"])
        )
        assert info["owner"] == owner.address
        assert info["factory"] == FACTORY

    def test_info_unknown_chain(self, runner, owner):
        result = runner.invoke(cli, ["info", "--private-key", owner.private_key, "--chain-id", "999"])
        assert result.exit_code == 1


class TestLoggingOptions:
    def test_log_level_default_comes_from_config(self):
        (option,) = [p for p in cli.params if p.name == "log_level"]
        assert option.default == LOG_LEVEL

    def test_errors_written_to_log_file(self, runner, owner, tmp_path):
        log_file = tmp_path / "logs" / "cli.json"
        result = runner.invoke(
            cli,
            ["--log-file", str(log_file), "info", "--private-key", owner.private_key, "--chain-id", "999"],
        )
        assert result.exit_code == 1
        records = [json.loads(line) for line in log_file.read_text().splitlines()]
        assert any("Unsupported network" in r["message"] for r in records)
        assert all(r["level"] == "error" for r in records)


class TestPredictAddress:
    def test_single_owner_matches_factory(self, runner, owner):
        predicted = _json(
            runner.invoke(
                cli,
                ["--json-output", "predict-address", "--factory", FACTORY, "--owner", owner.address, "--salt", "5"],
            )
        )
        assert predicted["address"] == AccountFactory(address=FACTORY).get_address(owner.address, 5)

    def test_multi_flag_changes_address(self, runner, owner):
        args = ["--json-output", "predict-address", "--factory", FACTORY, "--owner", owner.address]
        single = _json(runner.invoke(cli, args))
        multi = _json(runner.invoke(cli, args + ["--multi"]))
        assert single["address"] != multi["address"]

    def test_hex_salt(self, runner, owner):
        args = ["--json-output", "predict-address", "--factory", FACTORY, "--owner", owner.address]
        decimal = _json(runner.invoke(cli, args + ["--salt", "255"]))
        hexadecimal = _json(runner.invoke(cli, args + ["--salt", "0xff"]))
        assert decimal["address"] == hexadecimal["address"]

    def test_invalid_owner(self, runner):
        result = runner.invoke(
            cli, ["predict-address", "--factory", FACTORY, "--owner", "0x0000000000000000000000000000000000000000"]
        )
        assert result.exit_code == 1


class TestSigningCommands:
    def test_create_user_op(self, runner, owner, target, entry_point):
        payload = _json(
            runner.invoke(
                cli,
                [
                    "create-user-op",
                    "--private-key", owner.private_key,
                    "--sender", target,
                    "--target", target,
                    "--value", "0",
                    "--nonce", "1",
                    "--chain-id", "31337",
                    "--entry-point", entry_point.address,
                ],
            )
        )
        op = UserOperation.from_dict(payload["userOp"])
        op_hash = op.hash(entry_point.address, 31337)
        assert "0x" + op_hash.hex() == payload["userOpHash"]
        assert recover_address(to_eth_signed_message_hash(op_hash), op.signature) == owner.address

    def test_sign_sponsorship(self, runner, tmp_path, target, verifier, paymaster):
        op_file = tmp_path / "op.json"
        op_file.write_text(json.dumps(UserOperation(sender=target, nonce=3, call_data=b"\x01").to_dict()))
        valid_until = int(time.time()) + 3600

        response = _json(
            runner.invoke(
                cli,
                [
                    "--json-output",
                    "sign-sponsorship",
                    "--user-op", str(op_file),
                    "--verifier-key", verifier.private_key,
                    "--paymaster", paymaster.address,
                    "--valid-until", str(valid_until),
                    "--chain-id", "31337",
                    "--data-offset", "52",
                ],
            )
        )
        assert response["verifier_address"] == verifier.address
        data = parse_paymaster_and_data(bytes.fromhex(response["paymaster_and_data"][2:]), 52)
        assert data.paymaster == paymaster.address
        assert data.valid_until == valid_until

    def test_sign_sponsorship_expired(self, runner, tmp_path, target, verifier, paymaster):
        op_file = tmp_path / "op.json"
        op_file.write_text(json.dumps(UserOperation(sender=target, nonce=3, call_data=b"\x01").to_dict()))
        result = runner.invoke(
            cli,
            [
                "sign-sponsorship",
                "--user-op", str(op_file),
                "--verifier-key", verifier.private_key,
                "--paymaster", paymaster.address,
                "--valid-until", "1",
            ],
        )
        assert result.exit_code == 1

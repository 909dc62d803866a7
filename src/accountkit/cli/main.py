#!/usr/bin/env python3
"""
accountkit CLI - offline account abstraction tooling

Provides commands for:
- Predicting counterfactual account addresses
- Generating owner wallets
- Building and signing UserOperations
- Signing paymaster sponsorships
- Listing supported networks
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Optional

import click
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from accountkit import __version__
from accountkit.core.aa_exceptions import AccountAbstractionError
from accountkit.core.config import (
    CHAIN_ID,
    ENTRY_POINT_ADDRESS,
    LOG_FILE,
    LOG_LEVEL,
    PAYMASTER_DATA_OFFSET,
    ConfigurationError,
    get_network_config,
    list_supported_networks,
)
from accountkit.core.contracts.account_factory import AccountFactory, DEFAULT_IMPLEMENTATION_ADDRESS
from accountkit.core.contracts.address_derivation import encode_call
from accountkit.core.contracts.smart_account import EXECUTE_SIGNATURE
from accountkit.core.contracts.user_operation import UserOperation
from accountkit.core.crypto_utils import generate_account, private_key_to_address, sign_message_hash
from accountkit.core.logging_config import setup_logging
from accountkit.core.sponsorship_service import SponsorshipRequest, SponsorshipSigner, VerifierKeyManager

logger = logging.getLogger(__name__)
console = Console()


def _cli_fail(exc: Exception, exit_code: int = 1) -> None:
    """Centralized CLI error handler for consistent messaging."""
    logger.error("CLI error: %s", exc, exc_info=True)
    console.print(f"[bold red]Error:[/] {exc}")
    sys.exit(exit_code)


def _parse_int(value: str) -> int:
    """Accept decimal or 0x-prefixed hex."""
    try:
        return int(value, 0)
    except ValueError:
        raise click.BadParameter(f"not an integer: {value!r}") from None


def _parse_hex(value: str) -> bytes:
    raw = value[2:] if value.startswith("0x") else value
    try:
        return bytes.fromhex(raw)
    except ValueError:
        raise click.BadParameter(f"not hex data: {value!r}") from None


def _render(ctx: click.Context, title: str, rows: dict) -> None:
    if ctx.obj.get("json_output"):
        click.echo(json.dumps(rows, indent=2))
        return
    table = Table(show_header=False, box=box.ROUNDED)
    for key, value in rows.items():
        table.add_row(f"[bold cyan]{key}", str(value))
    console.print(Panel(table, title=f"[bold green]{title}", border_style="green"))


@click.group()
@click.option('--json-output', is_flag=True, help='Output raw JSON')
@click.option('--log-level', default=LOG_LEVEL, show_default=True, help='Logging level')
@click.option('--log-file', default=LOG_FILE, type=click.Path(dir_okay=False), help='Also write JSON logs to this file')
@click.version_option(__version__, prog_name="accountkit")
@click.pass_context
def cli(ctx: click.Context, json_output: bool, log_level: str, log_file: Optional[str]):
    """
    accountkit - ERC-4337 account abstraction toolkit

    Offline helpers for smart accounts: address prediction, operation
    signing and paymaster sponsorship.
    """
    ctx.ensure_object(dict)
    ctx.obj['json_output'] = json_output
    setup_logging(level=log_level, log_file=log_file)


@cli.command("generate-wallet")
@click.pass_context
def generate_wallet(ctx: click.Context):
    """Generate a new random owner wallet"""
    private_key, address = generate_account()
    _render(ctx, "New Wallet Created", {"address": address, "private_key": "0x" + private_key})
    if not ctx.obj.get("json_output"):
        console.print("\n[yellow]⚠[/] Store the private key securely; it is not saved anywhere.")


@cli.command("info")
@click.option('--private-key', required=True, envvar='ACCOUNTKIT_PRIVATE_KEY', help='Owner private key (hex)')
@click.option('--chain-id', default=CHAIN_ID, type=int, show_default=True)
@click.pass_context
def info(ctx: click.Context, private_key: str, chain_id: int):
    """Show the owner address and network defaults for a key"""
    try:
        owner = private_key_to_address(private_key)
        network = get_network_config(chain_id)
    except (ValueError, ConfigurationError) as exc:
        _cli_fail(exc)
    _render(
        ctx,
        "Account Information",
        {
            "owner": owner,
            "network": network.name,
            "chain_id": network.chain_id,
            "entry_point": network.entry_point,
            "factory": network.factory,
        },
    )


@cli.command("networks")
@click.pass_context
def networks(ctx: click.Context):
    """List supported networks"""
    supported = list_supported_networks()
    if ctx.obj.get("json_output"):
        click.echo(json.dumps(
            [
                {
                    "name": n.name,
                    "chain_id": n.chain_id,
                    "type": n.network_type.value,
                    "entry_point": n.entry_point,
                    "factory": n.factory,
                }
                for n in supported
            ],
            indent=2,
        ))
        return

    table = Table(title="Supported Networks", box=box.ROUNDED)
    table.add_column("Name", style="cyan")
    table.add_column("Chain ID", justify="right")
    table.add_column("Type")
    table.add_column("Factory", style="dim")
    for n in supported:
        table.add_row(n.name, str(n.chain_id), n.network_type.value, n.factory)
    console.print(table)


@cli.command("predict-address")
@click.option('--factory', required=True, help='Factory contract address')
@click.option('--owner', 'owners', multiple=True, required=True,
              help='Owner address (repeat for a multi-owner account)')
@click.option('--salt', default="0", show_default=True, help='Salt (decimal or 0x hex)')
@click.option('--implementation', default=DEFAULT_IMPLEMENTATION_ADDRESS, show_default=True,
              help='Account implementation address')
@click.option('--multi', is_flag=True, help='Use the multi-owner initializer even for one owner')
@click.pass_context
def predict_address(
    ctx: click.Context,
    factory: str,
    owners: tuple,
    salt: str,
    implementation: str,
    multi: bool,
):
    """Get predicted smart account address before deployment"""
    try:
        deployer = AccountFactory(address=factory, implementation=implementation)
        salt_value = _parse_int(salt)
        if len(owners) == 1 and not multi:
            address = deployer.get_address(owners[0], salt_value)
        else:
            address = deployer.get_address_with_owners(list(owners), salt_value)
    except (ValueError, AccountAbstractionError, click.BadParameter) as exc:
        _cli_fail(exc)
    _render(
        ctx,
        "Predicted Address",
        {"address": address, "factory": deployer.address, "owners": ", ".join(owners), "salt": salt_value},
    )


@cli.command("create-user-op")
@click.option('--private-key', required=True, envvar='ACCOUNTKIT_PRIVATE_KEY', help='Owner private key (hex)')
@click.option('--sender', required=True, help='Smart account address')
@click.option('--target', required=True, help='Target contract address')
@click.option('--call-data', default="0x", show_default=True, help='Call data for the target (hex)')
@click.option('--value', default="0", show_default=True, help='Value to send (wei)')
@click.option('--nonce', default="0", show_default=True, help='Nonce (decimal or 0x hex)')
@click.option('--chain-id', default=CHAIN_ID, type=int, show_default=True)
@click.option('--entry-point', default=ENTRY_POINT_ADDRESS, show_default=True)
@click.option('--max-fee', default="1000000000", show_default=True, help='Max fee per gas (wei)')
@click.option('--max-priority-fee', default="1000000000", show_default=True,
              help='Max priority fee per gas (wei)')
def create_user_op(
    private_key: str,
    sender: str,
    target: str,
    call_data: str,
    value: str,
    nonce: str,
    chain_id: int,
    entry_point: str,
    max_fee: str,
    max_priority_fee: str,
):
    """Create and sign a UserOperation (printed as JSON)"""
    try:
        op = UserOperation(
            sender=sender,
            nonce=_parse_int(nonce),
            call_data=encode_call(
                EXECUTE_SIGNATURE,
                ["address", "uint256", "bytes"],
                [target, _parse_int(value), _parse_hex(call_data)],
            ),
            max_fee_per_gas=_parse_int(max_fee),
            max_priority_fee_per_gas=_parse_int(max_priority_fee),
        )
        op_hash = op.hash(entry_point, chain_id)
        signed = op.with_signature(sign_message_hash(private_key, op_hash))
    except (ValueError, AccountAbstractionError, click.BadParameter) as exc:
        _cli_fail(exc)
    click.echo(json.dumps({"userOpHash": "0x" + op_hash.hex(), "userOp": signed.to_dict()}, indent=2))


@cli.command("sign-sponsorship")
@click.option('--user-op', 'user_op_file', required=True, type=click.File('r'),
              help='UserOperation JSON (packed RPC form), "-" for stdin')
@click.option('--verifier-key', required=True, envvar='ACCOUNTKIT_VERIFIER_KEY', help='Verifier private key (hex)')
@click.option('--paymaster', required=True, help='Paymaster address')
@click.option('--valid-until', required=True, type=int, help='Unix timestamp the sponsorship expires')
@click.option('--valid-after', default=0, type=int, show_default=True)
@click.option('--chain-id', default=CHAIN_ID, type=int, show_default=True)
@click.option('--data-offset', default=str(PAYMASTER_DATA_OFFSET), type=click.Choice(["52", "20"]),
              show_default=True, help='Paymaster data offset expected by the EntryPoint')
@click.pass_context
def sign_sponsorship(
    ctx: click.Context,
    user_op_file,
    verifier_key: str,
    paymaster: str,
    valid_until: int,
    valid_after: int,
    chain_id: int,
    data_offset: str,
):
    """Sign a paymaster sponsorship for a UserOperation"""
    try:
        payload = json.load(user_op_file)
        op = UserOperation.from_dict(payload.get("userOp", payload))
        signer = SponsorshipSigner(
            VerifierKeyManager({"cli": verifier_key}),
            paymaster=paymaster,
            chain_id=chain_id,
            data_offset=int(data_offset),
        )
        response = signer.sign_sponsorship(
            SponsorshipRequest(user_op=op, valid_until=valid_until, valid_after=valid_after, verifier="cli")
        )
    except (ValueError, KeyError, AccountAbstractionError) as exc:
        _cli_fail(exc)
    _render(ctx, "Sponsorship Signed", response.to_dict())


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()

"""
cronos402 CLI — gasless USDC.e payments and the MCP relay on Cronos.

Commands:
    cronos402 networks      List configured networks and tokens
    cronos402 sign          Sign a transferWithAuthorization (prints JSON)
    cronos402 pay           Sign and submit a USDC.e payment
    cronos402 send-native   Send native CRO (pays gas)
    cronos402 call-tool     Call an MCP tool, paying when asked
    cronos402 health        Check facilitator health via the gateway
    cronos402 serve         Run the relay and payment endpoints
"""

from __future__ import annotations

import asyncio
import json
import logging
import subprocess
import sys

import click
import httpx
from click.core import ParameterSource

from . import __version__
from .authorization import build_authorization, sign_authorization
from .client import PaymentAwareClient
from .config import CRONOS402_PRIVATE_KEY_ENV, Settings
from .errors import Cronos402Error
from .money import parse_units
from .native import send_native_payment
from .networks import DEFAULT_NETWORK, NETWORKS, get_network, get_stablecoin
from .settlement import SettlementSubmitter
from .signer import from_private_key
from .transport import McpHttpClient, proxy_url, wallet_headers


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
            "❌ Refusing --key from argv. Use the prompt, "
            f"{CRONOS402_PRIVATE_KEY_ENV}, or pass --unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)


def _load_context(key: str, unsafe_allow_key_arg: bool, network: str):
    _refuse_key_from_argv(unsafe_allow_key_arg)
    try:
        return from_private_key(_resolve_private_key(key), network)
    except (RuntimeError, ValueError, Cronos402Error) as e:
        click.echo(f"❌ Invalid key: {e}", err=True)
        sys.exit(1)


def key_options(func):
    func = click.option(
        "--unsafe-allow-key-arg",
        is_flag=True,
        default=False,
        help="Allow passing --key via argv (unsafe; can leak in shell/process history).",
    )(func)
    func = click.option(
        "--key",
        prompt=True,
        hide_input=True,
        envvar=CRONOS402_PRIVATE_KEY_ENV,
        help=f"Payer private key hex or op:// reference (or ${CRONOS402_PRIVATE_KEY_ENV})",
    )(func)
    return func


@click.group()
@click.version_option(version=__version__)
def main():
    """cronos402 — Gasless x402 payments for MCP tools on Cronos."""
    pass


@main.command()
def networks():
    """List configured networks and tokens."""
    for cfg in NETWORKS.values():
        click.echo(f"{cfg.id:8} {cfg.display_name} (chain {cfg.chain_id}, x402 '{cfg.x402_name}')")
        click.echo(f"         RPC:         {cfg.rpc_url}")
        click.echo(f"         Explorer:    {cfg.explorer_url}")
        click.echo(f"         Facilitator: {cfg.facilitator_url}")
        for token in cfg.tokens:
            kind = "native" if token.is_native else ("stablecoin" if token.is_stablecoin else "token")
            click.echo(f"         {token.symbol:10} {token.decimals:>2} decimals  {kind:10} {token.address}")


@main.command()
@click.option("--to", "recipient", required=True, help="Payee address")
@click.option("--amount", required=True, help="USDC.e amount as a decimal string (e.g. 0.01)")
@click.option("--network", default=DEFAULT_NETWORK, help="mainnet or testnet")
@click.option("--validity", type=int, default=3600, help="Validity window in seconds (default: 3600)")
@key_options
def sign(recipient: str, amount: str, network: str, validity: int, key: str, unsafe_allow_key_arg: bool):
    """Sign a USDC.e transferWithAuthorization and print it as JSON."""
    context = _load_context(key, unsafe_allow_key_arg, network)
    try:
        authorization = build_authorization(recipient, amount, context, network, validity)
        signed = asyncio.run(sign_authorization(authorization, context))
    except Cronos402Error as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(json.dumps({"network": get_network(network).id, "authorization": signed.to_wire()}, indent=2))


@main.command()
@click.option("--to", "recipient", required=True, help="Payee address")
@click.option("--amount", required=True, help="USDC.e amount as a decimal string (e.g. 0.01)")
@click.option("--network", default=DEFAULT_NETWORK, help="mainnet or testnet")
@click.option("--gateway-url", envvar="CRONOS402_GATEWAY_URL", default=None, help="Payment gateway base URL")
@key_options
def pay(
    recipient: str,
    amount: str,
    network: str,
    gateway_url: str,
    key: str,
    unsafe_allow_key_arg: bool,
):
    """Sign a USDC.e authorization and submit it for settlement."""
    context = _load_context(key, unsafe_allow_key_arg, network)
    base_url = gateway_url or Settings.from_env().gateway_url

    async def _run():
        authorization = build_authorization(recipient, amount, context, network)
        signed = await sign_authorization(authorization, context)
        async with SettlementSubmitter(base_url) as submitter:
            return await submitter.submit(signed, network)

    try:
        result = asyncio.run(_run())
    except Cronos402Error as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if result.success:
        click.echo(f"✅ Payment settled: {result.tx_hash}")
        if result.explorer_url:
            click.echo(f"   Explorer: {result.explorer_url}")
    else:
        click.echo(f"❌ Payment failed: {result.error}", err=True)
        if result.reason:
            click.echo(f"   Reason: {result.reason}", err=True)
        sys.exit(1)


@main.command("send-native")
@click.option("--to", "recipient", required=True, help="Recipient address")
@click.option("--amount", required=True, help="CRO amount as a decimal string (e.g. 0.1)")
@click.option("--network", default=DEFAULT_NETWORK, help="mainnet or testnet")
@click.option("--gas-limit", type=int, default=21000, help="Gas limit (default: 21000)")
@key_options
def send_native(
    recipient: str,
    amount: str,
    network: str,
    gas_limit: int,
    key: str,
    unsafe_allow_key_arg: bool,
):
    """Send native CRO. Unlike USDC.e payments, this pays gas."""
    context = _load_context(key, unsafe_allow_key_arg, network)
    try:
        result = asyncio.run(send_native_payment(context, recipient, amount, network, gas_limit))
    except Cronos402Error as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ Transaction sent: {result.tx_hash}")
    click.echo(f"   Explorer: {result.explorer_url}")


@main.command("call-tool")
@click.option("--server", "server_url", required=True, help="MCP server URL")
@click.option("--tool", "tool_name", required=True, help="Tool name")
@click.option("--args", "raw_args", default="{}", help="Tool arguments as a JSON object")
@click.option("--relay-url", default=None, help="Route through this relay's /api/mcp-proxy")
@click.option("--network", default=DEFAULT_NETWORK, help="mainnet or testnet")
@click.option("--gateway-url", envvar="CRONOS402_GATEWAY_URL", default=None, help="Payment gateway base URL")
@click.option("--max-payment", default="0.1", help="Largest USDC.e amount to pay per call (default: 0.1)")
@click.option("--yes", "assume_yes", is_flag=True, default=False, help="Pay without asking")
@key_options
def call_tool(
    server_url: str,
    tool_name: str,
    raw_args: str,
    relay_url: str,
    network: str,
    gateway_url: str,
    max_payment: str,
    assume_yes: bool,
    key: str,
    unsafe_allow_key_arg: bool,
):
    """Call an MCP tool, paying in USDC.e when the server asks for it."""
    try:
        arguments = json.loads(raw_args)
    except ValueError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--args")
    if not isinstance(arguments, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--args")

    context = _load_context(key, unsafe_allow_key_arg, network)
    base_url = gateway_url or Settings.from_env().gateway_url
    url = proxy_url(relay_url, server_url) if relay_url else server_url

    def confirm(accepts: list[dict]) -> bool:
        for option in accepts:
            click.echo(
                f"   {option.get('network')}: {option.get('maxAmountRequired', option.get('amount'))} "
                f"atomic units to {option.get('payTo')}"
            )
        return click.confirm("Pay for this tool call?", default=False)

    async def _run():
        max_value = parse_units(max_payment, get_stablecoin(network).decimals)
        async with McpHttpClient(url, headers=wallet_headers(context.address)) as mcp:
            await mcp.initialize()
            async with SettlementSubmitter(base_url) as submitter:
                client = PaymentAwareClient(
                    mcp,
                    context,
                    submitter,
                    max_payment_value=max_value,
                    confirmation_callback=None if assume_yes else confirm,
                )
                return await client.call_tool(tool_name, arguments)

    try:
        result = asyncio.run(_run())
    except (Cronos402Error, httpx.HTTPError) as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if result.payment_made and result.settlement is not None:
        click.echo(f"✅ Paid: {result.settlement.tx_hash}", err=True)
        if result.settlement.explorer_url:
            click.echo(f"   Explorer: {result.settlement.explorer_url}", err=True)
    click.echo(result.text())
    if result.is_error:
        sys.exit(1)


@main.command()
@click.option("--gateway-url", envvar="CRONOS402_GATEWAY_URL", default=None, help="Payment gateway base URL")
def health(gateway_url: str):
    """Check facilitator health through the gateway."""
    base_url = gateway_url or Settings.from_env().gateway_url

    async def _run():
        async with SettlementSubmitter(base_url) as submitter:
            return await submitter.check_health()

    status = asyncio.run(_run())
    if status.healthy:
        click.echo(f"✅ Facilitator {status.status}")
    else:
        click.echo(f"❌ Facilitator {status.status}: {status.error or 'unknown error'}", err=True)
        sys.exit(1)


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", type=int, default=3050, help="Port (default: 3050)")
@click.option("--log-level", default="info", type=click.Choice(["debug", "info", "warning", "error"]))
def serve(host: str, port: int, log_level: str):
    """Run the MCP relay and payment endpoints."""
    import uvicorn

    from .server import create_app

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        settings = Settings.from_env()
    except ValueError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    click.echo(f"Serving cronos402 on http://{host}:{port} ({settings.environment})")
    uvicorn.run(create_app(settings), host=host, port=port, log_level=log_level)


if __name__ == "__main__":
    main()

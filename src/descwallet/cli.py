"""
Descriptor wallet CLI - derive addresses, build, decode, sign and broadcast PSBTs.

Every command prints its result as JSON on stdout. Failures print
{"kind": ..., "message": ...} and exit with status 1.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Annotated, TypeVar

import typer
from loguru import logger
from pydantic import BaseModel, ValidationError

from descwallet import fees, operations
from descwallet.config import Settings, WalletConfig, get_settings
from descwallet.errors import WalletError
from descwallet.wallet.policy import SpendingPolicyPaths

app = typer.Typer(
    name="descwallet",
    help="Descriptor wallet - addresses, PSBTs and fees",
    add_completion=False,
)

T = TypeVar("T", bound=BaseModel)


class Network(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def _emit(result: BaseModel) -> None:
    typer.echo(result.model_dump_json())


def _fail(error: WalletError) -> None:
    logger.debug(f"{error.kind.value}: {error}")
    typer.echo(json.dumps(error.to_dict()))
    raise typer.Exit(1)


def _run(call: Callable[[], T]) -> None:
    try:
        result = call()
    except WalletError as e:
        _fail(e)
    else:
        _emit(result)


def _run_async(
    make_config: Callable[[], WalletConfig], call: Callable[[WalletConfig], Awaitable[T]]
) -> None:
    async def runner() -> T:
        config = make_config()
        try:
            return await call(config)
        finally:
            await config.close()

    try:
        result = asyncio.run(runner())
    except WalletError as e:
        _fail(e)
    else:
        _emit(result)


def _settings(log_level: str | None) -> Settings:
    settings = get_settings()
    setup_logging(log_level or settings.log_level)
    return settings


def _online_config(
    descriptor: str,
    settings: Settings,
    backend: str | None,
    node: str | None,
    socks5: str | None,
) -> Callable[[], WalletConfig]:
    def make() -> WalletConfig:
        return WalletConfig.new(
            descriptor,
            backend or settings.backend,
            node or settings.node_address,
            socks5 or settings.socks5,
            settings,
        )

    return make


DescriptorArg = Annotated[str, typer.Argument(help="Deposit output descriptor (/0/* chain)")]
PSBTArg = Annotated[str, typer.Argument(help="Base64 encoded PSBT")]
BackendOpt = Annotated[
    str | None, typer.Option("--backend", "-b", help="Backend type: esplora | rpc")
]
NodeOpt = Annotated[
    str | None, typer.Option("--node", "-n", help="Esplora URL or RPC URL ('default' for public)")
]
Socks5Opt = Annotated[str | None, typer.Option("--socks5", help="SOCKS5 proxy host:port")]
LogLevelOpt = Annotated[str | None, typer.Option("--log-level", "-l", help="Log level")]


@app.command()
def address(
    descriptor: DescriptorArg,
    index: Annotated[int, typer.Option("--index", "-i", help="Address index", min=0)] = 0,
    log_level: LogLevelOpt = None,
) -> None:
    """Derive the deposit address at an index."""
    settings = _settings(log_level)
    _run(lambda: operations.generate(WalletConfig.offline(descriptor, settings), index))


@app.command()
def policies(descriptor: DescriptorArg, log_level: LogLevelOpt = None) -> None:
    """Show the spending policy trees and their node ids."""
    settings = _settings(log_level)
    _run(lambda: operations.policies(WalletConfig.offline(descriptor, settings)))


@app.command()
def build(
    descriptor: DescriptorArg,
    to: Annotated[str, typer.Option("--to", "-t", help="Destination address")],
    fee: Annotated[int, typer.Option("--fee", "-f", help="Absolute fee in sats", min=0)],
    amount: Annotated[
        int | None, typer.Option("--amount", "-a", help="Amount in sats", min=0)
    ] = None,
    sweep: Annotated[bool, typer.Option("--sweep", help="Send the whole balance")] = False,
    policy_paths: Annotated[
        str | None,
        typer.Option(
            "--policy-paths",
            help='JSON, e.g. {"external": {"root": [0]}, "internal": {"root": [0]}}',
        ),
    ] = None,
    backend: BackendOpt = None,
    node: NodeOpt = None,
    socks5: Socks5Opt = None,
    log_level: LogLevelOpt = None,
) -> None:
    """Build an unsigned PSBT."""
    settings = _settings(log_level)

    paths = None
    if policy_paths:
        try:
            paths = SpendingPolicyPaths.model_validate_json(policy_paths)
        except ValidationError as e:
            _fail(WalletError.internal("Policy-Path-Parse", str(e)))

    _run_async(
        _online_config(descriptor, settings, backend, node, socks5),
        lambda config: operations.build(config, to, amount, fee, sweep, paths),
    )


@app.command()
def decode(
    psbt: PSBTArg,
    network: Annotated[
        Network, typer.Option("--network", help="Network the addresses are rendered for")
    ] = Network.TESTNET,
    log_level: LogLevelOpt = None,
) -> None:
    """Decode a PSBT into outputs and the implied miner fee."""
    _settings(log_level)
    _run(lambda: operations.decode(network.value, psbt))


@app.command()
def weight(descriptor: DescriptorArg, psbt: PSBTArg, log_level: LogLevelOpt = None) -> None:
    """Estimate the signed weight of a PSBT."""
    _settings(log_level)
    _run(lambda: operations.get_weight(descriptor, psbt))


@app.command()
def sign(descriptor: DescriptorArg, psbt: PSBTArg, log_level: LogLevelOpt = None) -> None:
    """Sign a PSBT with the private keys in the descriptor."""
    settings = _settings(log_level)
    _run(lambda: operations.sign(WalletConfig.offline(descriptor, settings), psbt))


@app.command()
def broadcast(
    descriptor: DescriptorArg,
    psbt: PSBTArg,
    backend: BackendOpt = None,
    node: NodeOpt = None,
    socks5: Socks5Opt = None,
    log_level: LogLevelOpt = None,
) -> None:
    """Broadcast a finalized PSBT."""
    settings = _settings(log_level)
    _run_async(
        _online_config(descriptor, settings, backend, node, socks5),
        lambda config: operations.broadcast(config, psbt),
    )


@app.command("fee-estimate")
def fee_estimate(
    descriptor: DescriptorArg,
    target: Annotated[int, typer.Option("--target", help="Confirmation target in blocks")] = 6,
    backend: BackendOpt = None,
    node: NodeOpt = None,
    socks5: Socks5Opt = None,
    log_level: LogLevelOpt = None,
) -> None:
    """Estimate a fee rate (sat/vB) for a confirmation target."""
    settings = _settings(log_level)
    _run_async(
        _online_config(descriptor, settings, backend, node, socks5),
        lambda config: fees.estimate_rate(config, target),
    )


@app.command("fee-absolute")
def fee_absolute(
    rate: Annotated[float, typer.Argument(help="Fee rate in sat/vB")],
    weight: Annotated[int, typer.Argument(help="Transaction weight in WU")],
    log_level: LogLevelOpt = None,
) -> None:
    """Convert a fee rate to an absolute fee."""
    _settings(log_level)
    _run(lambda: fees.get_absolute(rate, weight))


@app.command("fee-rate")
def fee_rate(
    absolute: Annotated[int, typer.Argument(help="Absolute fee in sats")],
    weight: Annotated[int, typer.Argument(help="Transaction weight in WU")],
    log_level: LogLevelOpt = None,
) -> None:
    """Convert an absolute fee to a fee rate."""
    _settings(log_level)
    _run(lambda: fees.get_rate(absolute, weight))


def main() -> None:
    """Entry point."""
    app()


if __name__ == "__main__":
    main()

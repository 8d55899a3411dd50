#!/usr/bin/env python3
"""pm-node - process manager node agent.

Usage:
    pm-node HOST PORT [--quiet] [--verbose]

Or with environment variables:
    PM_NODE_PING_INTERVAL=10 pm-node master.local 4000
"""

import asyncio
import signal
import sys

import click

from . import __version__
from .agent import PMNodeAgent
from .config import AgentConfig
from .exceptions import PMNodeError
from .utils import setup_logging


async def run_agent(config: AgentConfig) -> None:
    """Connect and keep the agent running until SIGINT/SIGTERM."""
    logger = setup_logging(debug=config.verbose, quiet=config.quiet)
    agent = PMNodeAgent(config)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)

    try:
        await agent.connect()
    except PMNodeError as e:
        if not config.quiet:
            logger.error(f"can not connect to {config.server_address}: {e}")
    else:
        if not config.quiet:
            logger.info(f"connected to {config.server_address}")

    try:
        await stop.wait()
        logger.info("Received signal, shutting down...")
    finally:
        await agent.close()

    logger.info("Agent shutdown complete")


@click.command()
@click.argument("address", nargs=-1)
@click.option("--quiet", "-q", is_flag=True, help="Only log warnings and errors")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--ping-interval", envvar="PM_NODE_PING_INTERVAL", default=30.0, type=float, help="Heartbeat interval in seconds")
@click.option("--version", is_flag=True, help="Show version and exit")
@click.pass_context
def main(
    ctx: click.Context,
    address: tuple,
    quiet: bool,
    verbose: bool,
    ping_interval: float,
    version: bool,
):
    """pm-node - connect this machine to a pm master at HOST PORT."""
    if version:
        click.echo(f"pm-node {__version__}")
        return

    if len(address) != 2:
        click.echo(ctx.get_help())
        ctx.exit(0)

    host, port = address
    if not port.isdigit():
        click.echo(f"Config error: port must be a number, got: {port}", err=True)
        sys.exit(1)

    config = AgentConfig(
        server_host=host,
        server_port=int(port),
        ping_interval=ping_interval,
        quiet=quiet,
        verbose=verbose,
    )

    errors = config.validate()
    if errors:
        for error in errors:
            click.echo(f"Config error: {error}", err=True)
        sys.exit(1)

    asyncio.run(run_agent(config))


if __name__ == "__main__":
    main()

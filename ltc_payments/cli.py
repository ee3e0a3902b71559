"""
CLI entry point for LTC Payments.
"""

import asyncio
from pathlib import Path
from typing import Optional

import structlog
import typer
from dotenv import load_dotenv

from .config import Settings, load_settings
from .errors import ChainCallError, ConfigurationError, InvalidAddressError
from .gateway import PaymentGateway
from .keyvault import script_hash
from .logs import configure_logging

logger = structlog.get_logger()

app = typer.Typer(
    name="ltc-payments",
    help="Custodial payment gateway with cold-storage sweeps",
    add_completion=False,
)


def _load(config_path: Optional[Path]) -> Settings:
    try:
        settings = load_settings(config_path)
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(1)
    configure_logging(settings.log_level, settings.log_json)
    return settings


@app.command()
def serve(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to .env configuration file",
    ),
    no_sweeper: bool = typer.Option(
        False,
        "--no-sweeper",
        help="Serve the API without running the sweeper",
    ),
) -> None:
    """
    Start the HTTP API and the background sweeper.
    """
    import uvicorn

    from .main import create_app

    settings = _load(config_path)
    gateway = PaymentGateway.from_settings(settings)
    api = create_app(gateway, start_sweeper=not no_sweeper)
    logger.info("gateway_starting", host=settings.host, port=settings.port, sweeper=not no_sweeper)

    # the app closes the gateway when uvicorn shuts it down
    uvicorn.run(api, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


@app.command()
def sweep(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to .env configuration file",
    ),
    once: bool = typer.Option(
        False,
        "--once",
        help="Run a single sweep pass and exit",
    ),
) -> None:
    """
    Run the sweeper without the HTTP API.
    """
    settings = _load(config_path)
    gateway = PaymentGateway.from_settings(settings)

    async def _run() -> None:
        try:
            if once:
                results = await gateway.sweeper.tick()
                for result in results:
                    line = f"{result.payment_id}: {result.outcome.value}"
                    if result.txid:
                        line += f" txid={result.txid} fee={result.fee}"
                    typer.echo(line)
                typer.echo(f"Evaluated {len(results)} payments")
            else:
                typer.echo("Running in continuous mode. Press Ctrl+C to stop.")
                await gateway.sweeper.run()
        finally:
            await gateway.close()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        typer.echo("\nStopping sweeper...")


@app.command()
def status(
    payment_id: str = typer.Argument(..., help="Payment ID"),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to .env configuration file",
    ),
) -> None:
    """
    Show a payment with its live confirmations and received amount.
    """
    settings = _load(config_path)
    gateway = PaymentGateway.from_settings(settings)
    try:
        result = gateway.lookup(payment_id)
    except ChainCallError as e:
        typer.echo(f"Electrum error: {e}", err=True)
        raise typer.Exit(2)
    finally:
        asyncio.run(gateway.close())

    if result is None:
        typer.echo("Payment not found.", err=True)
        raise typer.Exit(1)

    payment = result.payment
    typer.echo(f"  ID: {payment.id}")
    typer.echo(f"  Address: {payment.address}")
    typer.echo(f"  Status: {payment.status}")
    typer.echo(f"  Amount: {payment.amount} sats")
    typer.echo(f"  Received: {result.received} sats")
    typer.echo(f"  Confirmations: {result.confirmations}/{result.confirmations_needed}")


@app.command()
def scripthash(
    address: str = typer.Argument(..., help="P2WPKH address"),
) -> None:
    """
    Print the Electrum script hash of an address.
    """
    try:
        typer.echo(script_hash(address))
    except InvalidAddressError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def version() -> None:
    """Show the gateway version."""
    from ltc_payments import __version__
    typer.echo(f"ltc-payments v{__version__}")


def main() -> None:
    """Main entry point."""
    load_dotenv()
    app()


if __name__ == "__main__":
    main()

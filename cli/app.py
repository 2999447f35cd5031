from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import typer

from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import render_payment, render_stations, render_wallet


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Find EV charging stations and manage Spark Coins from the terminal.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1, message="CLI state is uninitialized.")
    return state


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Aggregator API base URL (defaults to API_BASE_URL env or http://localhost:8000).",
    ),
    poll_interval: Optional[float] = typer.Option(
        None,
        "--poll-interval",
        help="Seconds between status checks when waiting for a payment.",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Maximum seconds to wait for a payment to settle.",
    ),
    user_id: Optional[str] = typer.Option(
        None,
        "--user",
        "-u",
        help="Default wallet owner (defaults to SPARK_USER_ID env or guest).",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(
        base_url=base_url,
        poll_interval=poll_interval,
        poll_timeout=timeout,
        user_id=user_id,
    )
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("nearby")
def nearby_command(
    ctx: typer.Context,
    latitude: float = typer.Argument(..., min=-90, max=90, help="Latitude in degrees."),
    longitude: float = typer.Argument(..., min=-180, max=180, help="Longitude in degrees."),
    radius: Optional[float] = typer.Option(None, "--radius", "-r", help="Search radius in km."),
) -> None:
    """List charging stations around a point, closest first."""
    state = _get_state(ctx)
    payload = state.client.nearby(latitude, longitude, radius)
    render_stations(payload)


@app.command("wallet")
def wallet_command(
    ctx: typer.Context,
    user_id: Optional[str] = typer.Argument(None, help="Wallet owner; defaults to the configured user."),
) -> None:
    """Show a Spark Coins balance and its history."""
    state = _get_state(ctx)
    render_wallet(state.client.wallet(user_id or state.config.user_id))


@app.command("earn")
def earn_command(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="Wallet owner."),
    amount: int = typer.Argument(..., min=1, help="Coins to credit."),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
) -> None:
    """Credit Spark Coins to a wallet."""
    state = _get_state(ctx)
    payload = state.client.earn(user_id, amount, description)
    typer.secho(f"Added {amount} coins.", fg=typer.colors.GREEN)
    render_wallet(payload)


@app.command("spend")
def spend_command(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="Wallet owner."),
    amount: int = typer.Argument(..., min=1, help="Coins to spend."),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
) -> None:
    """Spend Spark Coins; fails when the balance is too low."""
    state = _get_state(ctx)
    payload = state.client.spend(user_id, amount, description)
    typer.secho(f"Spent {amount} coins.", fg=typer.colors.GREEN)
    render_wallet(payload)


@app.command("pay")
def pay_command(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="Paying user."),
    amount: float = typer.Argument(..., min=0.01, help="Amount in rupees."),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    wait: bool = typer.Option(
        False,
        "--wait/--no-wait",
        help="Wait for verification to finish and display the outcome.",
    ),
) -> None:
    """Open a mock UPI payment and start verifying it."""
    state = _get_state(ctx)
    session = state.client.open_payment(user_id, amount, description)
    upi = state.client.payment_upi(session["id"])
    typer.echo(f"UPI intent: {upi['url']}")
    session = state.client.initiate_payment(session["id"])
    typer.secho(f"Payment started. session_id={session['id']}", fg=typer.colors.GREEN)

    if not wait:
        return

    interval = state.config.poll_interval
    poll_timeout = state.config.poll_timeout
    typer.echo(f"Waiting for verification (interval={interval}s, timeout={poll_timeout}s)...")
    result = state.client.poll_payment(session["id"], interval=interval, timeout=poll_timeout)
    typer.echo()
    render_payment(result)
    if result.get("state") != "success":
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()

from __future__ import annotations

from typing import Any, Dict, Iterable

import typer


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def render_stations(payload: Dict[str, Any]) -> None:
    echo_heading("Nearby Stations")
    echo_key_values(
        [
            ("center", f"{payload.get('latitude')}, {payload.get('longitude')}"),
            ("radius_km", payload.get("radius_km")),
            ("total", payload.get("total")),
        ]
    )
    per_source = payload.get("per_source_count") or {}
    for source, count in per_source.items():
        typer.echo(f"  - {source}: {count}")

    stations = payload.get("stations") or []
    typer.echo()
    if not stations:
        typer.echo("No stations found.")
        return
    for station in stations:
        details = ", ".join(
            str(part)
            for part in (station.get("socket"), station.get("speed"), station.get("power"))
            if part
        )
        typer.echo(f"{station.get('distance_km')} km  {station.get('name')}  [{station.get('source')}]")
        if details:
            typer.echo(f"    {details}")


def render_wallet(payload: Dict[str, Any]) -> None:
    echo_heading("Spark Coins")
    echo_key_values([("user_id", payload.get("user_id")), ("balance", payload.get("balance"))])
    entries = payload.get("entries") or []
    typer.echo()
    echo_heading("History")
    if not entries:
        typer.echo("No transactions recorded.")
        return
    for entry in reversed(entries):
        amount = entry.get("amount", 0)
        sign = "+" if amount > 0 else ""
        typer.echo(f"  {sign}{amount}  {entry.get('description')}  ({entry.get('timestamp')})")


def render_payment(payload: Dict[str, Any]) -> None:
    echo_heading("Payment")
    echo_key_values(
        [
            ("id", payload.get("id")),
            ("user_id", payload.get("user_id")),
            ("amount", payload.get("amount")),
            ("state", payload.get("state")),
            ("coins_earned", payload.get("coins_earned")),
        ]
    )
    if payload.get("error_message"):
        typer.secho(f"error: {payload['error_message']}", fg=typer.colors.RED)

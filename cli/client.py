from __future__ import annotations

import time
from typing import Any, Dict, Optional

import httpx
import typer

from cli.config import CLIConfig

_UNSETTLED_STATES = {"idle", "processing"}


class ApiClient:
    """Minimal HTTP client for the station aggregator service."""

    def __init__(self, config: CLIConfig) -> None:
        self._config = config
        self._client = httpx.Client(base_url=config.base_url, timeout=config.request_timeout)

    def close(self) -> None:
        self._client.close()

    def nearby(self, latitude: float, longitude: float, radius_km: Optional[float] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"latitude": latitude, "longitude": longitude}
        if radius_km is not None:
            params["radius_km"] = radius_km
        return self._request("GET", "/stations/nearby", params=params)

    def wallet(self, user_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/wallets/{user_id}")

    def earn(self, user_id: str, amount: int, description: Optional[str] = None) -> Dict[str, Any]:
        return self._request(
            "POST", f"/wallets/{user_id}/earn", json={"amount": amount, "description": description}
        )

    def spend(self, user_id: str, amount: int, description: Optional[str] = None) -> Dict[str, Any]:
        return self._request(
            "POST", f"/wallets/{user_id}/spend", json={"amount": amount, "description": description}
        )

    def open_payment(self, user_id: str, amount: float, description: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"user_id": user_id, "amount": amount}
        if description:
            body["description"] = description
        return self._request("POST", "/payments", json=body)

    def initiate_payment(self, session_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/payments/{session_id}/initiate")

    def get_payment(self, session_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/payments/{session_id}")

    def payment_upi(self, session_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/payments/{session_id}/upi")

    def poll_payment(self, session_id: str, interval: float, timeout: float) -> Dict[str, Any]:
        deadline = time.monotonic() + timeout
        last_payload: Dict[str, Any] | None = None
        while time.monotonic() <= deadline:
            last_payload = self.get_payment(session_id)
            if last_payload.get("state") not in _UNSETTLED_STATES or last_payload.get("closed"):
                return last_payload
            time.sleep(interval)
        typer.secho(
            (
                f"Timed out waiting for payment {session_id}. "
                f"Last state: {last_payload.get('state') if last_payload else 'unknown'}"
            ),
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(code=1)

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        except httpx.HTTPError as exc:
            typer.secho(f"Could not reach {self._config.base_url}: {exc}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1) from exc
        return response.json()

    @staticmethod
    def _handle_http_error(exc: httpx.HTTPStatusError) -> None:
        detail: str | None = None
        try:
            data = exc.response.json()
            detail = data.get("detail")
        except Exception:  # noqa: BLE001 - best effort parsing
            detail = exc.response.text.strip()
        message = (
            f"Request failed with status {exc.response.status_code}: {detail or 'no detail provided.'}"
        )
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

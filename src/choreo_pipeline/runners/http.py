"""Remote step runner over HTTP.

Submits each step attempt to a runner service and polls until it
terminates:

    POST   /runs            body: StepRequest payload -> {"id": "..."}
    GET    /runs/{id}       -> {"phase": "Running|Succeeded|Failed|Error",
                                "exitCode": 0, "outputs": {...},
                                "logs": "...", "message": "..."}
    DELETE /runs/{id}       cancel a running step

Transport failures and non-2xx responses are raised as InfrastructureError.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import httpx

from choreo_pipeline.errors import InfrastructureError
from choreo_pipeline.runners.base import StepOutcome, StepRequest

logger = logging.getLogger(__name__)

TERMINAL_PHASES = ("Succeeded", "Failed", "Error")


class HttpRunner:
    """Dispatch steps to a remote runner service.

    Args:
        base_url: Runner service URL (e.g. from CHOREO_RUNNER_URL).
        client: Optional pre-configured httpx.AsyncClient (its base_url is used).
        poll_interval: Seconds between status polls.
        token: Optional bearer token.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        client: httpx.AsyncClient | None = None,
        poll_interval: float = 2.0,
        token: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout)
        self.poll_interval = poll_interval

    async def __aenter__(self) -> HttpRunner:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def run(self, request: StepRequest) -> StepOutcome:
        """Submit a step and wait for it to terminate.

        Raises:
            InfrastructureError: On transport errors or unexpected responses.
        """
        submitted = await self._request("POST", "/runs", json_body=request.to_payload())
        run_id = submitted.get("id")
        if not run_id:
            raise InfrastructureError(f"Runner did not return a run id for step '{request.step_name}'")
        logger.info(f"Submitted step {request.step_name} (attempt {request.attempt}) as run {run_id}")

        try:
            while True:
                status = await self._request("GET", f"/runs/{run_id}")
                phase = status.get("phase")
                if phase in TERMINAL_PHASES:
                    return _to_outcome(status)
                await asyncio.sleep(self.poll_interval)
        except asyncio.CancelledError:
            logger.info(f"Cancelling run {run_id} of step {request.step_name}")
            with contextlib.suppress(InfrastructureError):
                await self._request("DELETE", f"/runs/{run_id}")
            raise

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        log_url = _redact_url(f"{self._client.base_url}{path}")
        logger.debug(f"HTTP {method} {log_url}")

        try:
            response = await self._client.request(method, path, json=json_body)
        except httpx.TimeoutException as e:
            raise InfrastructureError(f"Request timed out: {method} {log_url}") from e
        except httpx.RequestError as e:
            raise InfrastructureError(f"Request failed: {method} {log_url}: {e}") from e

        logger.debug(f"HTTP {method} {log_url} -> {response.status_code}")
        if not response.is_success:
            raise InfrastructureError(
                f"Runner returned HTTP {response.status_code} for {method} {log_url}",
                context={"status_code": response.status_code},
            )

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise InfrastructureError(f"Runner returned invalid JSON for {method} {log_url}") from e
        if not isinstance(data, dict):
            raise InfrastructureError(f"Runner returned a non-object response for {method} {log_url}")
        return data


def _to_outcome(status: dict[str, Any]) -> StepOutcome:
    phase = status["phase"]
    outputs = {str(k): str(v) for k, v in (status.get("outputs") or {}).items()}
    logs = status.get("logs") or ""

    if phase == "Error":
        return StepOutcome(
            exit_code=_exit_code(status),
            error=status.get("message") or "runner reported an error",
            logs=logs,
        )

    exit_code = _exit_code(status)
    if phase == "Failed" and exit_code == 0:
        exit_code = 1
    return StepOutcome(exit_code=exit_code, outputs=outputs, logs=logs)


def _exit_code(status: dict[str, Any]) -> int:
    raw = status.get("exitCode") or 0
    try:
        return int(raw)
    except (TypeError, ValueError) as e:
        raise InfrastructureError(
            f"Runner returned invalid exitCode {raw!r}",
            context={"phase": status.get("phase")},
        ) from e


def _redact_url(url: str) -> str:
    """Drop query strings and credentials from URLs for logging."""
    parts = urlsplit(url)
    netloc = parts.netloc.rsplit("@", 1)[-1]
    return urlunsplit((parts.scheme, netloc, parts.path, "", ""))

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from rpc_router.config import HealthCheckConfig
from rpc_router.routing.table import Backend


@dataclass(slots=True)
class _BackendHealth:
    healthy: bool = True
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_check_epoch: float | None = None
    last_error: str | None = None


class BackendHealthRegistry:
    def __init__(
        self,
        backend_names: Sequence[str],
        *,
        failures_threshold: int = 3,
        successes_threshold: int = 2,
    ) -> None:
        self._failures_threshold = max(1, failures_threshold)
        self._successes_threshold = max(1, successes_threshold)
        self._backends: dict[str, _BackendHealth] = {
            name: _BackendHealth() for name in backend_names
        }

    def on_success(self, name: str) -> bool:
        state = self._backends.setdefault(name, _BackendHealth())
        state.last_check_epoch = time.time()
        state.last_error = None
        state.consecutive_failures = 0
        state.consecutive_successes += 1
        if not state.healthy and state.consecutive_successes >= self._successes_threshold:
            state.healthy = True
            return True
        return False

    def on_failure(self, name: str, error: str) -> bool:
        state = self._backends.setdefault(name, _BackendHealth())
        state.last_check_epoch = time.time()
        state.last_error = error
        state.consecutive_successes = 0
        state.consecutive_failures += 1
        if state.healthy and state.consecutive_failures >= self._failures_threshold:
            state.healthy = False
            return True
        return False

    def is_healthy(self, name: str) -> bool:
        state = self._backends.get(name)
        return state.healthy if state is not None else True

    def snapshot(self, name: str) -> dict[str, Any]:
        state = self._backends.get(name) or _BackendHealth()
        last_check = None
        if state.last_check_epoch is not None:
            last_check = datetime.fromtimestamp(
                state.last_check_epoch, tz=timezone.utc
            ).isoformat()
        return {
            "label": name,
            "healthy": state.healthy,
            "last_check": last_check,
            "consecutive_failures": state.consecutive_failures,
            "consecutive_successes": state.consecutive_successes,
            "last_error": state.last_error,
        }

    def report(self) -> dict[str, Any]:
        backends = [self.snapshot(name) for name in self._backends]
        any_healthy = any(entry["healthy"] for entry in backends)
        return {
            "overall_status": "healthy" if any_healthy else "unhealthy",
            "backends": backends,
        }


def _probe_payload(method: str) -> bytes:
    return json.dumps(
        {"jsonrpc": "2.0", "id": 1, "method": method},
        separators=(",", ":"),
    ).encode("utf-8")


class HealthMonitor:
    def __init__(
        self,
        *,
        backends: Sequence[Backend],
        registry: BackendHealthRegistry,
        client: httpx.AsyncClient,
        config: HealthCheckConfig,
        logger: logging.Logger | None = None,
    ) -> None:
        # one probe per registry entry
        unique: dict[str, Backend] = {}
        for backend in backends:
            unique.setdefault(backend.name, backend)
        self._backends = list(unique.values())
        self._registry = registry
        self._client = client
        self._config = config
        self._logger = logger
        self._interval_seconds = max(0.1, float(config.interval_seconds))
        self._timeout_seconds = max(0.1, float(config.timeout_seconds))
        self._payload = _probe_payload(config.method)
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if not self._config.enabled or self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="backend-health-monitor")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def run_once(self) -> None:
        await asyncio.gather(*(self._check(backend) for backend in self._backends))

    async def probe(self, backend: Backend) -> str | None:
        try:
            response = await self._client.post(
                backend.url,
                content=self._payload,
                headers={"Content-Type": "application/json"},
                timeout=self._timeout_seconds,
            )
        except httpx.HTTPError as exc:
            return f"{exc.__class__.__name__}: {str(exc).strip() or repr(exc)}"

        if not response.is_success:
            return f"HTTP {response.status_code}"
        try:
            payload = response.json()
        except ValueError:
            return "invalid JSON response"
        if isinstance(payload, dict) and payload.get("error") is not None:
            return f"JSON-RPC error: {payload['error']}"
        return None

    async def _check(self, backend: Backend) -> None:
        error = await self.probe(backend)
        if error is None:
            changed = self._registry.on_success(backend.name)
        else:
            changed = self._registry.on_failure(backend.name, error)
        if changed and self._logger is not None:
            self._logger.warning(
                "backend_health_changed backend=%s healthy=%s error=%s",
                backend.name,
                self._registry.is_healthy(backend.name),
                error,
            )

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as exc:
                if self._logger is not None:
                    self._logger.warning(
                        "backend_health_check_failed error=%s", str(exc)
                    )
            await asyncio.sleep(self._interval_seconds)

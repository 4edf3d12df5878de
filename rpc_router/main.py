from __future__ import annotations

import argparse
import logging
import os
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import Response

from rpc_router.config import load_router_config
from rpc_router.gateway.audit import JsonlRequestLog
from rpc_router.gateway.auth import ApiKeyAuthenticator
from rpc_router.gateway.dispatcher import RequestDispatcher
from rpc_router.gateway.proxy import Forwarder
from rpc_router.routing.selector import WeightedSelector
from rpc_router.routing.table import routing_table_from_config
from rpc_router.runtime.health import BackendHealthRegistry, HealthMonitor
from rpc_router.settings import get_settings

app = FastAPI(
    title="RPC Router",
    description="JSON-RPC reverse proxy with API-key auth, weighted backends and method overrides.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    config = load_router_config(settings.router_config_path)
    routing_table = routing_table_from_config(config)

    logger.info(
        "loaded configuration path=%s backends=%d",
        settings.router_config_path,
        len(routing_table.backends),
    )
    for backend in routing_table.backends:
        logger.info("backend name=%s weight=%d", backend.name, backend.weight)
    for method, backend in routing_table.method_routes.items():
        logger.info("method_route method=%s backend=%s", method, backend.name)

    forwarder = Forwarder(
        timeout_seconds=config.proxy.timeout_seconds,
        connect_timeout_seconds=config.proxy.connect_timeout_seconds,
        max_connections=config.proxy.max_connections,
        max_keepalive_connections=config.proxy.max_keepalive_connections,
    )
    request_log = JsonlRequestLog(
        path=settings.router_request_log_path,
        enabled=settings.router_request_log_enabled,
    )
    health_registry = BackendHealthRegistry(
        [backend.name for backend in routing_table.backends],
        failures_threshold=config.health_check.consecutive_failures_threshold,
        successes_threshold=config.health_check.consecutive_successes_threshold,
    )
    health_monitor = HealthMonitor(
        backends=routing_table.backends,
        registry=health_registry,
        client=forwarder.client,
        config=config.health_check,
        logger=logger,
    )

    app.state.settings = settings
    app.state.router_config = config
    app.state.routing_table = routing_table
    app.state.forwarder = forwarder
    app.state.request_log = request_log
    app.state.health_registry = health_registry
    app.state.health_monitor = health_monitor
    app.state.dispatcher = RequestDispatcher(
        routing_table=routing_table,
        authenticator=ApiKeyAuthenticator(config.api_keys),
        forwarder=forwarder,
        selector=WeightedSelector(routing_table),
        request_log=request_log,
    )
    await health_monitor.start()
    logger.info(
        (
            "startup complete config_path=%s backends=%d method_routes=%d "
            "api_keys=%d timeout_seconds=%s health_check_enabled=%s"
        ),
        settings.router_config_path,
        len(routing_table.backends),
        len(routing_table.method_routes),
        len(config.api_keys),
        config.proxy.timeout_seconds,
        config.health_check.enabled,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    health_monitor: HealthMonitor | None = getattr(app.state, "health_monitor", None)
    if health_monitor is not None:
        await health_monitor.stop()
    forwarder: Forwarder | None = getattr(app.state, "forwarder", None)
    if forwarder is not None:
        await forwarder.close()
    request_log: JsonlRequestLog | None = getattr(app.state, "request_log", None)
    if request_log is not None:
        request_log.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, Any]:
    registry: BackendHealthRegistry = app.state.health_registry
    return registry.report()


@app.post("/")
async def proxy_root(request: Request) -> Response:
    dispatcher: RequestDispatcher = app.state.dispatcher
    return await dispatcher.dispatch(request)


@app.post("/{path:path}")
async def proxy_path(path: str, request: Request) -> Response:
    dispatcher: RequestDispatcher = app.state.dispatcher
    return await dispatcher.dispatch(request)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="rpc-router",
        description="RPC router with weighted load balancing and method routing.",
    )
    parser.add_argument("-c", "--config", default=None, help="Path to the YAML config file.")
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    return parser.parse_args(argv)


def run(argv: list[str] | None = None) -> None:
    import uvicorn

    args = _parse_args(argv)
    if args.config:
        os.environ["ROUTER_CONFIG_PATH"] = args.config
        get_settings.cache_clear()
    settings = get_settings()
    config = load_router_config(settings.router_config_path)
    port = args.port or settings.router_port or config.port
    host = args.host or settings.router_host
    uvicorn.run("rpc_router.main:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    run()

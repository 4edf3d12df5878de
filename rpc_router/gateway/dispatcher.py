from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Literal
from urllib.parse import quote

from fastapi import Request
from fastapi.responses import Response

from rpc_router.gateway.audit import JsonlRequestLog
from rpc_router.gateway.auth import (
    API_KEY_QUERY_PARAM,
    ApiKeyAuthenticator,
    unauthorized_response,
)
from rpc_router.gateway.proxy import (
    Forwarder,
    TransportError,
    build_upstream_headers,
    build_upstream_url,
    gateway_error_response,
)
from rpc_router.routing.selector import WeightedSelector
from rpc_router.routing.table import Backend, RoutingTable

logger = logging.getLogger("uvicorn.error")

RouteSource = Literal["override", "weighted"]


class DispatchStatus(str, Enum):
    AUTHENTICATED = "authenticated"
    UNAUTHORIZED = "unauthorized"
    BACKEND_ERROR = "backend_error"
    SUCCESS = "success"


@dataclass(frozen=True, slots=True)
class SelectionContext:
    method: str | None
    presented_key: str | None


@dataclass(slots=True)
class DispatchOutcome:
    status: DispatchStatus
    backend: str | None = None
    route_source: RouteSource | None = None
    duration_ms: float = 0.0
    upstream_status_code: int | None = None
    response_status_code: int | None = None
    error_type: str | None = None


def extract_method(body: bytes) -> str | None:
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    method = payload.get("method")
    if isinstance(method, str):
        return method
    return None


def _raw_request_path(request: Request) -> str:
    raw_path: bytes | None = request.scope.get("raw_path")
    if not raw_path:
        return quote(request.url.path)
    # some servers include the query string in raw_path
    return raw_path.split(b"?", 1)[0].decode("latin-1")


def _client_address(request: Request) -> str:
    client = request.client
    if client is None:
        return "unknown"
    return f"{client.host}:{client.port}"


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0


class RequestDispatcher:
    def __init__(
        self,
        *,
        routing_table: RoutingTable,
        authenticator: ApiKeyAuthenticator,
        forwarder: Forwarder,
        selector: WeightedSelector | None = None,
        request_log: JsonlRequestLog | None = None,
    ) -> None:
        self.routing_table = routing_table
        self.authenticator = authenticator
        self.forwarder = forwarder
        self.selector = selector or WeightedSelector(routing_table)
        self.request_log = request_log

    def select_backend(self, method: str | None) -> tuple[Backend, RouteSource]:
        override = self.routing_table.route_for(method)
        if override is not None:
            return override, "override"
        return self.selector.select(), "weighted"

    async def dispatch(self, request: Request) -> Response:
        presented_key = request.query_params.get(API_KEY_QUERY_PARAM)
        if not self.authenticator.authenticate(presented_key):
            started = time.perf_counter()
            response = unauthorized_response()
            self._emit(
                request,
                SelectionContext(method=None, presented_key=presented_key),
                DispatchOutcome(
                    status=DispatchStatus.UNAUTHORIZED,
                    duration_ms=_elapsed_ms(started),
                    response_status_code=response.status_code,
                ),
            )
            return response

        body = await request.body()
        context = SelectionContext(
            method=extract_method(body), presented_key=presented_key
        )
        started = time.perf_counter()
        backend, route_source = self.select_backend(context.method)
        if route_source == "override":
            logger.info(
                "method_route_override method=%s backend=%s",
                context.method,
                backend.name,
            )
        outcome = DispatchOutcome(
            status=DispatchStatus.AUTHENTICATED,
            backend=backend.name,
            route_source=route_source,
        )
        upstream_url = build_upstream_url(
            backend.url, _raw_request_path(request), request.query_params.multi_items()
        )

        try:
            upstream = await self.forwarder.forward(
                upstream_url,
                request.method,
                build_upstream_headers(request.headers),
                body,
            )
        except TransportError as exc:
            outcome.status = DispatchStatus.BACKEND_ERROR
            outcome.error_type = exc.error_type
            outcome.duration_ms = _elapsed_ms(started)
            logger.warning(
                (
                    "proxy_request_error method=%s backend=%s error_type=%s "
                    "is_timeout=%s duration_ms=%.3f error=%s"
                ),
                context.method or "unknown",
                backend.name,
                exc.error_type,
                exc.is_timeout,
                outcome.duration_ms,
                exc.message,
            )
            response = gateway_error_response(exc, backend.name)
        except asyncio.CancelledError:
            outcome.status = DispatchStatus.BACKEND_ERROR
            outcome.error_type = "request_cancelled"
            outcome.duration_ms = _elapsed_ms(started)
            self._emit(request, context, outcome)
            raise
        else:
            outcome.status = DispatchStatus.SUCCESS
            outcome.upstream_status_code = upstream.status_code
            outcome.duration_ms = _elapsed_ms(started)
            response = upstream.to_fastapi_response()

        outcome.response_status_code = response.status_code
        self._emit(request, context, outcome)
        return response

    def _emit(
        self,
        request: Request,
        context: SelectionContext,
        outcome: DispatchOutcome,
    ) -> None:
        method = context.method or "unknown"
        path = request.url.path
        client = _client_address(request)
        logger.info(
            (
                "rpc_request method=%s path=%s client=%s backend=%s source=%s "
                "status=%s outcome=%s duration_ms=%.3f"
            ),
            method,
            path,
            client,
            outcome.backend or "none",
            outcome.route_source or "none",
            outcome.response_status_code,
            outcome.status.value,
            outcome.duration_ms,
        )
        if self.request_log is None:
            return
        record: dict[str, Any] = {
            "event": "rpc_request",
            "rpc_method": method,
            "path": path,
            "client": client,
            **asdict(outcome),
        }
        record["status"] = outcome.status.value
        record["duration_ms"] = round(outcome.duration_ms, 3)
        self.request_log.record(record)

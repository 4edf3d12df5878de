from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
from fastapi import status
from fastapi.responses import JSONResponse, Response
from starlette.datastructures import Headers

from rpc_router.gateway.auth import API_KEY_QUERY_PARAM
from rpc_router.routing.table import redact_url

HOP_BY_HOP_REQUEST_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
}

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
    # httpx hands back the decoded body
    "content-encoding",
}


class TransportError(Exception):
    def __init__(
        self,
        *,
        backend: str,
        error_type: str,
        message: str,
        is_timeout: bool = False,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.error_type = error_type
        self.message = message
        self.is_timeout = is_timeout

    @classmethod
    def from_httpx(cls, exc: Exception, backend_url: str) -> TransportError:
        error_type = exc.__class__.__name__.strip() or "RequestError"
        return cls(
            backend=redact_url(backend_url),
            error_type=error_type,
            message=str(exc).strip() or repr(exc),
            is_timeout=isinstance(exc, httpx.TimeoutException),
        )

    def details(self) -> dict[str, Any]:
        return {
            "backend": self.backend,
            "error": self.message,
            "error_type": self.error_type,
            "is_timeout": self.is_timeout,
        }


@dataclass(slots=True)
class UpstreamResponse:
    status_code: int
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""

    def to_fastapi_response(self) -> Response:
        response = Response(content=self.body, status_code=self.status_code)
        for name, value in self.headers:
            response.headers.append(name, value)
        return response


def _filter_response_headers(headers: httpx.Headers) -> list[tuple[str, str]]:
    return [
        (name, value)
        for name, value in headers.multi_items()
        if name.lower() not in HOP_BY_HOP_RESPONSE_HEADERS
    ]


def build_upstream_headers(incoming_headers: Headers) -> list[tuple[str, str]]:
    connection_tokens = {
        token.strip().lower()
        for token in incoming_headers.get("connection", "").split(",")
        if token.strip()
    }
    headers: list[tuple[str, str]] = []
    for name, value in incoming_headers.items():
        lower = name.lower()
        if lower in HOP_BY_HOP_REQUEST_HEADERS or lower in connection_tokens:
            continue
        headers.append((name, value))
    return headers


def build_upstream_url(
    backend_url: str,
    raw_path: str,
    query_params: Iterable[tuple[str, str]] = (),
) -> str:
    """Join the still-encoded request path and the inbound query onto a backend URL.

    The backend's own query string is kept byte-for-byte and always comes first.
    """
    base = urlsplit(backend_url)
    if raw_path and raw_path != "/":
        target_path = base.path.rstrip("/") + "/" + raw_path.lstrip("/")
    else:
        target_path = base.path or "/"

    backend_names = {
        name for name, _ in parse_qsl(base.query, keep_blank_values=True)
    }
    forwarded = [
        (name, value)
        for name, value in query_params
        if name != API_KEY_QUERY_PARAM and name not in backend_names
    ]
    query = "&".join(part for part in (base.query, urlencode(forwarded)) if part)
    return urlunsplit((base.scheme, base.netloc, target_path, query, ""))


def gateway_error_response(
    error: TransportError, backend_name: str | None = None
) -> JSONResponse:
    backend = backend_name or error.backend
    if error.is_timeout:
        return JSONResponse(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            content={
                "error": {
                    "type": "upstream_timeout",
                    "message": f"Upstream request to {backend} timed out.",
                    "backend": backend,
                    "error_type": error.error_type,
                }
            },
        )
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={
            "error": {
                "type": "upstream_connection_error",
                "message": (
                    f"Could not reach backend {backend} "
                    f"({error.error_type}): {error.message}"
                ),
                "backend": backend,
                "error_type": error.error_type,
            }
        },
    )


class Forwarder:
    def __init__(
        self,
        *,
        timeout_seconds: float,
        connect_timeout_seconds: float | None = None,
        max_connections: int = 512,
        max_keepalive_connections: int = 128,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout_seconds = max(0.1, float(timeout_seconds))
        connect_timeout = (
            max(0.1, float(connect_timeout_seconds))
            if connect_timeout_seconds is not None
            else max(0.1, min(5.0, self.timeout_seconds))
        )
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=self.timeout_seconds,
                connect=connect_timeout,
            ),
            limits=httpx.Limits(
                max_connections=max(1, max_connections),
                max_keepalive_connections=max(0, max_keepalive_connections),
            ),
            follow_redirects=False,
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def forward(
        self,
        backend_url: str,
        method: str,
        headers: Iterable[tuple[str, str]],
        body: bytes,
    ) -> UpstreamResponse:
        try:
            return await asyncio.wait_for(
                self._send(backend_url, method, list(headers), body),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise TransportError(
                backend=redact_url(backend_url),
                error_type="UpstreamTimeout",
                message=f"no complete response within {self.timeout_seconds:g}s",
                is_timeout=True,
            ) from exc
        except (httpx.RequestError, httpx.InvalidURL) as exc:
            raise TransportError.from_httpx(exc, backend_url) from exc

    async def _send(
        self,
        backend_url: str,
        method: str,
        headers: list[tuple[str, str]],
        body: bytes,
    ) -> UpstreamResponse:
        request = self.client.build_request(
            method=method,
            url=backend_url,
            content=body,
            headers=headers,
        )
        upstream = await self.client.send(request)
        return UpstreamResponse(
            status_code=upstream.status_code,
            headers=_filter_response_headers(upstream.headers),
            body=upstream.content,
        )

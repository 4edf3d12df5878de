from __future__ import annotations

import asyncio
import gzip

import httpx
import pytest
from starlette.datastructures import Headers

from rpc_router.gateway.proxy import (
    Forwarder,
    TransportError,
    UpstreamResponse,
    build_upstream_headers,
    build_upstream_url,
    gateway_error_response,
)


def _forwarder_with(handler, timeout_seconds: float = 5.0) -> Forwarder:
    return Forwarder(
        timeout_seconds=timeout_seconds, transport=httpx.MockTransport(handler)
    )


def test_build_upstream_url_strips_router_key_and_keeps_backend_query() -> None:
    url = build_upstream_url(
        "https://rpc.example/?api-key=provider",
        "/",
        [("api-key", "router-secret"), ("trace", "1")],
    )
    parsed = httpx.URL(url)

    assert parsed.host == "rpc.example"
    assert parsed.params.get_list("api-key") == ["provider"]
    assert parsed.params.get("trace") == "1"
    assert "router-secret" not in url


def test_build_upstream_url_backend_params_win_over_inbound() -> None:
    url = build_upstream_url("http://b.test/rpc?region=eu", "/", [("region", "us")])
    assert httpx.URL(url).params.get_list("region") == ["eu"]


def test_build_upstream_url_appends_request_path() -> None:
    assert build_upstream_url("http://b.test/base/", "/v1/rpc", []) == "http://b.test/base/v1/rpc"
    assert build_upstream_url("http://b.test", "/v1", []) == "http://b.test/v1"
    assert build_upstream_url("http://b.test/base?k=v", "/x", [("api-key", "s")]) == (
        "http://b.test/base/x?k=v"
    )


@pytest.mark.parametrize(
    ("backend_url", "expected"),
    [
        ("https://x/?flag", "https://x/?flag&trace=1"),
        ("https://x/?k=a%20b", "https://x/?k=a%20b&trace=1"),
        ("https://x/rpc?api-key=p&flag", "https://x/rpc?api-key=p&flag&trace=1"),
    ],
)
def test_build_upstream_url_keeps_backend_query_verbatim(
    backend_url: str, expected: str
) -> None:
    url = build_upstream_url(backend_url, "/", [("api-key", "s"), ("trace", "1")])
    assert url == expected


def test_build_upstream_url_keeps_encoded_path_segments() -> None:
    assert build_upstream_url("http://b.test/base", "/a%2Fb%3Fc", []) == (
        "http://b.test/base/a%2Fb%3Fc"
    )


def test_build_upstream_headers_drops_hop_by_hop_and_host() -> None:
    headers = build_upstream_headers(
        Headers(
            {
                "host": "router.local",
                "content-type": "application/json",
                "content-length": "10",
                "connection": "keep-alive, x-private",
                "x-private": "1",
                "x-request-id": "req-1",
            }
        )
    )
    names = {name.lower() for name, _ in headers}

    assert "host" not in names
    assert "content-length" not in names
    assert "connection" not in names
    assert "x-private" not in names
    assert ("content-type", "application/json") in headers
    assert ("x-request-id", "req-1") in headers


def test_build_upstream_headers_keeps_caller_accept_encoding() -> None:
    headers = build_upstream_headers(Headers({"accept-encoding": "gzip"}))
    assert headers == [("accept-encoding", "gzip")]


def test_forward_relays_status_headers_and_decoded_body() -> None:
    seen: list[httpx.Request] = []
    compressed = gzip.compress(b'{"jsonrpc":"2.0","id":1,"result":"ok"}')

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            content=compressed,
            headers=[
                ("content-type", "application/json"),
                ("content-encoding", "gzip"),
                ("set-cookie", "a=1"),
                ("set-cookie", "b=2"),
            ],
        )

    async def _run() -> UpstreamResponse:
        forwarder = _forwarder_with(handler)
        try:
            return await forwarder.forward(
                "http://b.test/rpc",
                "POST",
                [("content-type", "application/json")],
                b'{"method":"getSlot"}',
            )
        finally:
            await forwarder.close()

    upstream = asyncio.run(_run())

    assert upstream.status_code == 200
    assert upstream.body == b'{"jsonrpc":"2.0","id":1,"result":"ok"}'
    assert "content-encoding" not in {name.lower() for name, _ in upstream.headers}
    assert ("content-type", "application/json") in upstream.headers
    assert [value for name, value in upstream.headers if name == "set-cookie"] == ["a=1", "b=2"]
    assert seen[0].method == "POST"
    assert seen[0].content == b'{"method":"getSlot"}'
    assert seen[0].headers["content-type"] == "application/json"


def test_forward_relays_upstream_errors_without_raising() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32000}})

    async def _run() -> UpstreamResponse:
        forwarder = _forwarder_with(handler)
        try:
            return await forwarder.forward("http://b.test", "POST", [], b"{}")
        finally:
            await forwarder.close()

    upstream = asyncio.run(_run())
    assert upstream.status_code == 500
    assert b"-32000" in upstream.body


def test_forward_maps_connection_failure_to_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def _run() -> None:
        forwarder = _forwarder_with(handler)
        try:
            await forwarder.forward("http://down.test/?api-key=secret", "POST", [], b"{}")
        finally:
            await forwarder.close()

    with pytest.raises(TransportError) as excinfo:
        asyncio.run(_run())

    assert excinfo.value.error_type == "ConnectError"
    assert excinfo.value.is_timeout is False
    assert excinfo.value.backend == "http://down.test/"
    assert "secret" not in str(excinfo.value.details())


def test_forward_maps_read_timeout_to_timeout_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    async def _run() -> None:
        forwarder = _forwarder_with(handler)
        try:
            await forwarder.forward("http://slow.test", "POST", [], b"{}")
        finally:
            await forwarder.close()

    with pytest.raises(TransportError) as excinfo:
        asyncio.run(_run())
    assert excinfo.value.is_timeout is True


def test_forward_bounds_total_upstream_time() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(2.0)
        return httpx.Response(200)

    async def _run() -> None:
        forwarder = _forwarder_with(handler, timeout_seconds=0.1)
        try:
            await forwarder.forward("http://hung.test", "POST", [], b"{}")
        finally:
            await forwarder.close()

    with pytest.raises(TransportError) as excinfo:
        asyncio.run(_run())
    assert excinfo.value.error_type == "UpstreamTimeout"
    assert excinfo.value.is_timeout is True


def test_gateway_error_response_distinguishes_timeouts() -> None:
    refused = TransportError(backend="b", error_type="ConnectError", message="refused")
    slow = TransportError(backend="b", error_type="ReadTimeout", message="slow", is_timeout=True)

    assert gateway_error_response(refused).status_code == 502
    assert gateway_error_response(slow).status_code == 504
    assert b'"backend":"label-b"' in gateway_error_response(refused, "label-b").body

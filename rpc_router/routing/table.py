from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from itertools import accumulate
from types import MappingProxyType
from urllib.parse import urlsplit

from rpc_router.config import BackendConfig, ConfigError, RouterConfig


def redact_url(url: str) -> str:
    parts = urlsplit(url)
    if not parts.scheme or not parts.hostname:
        return url.split("?", 1)[0]
    host = parts.hostname
    if parts.port is not None:
        host = f"{host}:{parts.port}"
    return f"{parts.scheme}://{host}{parts.path}"


def _is_absolute_http_url(value: str) -> bool:
    parts = urlsplit(value)
    return parts.scheme in {"http", "https"} and bool(parts.netloc)


@dataclass(frozen=True, slots=True)
class Backend:
    url: str
    weight: int = 1
    label: str | None = None

    @property
    def name(self) -> str:
        return self.label or redact_url(self.url)


@dataclass(frozen=True, slots=True)
class RoutingTable:
    backends: tuple[Backend, ...]
    method_routes: Mapping[str, Backend] = field(
        default_factory=lambda: MappingProxyType({})
    )
    cumulative_weights: tuple[int, ...] = ()

    @property
    def total_weight(self) -> int:
        return self.cumulative_weights[-1]

    def route_for(self, method: str | None) -> Backend | None:
        if method is None:
            return None
        return self.method_routes.get(method)


BackendLike = Backend | BackendConfig | tuple[str, int]


def _coerce_backend(item: BackendLike) -> Backend:
    if isinstance(item, Backend):
        return item
    if isinstance(item, BackendConfig):
        return Backend(url=item.url, weight=item.weight, label=item.label)
    url, weight = item
    return Backend(url=url, weight=weight)


def _resolve_override_target(
    method: str, target: str, backends_by_label: Mapping[str, Backend]
) -> Backend:
    normalized = target.strip()
    labelled = backends_by_label.get(normalized)
    if labelled is not None:
        return labelled
    if _is_absolute_http_url(normalized):
        return Backend(url=normalized)
    raise ConfigError(
        f"Method route '{method}' references unknown backend '{target}'. "
        "Use a backend label or an absolute http(s) URL."
    )


def build_routing_table(
    backends: Iterable[BackendLike],
    method_routes: Mapping[str, str] | None = None,
) -> RoutingTable:
    resolved = tuple(_coerce_backend(item) for item in backends)
    if not resolved:
        raise ConfigError("At least one backend must be configured.")
    for backend in resolved:
        if isinstance(backend.weight, bool) or not isinstance(backend.weight, int):
            raise ConfigError(
                f"Backend '{backend.name}' weight must be an integer, got {backend.weight!r}."
            )
        if backend.weight <= 0:
            raise ConfigError(
                f"Backend '{backend.name}' has invalid weight {backend.weight}."
            )

    backends_by_label = {
        backend.label: backend for backend in resolved if backend.label is not None
    }
    routes = {
        method: _resolve_override_target(method, target, backends_by_label)
        for method, target in (method_routes or {}).items()
    }

    return RoutingTable(
        backends=resolved,
        method_routes=MappingProxyType(routes),
        cumulative_weights=tuple(accumulate(backend.weight for backend in resolved)),
    )


def routing_table_from_config(config: RouterConfig) -> RoutingTable:
    return build_routing_table(config.backends, config.method_routes)

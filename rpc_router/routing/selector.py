from __future__ import annotations

import random
import threading
from bisect import bisect_right
from typing import Protocol

from rpc_router.routing.table import Backend, RoutingTable


class RandomSource(Protocol):
    def draw(self) -> float: ...


class ThreadLocalRandomSource:
    """Uniform draws in [0, 1) from one independently seeded generator per thread."""

    def __init__(self) -> None:
        self._local = threading.local()

    def draw(self) -> float:
        generator: random.Random | None = getattr(self._local, "generator", None)
        if generator is None:
            generator = random.Random()
            self._local.generator = generator
        return generator.random()


class WeightedSelector:
    def __init__(
        self,
        routing_table: RoutingTable,
        random_source: RandomSource | None = None,
    ) -> None:
        self._backends = routing_table.backends
        self._cumulative_weights = routing_table.cumulative_weights
        self._total_weight = routing_table.total_weight
        self._random_source = random_source or ThreadLocalRandomSource()

    def select(self) -> Backend:
        if len(self._backends) == 1:
            return self._backends[0]
        point = self._random_source.draw() * self._total_weight
        # smallest i with point < C_i; clamp guards float rounding at the top edge
        index = min(bisect_right(self._cumulative_weights, point), len(self._backends) - 1)
        return self._backends[index]

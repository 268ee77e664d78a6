import math
import threading
import time
from collections import Counter
from collections.abc import Sequence

import numpy as np
import pytest

from pyramid_dataset import HostCommunicationError


class RecordingHost:
    """
    In-memory host store that records every call made to it.

    Level 0 holds ``arange`` data. Every other level is filled with
    ``100 * level + recomputations``, where ``recomputations`` is the number of
    times `persist` has been called, so refetched levels can be told apart.
    """

    def __init__(
        self,
        dimensions: Sequence[int] = (16, 12, 4, 2, 3),
        *,
        n_levels: int = 3,
        dtype: type = np.uint16,
        unit: str = "micrometer",
        extent_min: Sequence[float] = (0.0, 0.0, 0.0),
        extent_max: Sequence[float] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.dimensions = tuple(dimensions)
        self.factors = [(2**level,) * 3 for level in range(n_levels)]
        self.dtype = np.dtype(dtype)
        self.delay = delay
        self.calls: Counter[str] = Counter()
        self.call_log: list[str] = []
        self.fail_on: set[str] = set()
        self.extent_min = list(extent_min)
        self.extent_max = (
            [float(s) for s in self.dimensions[:3]]
            if extent_max is None
            else list(extent_max)
        )
        self.parameters = {
            "Image": {"Name": "recorded", "Filename": "recorded.ims", "Unit": unit}
        }
        self.modified = False
        self.released = False
        self.recomputations = 0
        self._lock = threading.Lock()

        shape0 = self.dimensions
        self.levels = [
            (np.arange(math.prod(shape0)) % 1000).astype(self.dtype).reshape(shape0)
        ]
        self.levels += [
            np.full(self.level_shape(level), 100 * level, dtype=self.dtype)
            for level in range(1, n_levels)
        ]

    def level_shape(self, level: int) -> tuple[int, ...]:
        factors = self.factors[level]
        spatial = tuple(
            math.ceil(s / f) for s, f in zip(self.dimensions[:3], factors, strict=True)
        )
        return (*spatial, *self.dimensions[3:])

    def _record(self, name: str) -> None:
        with self._lock:
            self.calls[name] += 1
            self.call_log.append(name)
        if self.delay:
            time.sleep(self.delay)
        if name in self.fail_on:
            msg = f"{name} failed"
            raise HostCommunicationError(msg)

    def get_host_dimensions(self) -> tuple[int, ...]:
        self._record("get_host_dimensions")
        return self.dimensions

    def get_level_factors(self) -> list[tuple[int, ...]]:
        self._record("get_level_factors")
        return self.factors

    def get_data_type(self) -> np.dtype:
        self._record("get_data_type")
        return self.dtype

    def get_pixel_block(
        self, level: int, offset: Sequence[int], size: Sequence[int]
    ) -> np.ndarray:
        self._record("get_pixel_block")
        region = tuple(slice(o, o + s) for o, s in zip(offset, size, strict=True))
        return self.levels[level][region].copy()

    def set_pixel_block(
        self, level: int, offset: Sequence[int], data: np.ndarray
    ) -> None:
        self._record("set_pixel_block")
        region = tuple(
            slice(o, o + s) for o, s in zip(offset, data.shape, strict=True)
        )
        self.levels[level][region] = data

    def get_channel_range_min(self, channel: int) -> float:
        self._record("get_channel_range_min")
        return 0.0

    def get_channel_range_max(self, channel: int) -> float:
        self._record("get_channel_range_max")
        return 1000.0 + channel

    def get_channel_color(self, channel: int) -> tuple[float, float, float, float]:
        self._record("get_channel_color")
        return ((1.0, 0.0, 0.0, 1.0), (0.0, 1.0, 0.0, 1.0), (0.0, 0.0, 1.0, 1.0))[
            channel % 3
        ]

    def get_parameter(self, category: str, key: str) -> str:
        self._record("get_parameter")
        return self.parameters.get(category, {}).get(key, "")

    def set_parameter(self, category: str, key: str, value: str) -> None:
        self._record("set_parameter")
        self.parameters.setdefault(category, {})[key] = value

    def get_extents(self) -> tuple[list[float], list[float]]:
        self._record("get_extents")
        return list(self.extent_min), list(self.extent_max)

    def set_extents(
        self, extent_min: Sequence[float], extent_max: Sequence[float]
    ) -> None:
        self._record("set_extents")
        self.extent_min = list(extent_min)
        self.extent_max = list(extent_max)

    def set_modified(self, modified: bool) -> None:  # noqa: FBT001
        self._record("set_modified")
        self.modified = modified

    def persist(self) -> None:
        self._record("persist")
        self.recomputations += 1
        for level in range(1, len(self.levels)):
            self.levels[level][...] = 100 * level + self.recomputations

    def release(self) -> None:
        self._record("release")
        self.released = True


@pytest.fixture
def host() -> RecordingHost:
    return RecordingHost()


@pytest.fixture
def make_host() -> type[RecordingHost]:
    return RecordingHost

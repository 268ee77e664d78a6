"""
Lazily materialised resolution pyramid of a host image.
"""

import math
import threading
from collections.abc import Sequence
from concurrent.futures import Future

import numpy as np
from loguru import logger

from pyramid_dataset.dimensions import DatasetDimensions
from pyramid_dataset.exceptions import (
    ConfigurationError,
    HostCommunicationError,
    OutOfRangeError,
)
from pyramid_dataset.host import HostStore


class ImagePyramid:
    """
    Resolution pyramid of a host image, materialised one level at a time.

    Level 0 is the full resolution image. Level ``i`` is down-sampled by
    ``level_factors(i)`` along ``(x, y, z)``. Each level is fetched from the host
    the first time it is requested, laid out in mapped axis order (see
    `DatasetDimensions`), and cached.

    The level 0 array is writable: edits to it are buffered until `persist` is
    called. Arrays of all other levels are read-only.

    Parameters
    ----------
    host :
        Host store serving the pixel data.
    dimensions :
        Host dimensions and axis mapping. Must match ``host``.

    """

    def __init__(self, host: HostStore, dimensions: DatasetDimensions) -> None:
        self._host = host
        self._dimensions = dimensions
        self._factors = self._validate_level_factors(
            host.get_level_factors(), dimensions
        )
        self._dtype = np.dtype(host.get_data_type())

        self._lock = threading.Lock()
        self._cache: dict[int, np.ndarray] = {}
        # Arrays evicted by invalidate(), kept so volatile readers have
        # something to show until the level has been fetched again.
        self._stale: dict[int, np.ndarray] = {}
        self._in_flight: dict[int, Future[np.ndarray]] = {}
        self._generation = 0

    @classmethod
    def _validate_level_factors(
        cls, level_factors: Sequence[Sequence[int]], dimensions: DatasetDimensions
    ) -> tuple[tuple[int, int, int], ...]:
        factors = [tuple(int(f) for f in level) for level in level_factors]
        if not factors:
            msg = "Host reports no resolution levels"
            raise ConfigurationError(msg)
        if any(len(f) != 3 for f in factors):
            msg = f"Level factors must have length 3 (x, y, z), got {factors}"
            raise ConfigurationError(msg)
        if factors[0] != (1, 1, 1):
            msg = f"Level 0 must be full resolution, got factors {factors[0]}"
            raise ConfigurationError(msg)

        spatial_present = dimensions.axis_order.present[:3]
        for level, (previous, current) in enumerate(
            zip(factors[:-1], factors[1:], strict=True), start=1
        ):
            if any(c < p for c, p in zip(current, previous, strict=True)):
                msg = f"Level {level} factors {current} smaller than level {level - 1}"
                raise ConfigurationError(msg)
            if any(
                c < 2 for c, present in zip(current, spatial_present, strict=True)
                if present
            ):
                msg = (
                    f"Level {level} must be down-sampled by at least 2 along every "
                    f"spatial axis, got factors {current}"
                )
                raise ConfigurationError(msg)

        return tuple(factors)  # type: ignore[return-value]

    @property
    def dimensions(self) -> DatasetDimensions:
        return self._dimensions

    def num_resolutions(self) -> int:
        """Number of levels in the pyramid."""
        return len(self._factors)

    def num_timepoints(self) -> int:
        return self._dimensions.num_timepoints

    def get_type(self) -> np.dtype:
        """Pixel data type."""
        return self._dtype

    def _check_level(self, level: int) -> None:
        if not 0 <= level < self.num_resolutions():
            msg = f"Level {level} out of range [0, {self.num_resolutions()})"
            raise OutOfRangeError(msg)

    def level_factors(self, level: int) -> tuple[int, int, int]:
        """Down-sampling factors ``(fx, fy, fz)`` of a level."""
        self._check_level(level)
        return self._factors[level]

    def level_dimensions(self, level: int) -> tuple[int, int, int, int, int]:
        """Size of a level, in host order ``(x, y, z, c, t)``."""
        factors = self.level_factors(level)
        host_dimensions = self._dimensions.host_dimensions
        spatial = tuple(
            math.ceil(s / f) for s, f in zip(host_dimensions[:3], factors, strict=True)
        )
        return (*spatial, host_dimensions[3], host_dimensions[4])  # type: ignore[return-value]

    def get_level(self, level: int) -> np.ndarray:
        """
        Get the array of a level, fetching it from the host if not cached.

        If another thread is already fetching the same level, this waits for it
        and returns its result (or raises its error).
        """
        self._check_level(level)
        with self._lock:
            cached = self._cache.get(level)
            if cached is not None:
                return cached
            future = self._in_flight.get(level)
            loading = future is None
            if future is None:
                future = Future()
                self._in_flight[level] = future
                generation = self._generation

        if not loading:
            logger.debug(f"Waiting for in-flight fetch of level {level}")
            return future.result()

        try:
            array = self._materialize(level)
        except BaseException as exc:
            with self._lock:
                if self._in_flight.get(level) is future:
                    del self._in_flight[level]
            future.set_exception(exc)
            raise

        with self._lock:
            if self._in_flight.get(level) is future:
                del self._in_flight[level]
            # A level invalidated while being fetched may hold pre-edit data,
            # so it is handed to waiters but not cached.
            if level == 0 or generation == self._generation:
                self._cache[level] = array
                self._stale.pop(level, None)
        future.set_result(array)
        return array

    def _materialize(self, level: int) -> np.ndarray:
        size = self.level_dimensions(level)
        logger.info(f"Fetching level {level} with size {size} from host")
        block = np.asarray(self._host.get_pixel_block(level, (0,) * 5, size))
        if block.shape != size:
            msg = (
                f"Host returned block of shape {block.shape} for level {level}, "
                f"expected {size}"
            )
            raise HostCommunicationError(msg)

        array = self._dimensions.to_mapped_array(block)
        if level == 0:
            # Own the buffer that edits are made to
            return np.array(array, dtype=self._dtype)
        array = np.asarray(array, dtype=self._dtype)
        array.flags.writeable = False
        return array

    def is_cached(self, level: int) -> bool:
        self._check_level(level)
        with self._lock:
            return level in self._cache

    def peek_level(self, level: int) -> np.ndarray | None:
        """
        Get a level without fetching it.

        Returns the cached array, or the last array evicted by `invalidate` if
        the level has not been fetched again since, or ``None``.
        """
        self._check_level(level)
        with self._lock:
            cached = self._cache.get(level)
            if cached is not None:
                return cached
            return self._stale.get(level)

    def invalidate(self) -> None:
        """
        Drop all cached levels except level 0.

        Level 0 holds the edits made on this side and stays valid. All other
        levels are fetched from the host again on next access.
        """
        with self._lock:
            self._generation += 1
            levels = [level for level in self._cache if level != 0]
            for level in levels:
                self._stale[level] = self._cache.pop(level)
            for level in [level for level in self._in_flight if level != 0]:
                del self._in_flight[level]
        logger.debug(f"Invalidated pyramid levels {levels}")

    def persist(self) -> None:
        """
        Write edits to level 0 back to the host, and make them durable there.

        Returns once the host has completed.
        """
        with self._lock:
            full_res = self._cache.get(0)
        if full_res is not None:
            logger.info("Writing full resolution data back to host")
            self._host.set_pixel_block(
                0, (0,) * 5, self._dimensions.to_host_array(full_res)
            )
        self._host.persist()
        logger.info("Host persisted")

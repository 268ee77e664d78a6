"""
Per-channel multi-resolution sources, for consumption by viewers.
"""

import threading
from collections.abc import Sequence
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field

import numpy as np
from loguru import logger

from pyramid_dataset.calibration import DatasetCalibration, VoxelDimensions
from pyramid_dataset.exceptions import HostReleasedError, OutOfRangeError
from pyramid_dataset.host import Color
from pyramid_dataset.pyramid import ImagePyramid


def color_table(color: Color, n: int = 256) -> np.ndarray:
    """
    Create a lookup table ramping linearly from black to ``color``.

    Parameters
    ----------
    color :
        RGBA colour, with values in [0, 1]. Alpha is ignored.
    n :
        Number of entries in the table.

    Returns
    -------
    numpy.ndarray
        ``uint8`` array of shape ``(n, 3)``.

    """
    ramp = np.linspace(0, 1, n)[:, np.newaxis]
    rgb = np.clip(np.asarray(color[:3], dtype=np.float64), 0, 1)
    return np.round(ramp * rgb * 255).astype(np.uint8)


@dataclass
class ChannelConverter:
    """Colour and display range used to show a channel."""

    color: Color
    display_min: float
    display_max: float

    def color_table(self) -> np.ndarray:
        return color_table(self.color)


class ChannelSource:
    """
    One channel of a dataset, at every resolution level and timepoint.

    Volumes returned by `get_source` always have three axes ``(x, y, z)``,
    whether or not the dataset has a Z axis.
    """

    def __init__(
        self,
        pyramid: ImagePyramid,
        channel: int,
        name: str,
        calibration: DatasetCalibration,
    ) -> None:
        self._pyramid = pyramid
        self._channel = channel
        self._name = name
        self._transforms_lock = threading.Lock()
        self._transforms: list[np.ndarray] = []
        self._released = False
        self.set_calibration(calibration)

    @property
    def name(self) -> str:
        return self._name

    @property
    def channel(self) -> int:
        return self._channel

    def num_mipmap_levels(self) -> int:
        return self._pyramid.num_resolutions()

    def is_present(self, timepoint: int) -> bool:
        return 0 <= timepoint < self._pyramid.num_timepoints()

    def get_type(self) -> np.dtype:
        return self._pyramid.get_type()

    def set_calibration(self, calibration: DatasetCalibration) -> None:
        """Recompute the per-level transforms from ``calibration``."""
        transforms = [
            calibration.level_transform(self._pyramid.level_factors(level))
            for level in range(self.num_mipmap_levels())
        ]
        with self._transforms_lock:
            self._transforms = transforms

    def get_source_transform(self, timepoint: int, level: int) -> np.ndarray:
        """
        Affine transform from voxel indices of a level to physical coordinates.

        The transform is the same for all timepoints.
        """
        self._check_timepoint(timepoint)
        with self._transforms_lock:
            if not 0 <= level < len(self._transforms):
                msg = f"Level {level} out of range [0, {len(self._transforms)})"
                raise OutOfRangeError(msg)
            return self._transforms[level].copy()

    def _check_timepoint(self, timepoint: int) -> None:
        if not self.is_present(timepoint):
            msg = (
                f"Timepoint {timepoint} out of range "
                f"[0, {self._pyramid.num_timepoints()})"
            )
            raise OutOfRangeError(msg)

    def _check_released(self) -> None:
        if self._released:
            msg = f"Source {self.name!r} has been released"
            raise HostReleasedError(msg)

    def release(self) -> None:
        """Stop reading from the pyramid. Later `get_source` calls raise."""
        self._released = True

    def _slice_volume(self, array: np.ndarray, timepoint: int) -> np.ndarray:
        """Select this channel and ``timepoint`` from a mapped level array."""
        dims = self._pyramid.dimensions.dims
        index = tuple(
            self._channel if d == "c" else timepoint if d == "t" else slice(None)
            for d in dims
        )
        volume = array[index]
        if "z" not in dims:
            volume = volume[:, :, np.newaxis]
        return volume

    def get_source(self, timepoint: int, level: int) -> np.ndarray:
        """Get the ``(x, y, z)`` volume at a timepoint and level."""
        self._check_released()
        self._check_timepoint(timepoint)
        return self._slice_volume(self._pyramid.get_level(level), timepoint)


class VolatileChannelSource(ChannelSource):
    """
    A channel source that never blocks on the host.

    `get_source` returns the volume if its level is available, possibly stale
    after the pyramid was invalidated. Otherwise it starts fetching the level
    in the background and returns ``None``.

    If a background fetch fails, the next `get_source` call for that level
    raises its error. The call after that starts a new fetch.
    """

    def __init__(
        self,
        pyramid: ImagePyramid,
        channel: int,
        name: str,
        calibration: DatasetCalibration,
        executor: Executor,
    ) -> None:
        super().__init__(pyramid, channel, name, calibration)
        self._executor = executor
        self._requests_lock = threading.Lock()
        self._requests: dict[int, Future[np.ndarray]] = {}

    def get_source(self, timepoint: int, level: int) -> np.ndarray | None:  # type: ignore[override]
        self._check_released()
        self._check_timepoint(timepoint)
        if not self._pyramid.is_cached(level):
            self._request(level)
        array = self._pyramid.peek_level(level)
        if array is None:
            return None
        return self._slice_volume(array, timepoint)

    def release(self) -> None:
        with self._requests_lock:
            self._released = True
            self._requests.clear()

    def _request(self, level: int) -> None:
        with self._requests_lock:
            # release() may have run since get_source checked
            self._check_released()
            pending = self._requests.get(level)
            if pending is not None:
                if not pending.done():
                    return
                exc = pending.exception()
                if exc is not None:
                    del self._requests[level]
                    raise exc
            logger.debug(f"Requesting level {level} of {self.name} in background")
            future = self._executor.submit(self._pyramid.get_level, level)
            future.add_done_callback(self._log_failure)
            self._requests[level] = future

    def _log_failure(self, future: "Future[np.ndarray]") -> None:
        exc = future.exception()
        if exc is not None:
            logger.warning(f"Background fetch for {self.name} failed: {exc!r}")


@dataclass
class SourceAndConverter:
    """A source together with the converter used to display it."""

    source: ChannelSource
    converter: ChannelConverter
    volatile: "SourceAndConverter | None" = None


@dataclass(frozen=True)
class ViewSetup:
    """Description of one channel of a dataset."""

    id: int
    name: str
    channel: int
    size: tuple[int, int, int]
    voxel_dimensions: VoxelDimensions


@dataclass
class SpimData:
    """
    Multi-resolution, multi-channel, multi-timepoint view of a dataset.

    Registrations map ``(timepoint, setup id)`` to the full resolution
    transform from voxel indices to physical coordinates.
    """

    sources: list[SourceAndConverter]
    view_setups: list[ViewSetup]
    timepoints: list[int]
    registrations: dict[tuple[int, int], np.ndarray] = field(default_factory=dict)

    def update_registrations(self, calibration: DatasetCalibration) -> None:
        transform = calibration.level_transform((1, 1, 1))
        self.registrations = {
            (t, setup.id): transform.copy()
            for t in self.timepoints
            for setup in self.view_setups
        }


def make_sources(
    pyramid: ImagePyramid,
    name: str,
    calibration: DatasetCalibration,
    converters: Sequence[ChannelConverter],
    executor: Executor,
) -> list[SourceAndConverter]:
    """Create one `SourceAndConverter` per channel, each with a volatile version."""
    sources = []
    for channel, converter in enumerate(converters):
        source_name = f"{name} - ch{channel}"
        volatile = SourceAndConverter(
            VolatileChannelSource(pyramid, channel, source_name, calibration, executor),
            converter,
        )
        sources.append(
            SourceAndConverter(
                ChannelSource(pyramid, channel, source_name, calibration),
                converter,
                volatile=volatile,
            )
        )
    return sources

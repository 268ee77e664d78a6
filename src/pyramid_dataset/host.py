"""
Interface to the host store that owns the pixel data.

The core of this package only talks to the host through `HostStore`, so any
object with these methods can back a `PyramidDataset`. All calls are
synchronous, and failures are expected to be raised as
`pyramid_dataset.exceptions.HostCommunicationError`.
"""

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

import numpy as np
from numpy.typing import DTypeLike

Color = tuple[float, float, float, float]


@runtime_checkable
class HostStore(Protocol):
    """
    A multi-resolution 5D image held by a host application.

    All axis-ordered arguments and return values use host order
    ``(x, y, z, c, t)``, or ``(x, y, z)`` for spatial-only vectors.
    """

    def get_host_dimensions(self) -> Sequence[int]:
        """Size of the full resolution image, ``(x, y, z, c, t)``."""
        ...

    def get_level_factors(self) -> Sequence[Sequence[int]]:
        """Down-sampling factor ``(fx, fy, fz)`` of each resolution level."""
        ...

    def get_data_type(self) -> DTypeLike:
        """Pixel data type."""
        ...

    def get_pixel_block(
        self, level: int, offset: Sequence[int], size: Sequence[int]
    ) -> np.ndarray:
        """Read a 5D block of pixels from a resolution level."""
        ...

    def set_pixel_block(
        self, level: int, offset: Sequence[int], data: np.ndarray
    ) -> None:
        """Write a 5D block of pixels to a resolution level."""
        ...

    def get_channel_range_min(self, channel: int) -> float: ...

    def get_channel_range_max(self, channel: int) -> float: ...

    def get_channel_color(self, channel: int) -> Color:
        """Base colour of a channel, as RGBA values in [0, 1]."""
        ...

    def get_parameter(self, category: str, key: str) -> str: ...

    def set_parameter(self, category: str, key: str, value: str) -> None: ...

    def get_extents(
        self,
    ) -> tuple[Sequence[float], Sequence[float]]:
        """
        Bounding box of the image.

        Returns min corner of the first voxel and max corner of the last voxel,
        each along ``(x, y, z)``.
        """
        ...

    def set_extents(
        self, extent_min: Sequence[float], extent_max: Sequence[float]
    ) -> None: ...

    def set_modified(self, modified: bool) -> None:  # noqa: FBT001
        """Flag whether the host should consider the image modified."""
        ...

    def persist(self) -> None:
        """Make all pixel writes durable, and recompute lower resolution levels."""
        ...

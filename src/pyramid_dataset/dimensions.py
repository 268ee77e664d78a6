"""
Mapping between the 5D host axis order and the mapped array axis order.

The host store always addresses data with five axes ``(x, y, z, c, t)``.
Arrays handed out by this package drop the Z, channel and time axes when they
have size 1, so e.g. a single-channel 2D image is a 2D array. The order of the
remaining axes is the host order.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field

import numpy as np

from pyramid_dataset.exceptions import ConfigurationError, OutOfRangeError

HOST_AXES = ("x", "y", "z", "c", "t")
X, Y, Z, C, T = range(5)


@dataclass(frozen=True)
class AxisOrder:
    """
    Which of the optional axes are present in the mapped array.

    X and Y are always present.
    """

    has_z: bool
    has_channels: bool
    has_timepoints: bool

    @property
    def num_dimensions(self) -> int:
        return 2 + self.has_z + self.has_channels + self.has_timepoints

    @property
    def present(self) -> tuple[bool, bool, bool, bool, bool]:
        """Presence flag of each host axis."""
        return (True, True, self.has_z, self.has_channels, self.has_timepoints)


@dataclass(frozen=True)
class DatasetDimensions:
    """
    Size of a 5D host dataset, and how it maps to the array dimensions.

    Parameters
    ----------
    host_dimensions :
        Sizes in host order ``(x, y, z, c, t)``. Must have length 5 and all sizes
        must be at least 1.

    """

    host_dimensions: tuple[int, int, int, int, int]
    axis_order: AxisOrder = field(init=False)
    _host_to_mapped: tuple[int | None, ...] = field(init=False, repr=False)
    _mapped_to_host: tuple[int, ...] = field(init=False, repr=False)

    def __init__(self, host_dimensions: Sequence[int]) -> None:
        host_dimensions = tuple(int(s) for s in host_dimensions)
        if len(host_dimensions) != 5:
            msg = (
                f"Host dimensions must have length 5 (x, y, z, c, t), "
                f"got {len(host_dimensions)}"
            )
            raise ConfigurationError(msg)
        if any(s < 1 for s in host_dimensions):
            msg = f"All host dimensions must be >= 1, got {host_dimensions}"
            raise ConfigurationError(msg)

        axis_order = AxisOrder(
            has_z=host_dimensions[Z] > 1,
            has_channels=host_dimensions[C] > 1,
            has_timepoints=host_dimensions[T] > 1,
        )
        host_to_mapped: list[int | None] = []
        mapped_to_host: list[int] = []
        for host_axis, present in enumerate(axis_order.present):
            if present:
                host_to_mapped.append(len(mapped_to_host))
                mapped_to_host.append(host_axis)
            else:
                host_to_mapped.append(None)

        object.__setattr__(self, "host_dimensions", host_dimensions)
        object.__setattr__(self, "axis_order", axis_order)
        object.__setattr__(self, "_host_to_mapped", tuple(host_to_mapped))
        object.__setattr__(self, "_mapped_to_host", tuple(mapped_to_host))

    @property
    def num_dimensions(self) -> int:
        """Number of dimensions of the mapped array."""
        return self.axis_order.num_dimensions

    @property
    def dims(self) -> tuple[str, ...]:
        """Labels of the mapped array dimensions."""
        return tuple(HOST_AXES[a] for a in self._mapped_to_host)

    @property
    def num_channels(self) -> int:
        return self.host_dimensions[C]

    @property
    def num_timepoints(self) -> int:
        return self.host_dimensions[T]

    def to_mapped(self, host_axis: int) -> int | None:
        """
        Get the mapped dimension of a host axis.

        Returns ``None`` if the host axis is not present in the mapped array.
        """
        if not 0 <= host_axis < 5:
            msg = f"Host axis {host_axis} out of range [0, 5)"
            raise OutOfRangeError(msg)
        return self._host_to_mapped[host_axis]

    def to_host(self, mapped_axis: int) -> int:
        """Get the host axis of a mapped dimension."""
        if not 0 <= mapped_axis < self.num_dimensions:
            msg = f"Mapped axis {mapped_axis} out of range [0, {self.num_dimensions})"
            raise OutOfRangeError(msg)
        return self._mapped_to_host[mapped_axis]

    def mapped_shape(self, host_shape: Sequence[int]) -> tuple[int, ...]:
        """Drop the sizes of absent axes from a 5D host shape."""
        return tuple(int(host_shape[a]) for a in self._mapped_to_host)

    def to_mapped_array(self, block: np.ndarray) -> np.ndarray:
        """
        Lay out a 5D host-ordered block in mapped order.

        Absent axes have size 1 in the host block and are squeezed out.
        """
        if block.ndim != 5:
            msg = f"Host blocks must be 5-dimensional, got {block.ndim} dimensions"
            raise ValueError(msg)
        absent = tuple(a for a, m in enumerate(self._host_to_mapped) if m is None)
        return np.squeeze(block, axis=absent)

    def to_host_array(self, array: np.ndarray) -> np.ndarray:
        """Inverse of `to_mapped_array`, restoring the 5D host layout."""
        if array.ndim != self.num_dimensions:
            msg = (
                f"Expected a {self.num_dimensions}-dimensional array, "
                f"got {array.ndim} dimensions"
            )
            raise ValueError(msg)
        absent = tuple(a for a, m in enumerate(self._host_to_mapped) if m is None)
        return np.expand_dims(array, axis=absent)

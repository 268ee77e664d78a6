"""
Physical calibration of a dataset.

Two conventions for spatial coordinates are in use:

* The host store describes the bounding box of the data with *extents*. The
  min extent is the min corner of the first voxel, and the max extent is the
  max corner of the last voxel.
* Arrays handed out by this package use the *voxel-centre* convention, where
  a coordinate refers to the centre of a voxel.

All conversion between the two lives in this module.
"""

from collections.abc import Sequence
from typing import TYPE_CHECKING, NamedTuple

import numpy as np
from loguru import logger

if TYPE_CHECKING:
    from pyramid_dataset.host import HostStore

Vector3 = tuple[float, float, float]


class VoxelDimensions(NamedTuple):
    """Unit and voxel size of the X, Y, Z axes."""

    unit: str
    size: Vector3


class DatasetCalibration:
    """
    Unit, voxel size and min coordinate of the X, Y, Z axes.

    Parameters
    ----------
    unit :
        Unit of the voxel size and min coordinate.
    voxel_size :
        Size of a single voxel along X, Y, Z. All entries must be > 0.
    min :
        Coordinate of the centre of the first voxel along X, Y, Z.

    """

    def __init__(
        self,
        unit: str = "pixel",
        voxel_size: Sequence[float] = (1.0, 1.0, 1.0),
        min: Sequence[float] = (0.0, 0.0, 0.0),  # noqa: A002
    ) -> None:
        self._unit = unit
        self._voxel_size = self._validate_voxel_size(voxel_size)
        self._min = self._validate_vector(min, "min")

    @classmethod
    def _validate_vector(cls, vector: Sequence[float], name: str) -> Vector3:
        if len(vector) != 3:
            msg = f"{name} must be length 3"
            raise ValueError(msg)
        return (float(vector[0]), float(vector[1]), float(vector[2]))

    @classmethod
    def _validate_voxel_size(cls, voxel_size: Sequence[float]) -> Vector3:
        voxel_size = cls._validate_vector(voxel_size, "voxel_size")
        if not all(s > 0 for s in voxel_size):
            msg = f"voxel_size must be > 0 along every axis, got {voxel_size}"
            raise ValueError(msg)
        return voxel_size

    @classmethod
    def from_extents(
        cls,
        unit: str,
        extent_min: Sequence[float],
        extent_max: Sequence[float],
        size: Sequence[int],
    ) -> "DatasetCalibration":
        """
        Create a calibration from host extents.

        Parameters
        ----------
        unit :
            Unit of the extents.
        extent_min, extent_max :
            Min corner of the first voxel and max corner of the last voxel,
            along X, Y, Z.
        size :
            Host dimensions. Only the first three entries (X, Y, Z) are used.

        """
        calib = cls(unit)
        calib.set_extents(
            unit,
            extent_min[0],
            extent_max[0],
            extent_min[1],
            extent_max[1],
            extent_min[2],
            extent_max[2],
            size,
        )
        return calib

    @classmethod
    def from_host(cls, host: "HostStore", size: Sequence[int]) -> "DatasetCalibration":
        """Read the calibration from the host extents and ``Image > Unit``."""
        extent_min, extent_max = host.get_extents()
        unit = host.get_parameter("Image", "Unit") or "pixel"
        return cls.from_extents(unit, extent_min, extent_max, size)

    def unit(self) -> str:
        return self._unit

    def voxel_size(self, axis: int | None = None) -> Vector3 | float:
        """Voxel size of all axes, or of a single ``axis`` if given."""
        if axis is None:
            return self._voxel_size
        return self._voxel_size[axis]

    def min(self, axis: int | None = None) -> Vector3 | float:
        """Voxel-centre min coordinate of all axes, or of a single ``axis``."""
        if axis is None:
            return self._min
        return self._min[axis]

    def voxel_dimensions(self) -> VoxelDimensions:
        return VoxelDimensions(self._unit, self._voxel_size)

    def set_extents(  # noqa: PLR0913
        self,
        unit: str,
        extent_min_x: float,
        extent_max_x: float,
        extent_min_y: float,
        extent_max_y: float,
        extent_min_z: float,
        extent_max_z: float,
        size: Sequence[int],
    ) -> None:
        """
        Set unit, voxel size and min coordinate from host extents.

        Extents of an axis with size 1 beyond X and Y (ie. a 2D dataset) are
        ignored, and the current voxel size and min of that axis are kept.
        """
        extents = (
            (extent_min_x, extent_max_x),
            (extent_min_y, extent_max_y),
            (extent_min_z, extent_max_z),
        )
        voxel_size = list(self._voxel_size)
        min_ = list(self._min)
        for axis, (emin, emax) in enumerate(extents):
            n = int(size[axis])
            if axis == 2 and n == 1:
                continue
            voxel_size[axis] = (float(emax) - float(emin)) / n
            min_[axis] = float(emin) + voxel_size[axis] / 2

        self._voxel_size = self._validate_voxel_size(voxel_size)
        self._min = tuple(min_)  # type: ignore[assignment]
        self._unit = unit

    def set_voxel_size(self, voxel_size: Sequence[float], unit: str | None = None) -> None:
        """Set the voxel size (and optionally the unit). The min is kept."""
        self._voxel_size = self._validate_voxel_size(voxel_size)
        if unit is not None:
            self._unit = unit

    def set_min(self, min_x: float, min_y: float, min_z: float) -> None:
        """Set the voxel-centre min coordinate. The voxel size is kept."""
        self._min = self._validate_vector((min_x, min_y, min_z), "min")

    def set(self, other: "DatasetCalibration") -> None:
        """Copy unit, voxel size and min from ``other``."""
        self._unit = other._unit
        self._voxel_size = other._voxel_size
        self._min = other._min

    def copy(self) -> "DatasetCalibration":
        return DatasetCalibration(self._unit, self._voxel_size, self._min)

    def extent_min(self) -> Vector3:
        """Min corner of the first voxel (host convention)."""
        return tuple(  # type: ignore[return-value]
            m - v / 2 for m, v in zip(self._min, self._voxel_size, strict=True)
        )

    def extent_max(self, size: Sequence[int]) -> Vector3:
        """Max corner of the last voxel (host convention)."""
        return tuple(  # type: ignore[return-value]
            m + (int(n) - 1) * v + v / 2
            for m, v, n in zip(self._min, self._voxel_size, size[:3], strict=True)
        )

    def apply_to_host(self, host: "HostStore", size: Sequence[int]) -> None:
        """Push unit and extents to the host."""
        extent_min = self.extent_min()
        extent_max = self.extent_max(size)
        logger.info(
            f"Pushing calibration to host: unit={self._unit}, "
            f"extents={extent_min} -> {extent_max}"
        )
        host.set_parameter("Image", "Unit", self._unit)
        host.set_extents(extent_min, extent_max)

    def axis_coordinates(self, axis: int, n: int) -> np.ndarray:
        """Physical voxel-centre coordinates of ``n`` voxels along ``axis``."""
        return self._min[axis] + np.arange(n, dtype=np.float64) * self._voxel_size[axis]

    def level_voxel_size(self, factors: Sequence[int]) -> Vector3:
        """Voxel size of a pyramid level down-sampled by ``factors``."""
        return tuple(  # type: ignore[return-value]
            v * f for v, f in zip(self._voxel_size, factors, strict=True)
        )

    def level_min(self, factors: Sequence[int]) -> Vector3:
        """
        Centre of the first voxel of a pyramid level down-sampled by ``factors``.

        A level voxel covers ``f`` full resolution voxels, so its centre is
        ``(f - 1) / 2`` full resolution voxels beyond the full resolution min.
        """
        return tuple(  # type: ignore[return-value]
            m + (f - 1) / 2 * v
            for m, v, f in zip(self._min, self._voxel_size, factors, strict=True)
        )

    def level_transform(self, factors: Sequence[int]) -> np.ndarray:
        """
        Affine transform from level voxel indices to physical coordinates.

        Returns
        -------
        numpy.ndarray
            4x4 homogeneous matrix acting on ``(x, y, z, 1)``.

        """
        transform = np.eye(4)
        transform[:3, :3] = np.diag(self.level_voxel_size(factors))
        transform[:3, 3] = self.level_min(factors)
        return transform

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DatasetCalibration):
            return NotImplemented
        return (
            self._unit == other._unit
            and self._voxel_size == other._voxel_size
            and self._min == other._min
        )

    def __repr__(self) -> str:
        return (
            f"DatasetCalibration(unit={self._unit!r}, "
            f"voxel_size={self._voxel_size}, min={self._min})"
        )

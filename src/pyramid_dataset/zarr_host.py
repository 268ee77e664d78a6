"""
A host store backed by a local OME-Zarr multiscale group.
"""

import copy
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import dask.array as da
import numpy as np
import zarr
import zarr.errors
import zarr.storage
from joblib import Parallel
from loguru import logger
from numpy.typing import DTypeLike
from ome_zarr_models.common.omero import Channel, Omero, Window
from ome_zarr_models.v05 import Image
from ome_zarr_models.v05.axes import Axis
from ome_zarr_models.v05.image import ImageAttrs
from ome_zarr_models.v05.multiscales import Dataset, Multiscale
from pydantic_zarr.v3 import ArraySpec

from pyramid_dataset._array_helpers import _copy_slab, _downsample_block
from pyramid_dataset.calibration import DatasetCalibration
from pyramid_dataset.exceptions import (
    ConfigurationError,
    HostCommunicationError,
    OutOfRangeError,
)
from pyramid_dataset.host import Color
from pyramid_dataset.ome_ngff import normalize_unit

# Arrays are stored in OME-NGFF axis order, and presented in host order.
DIMENSION_NAMES = ("t", "c", "z", "y", "x")
DEFAULT_CHANNEL_COLORS = ("FF0000", "00FF00", "0000FF", "FF00FF", "00FFFF", "FFFF00")


def _to_store_order(host_vector: Sequence[int]) -> tuple[int, ...]:
    return tuple(host_vector[::-1])


@contextmanager
def _host_errors(action: str) -> Iterator[None]:
    """
    Raise errors from the zarr store as `HostCommunicationError`.

    Only filesystem and zarr errors are converted; zarr raises `KeyError` for
    group members missing from the store. Anything else is a bug in the
    caller, and propagates unchanged.
    """
    try:
        yield
    except (OSError, KeyError, zarr.errors.BaseZarrError) as exc:
        msg = f"Failed to {action}: {exc}"
        raise HostCommunicationError(msg) from exc


def _axes(unit: str) -> list[Axis]:
    ome_unit = normalize_unit(unit)
    return [
        Axis(name="t", type="time"),
        Axis(name="c", type="channel"),
        *(Axis(name=d, type="space", unit=ome_unit) for d in ("z", "y", "x")),
    ]


def _level_transform(
    calib: DatasetCalibration, level: int
) -> tuple[list[float], list[float]]:
    """Scale and translation of a level, in store order."""
    factors = (2**level,) * 3
    scale = calib.level_voxel_size(factors)
    translation = calib.level_min(factors)
    return (
        [1.0, 1.0, *(float(s) for s in scale[::-1])],
        [0.0, 0.0, *(float(t) for t in translation[::-1])],
    )


def _default_window(dtype: np.dtype) -> dict[str, float]:
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        return {"min": float(info.min), "max": float(info.max), "start": 0.0,
                "end": float(info.max)}
    return {"min": 0.0, "max": 1.0, "start": 0.0, "end": 1.0}


class ZarrHostStore:
    """
    A 5D multi-resolution image stored as an OME-Zarr multiscale group.

    Level 0 is the full resolution image, and level ``i`` is downsampled by a
    factor of ``2**i`` along x, y and z using local mean. Arrays are stored
    with dimensions ``(t, c, z, y, x)``; all methods of the `HostStore`
    interface use the host order ``(x, y, z, c, t)``.

    Parameters
    ----------
    path :
        Path to zarr group on disk.
    name :
        Name to save to zarr group.
    voxel_size :
        Size of a single voxel along (x, y, z), in units of spatial_unit.
    spatial_unit :
        Units of the voxel size.
    shape :
        Size of the full resolution image, ``(x, y, z, c, t)``.
    dtype :
        Data type of the image.
    chunks :
        Chunk shape along ``(x, y, z)``. Defaults to 64 voxels along each axis,
        or the size of the axis if smaller.
    n_processes :
        Number of parallel jobs used to recompute the resolution pyramid.

    Notes
    -----
    ``name``, ``voxel_size``, ``shape`` and ``dtype`` are only needed when
    creating a new group.

    """

    def __init__(
        self,
        path: Path,
        *,
        name: str | None = None,
        voxel_size: tuple[float, float, float] | None = None,
        spatial_unit: str = "micrometer",
        shape: tuple[int, int, int, int, int] | None = None,
        dtype: DTypeLike | None = None,
        chunks: tuple[int, int, int] | None = None,
        n_processes: int = 1,
    ) -> None:
        self._store = zarr.storage.LocalStore(path)
        self._path = path
        self._n_processes = n_processes
        self._lock = threading.RLock()

        if isinstance(path, Path) and not path.exists():
            if name is None or voxel_size is None or shape is None or dtype is None:
                msg = (
                    "Group does not already exist, name, voxel_size, shape and "
                    "dtype must be provided"
                )
                raise ValueError(msg)
            self._create_zarr_group(
                name=name,
                voxel_size=voxel_size,
                spatial_unit=spatial_unit,
                shape=shape,
                dtype=dtype,
                chunks=chunks,
            )

        with _host_errors(f"open zarr group at {path}"):
            self._group = zarr.open_group(store=self._store, mode="r+")
        if "ome" not in self._group.attrs or "host" not in self._group.attrs:
            msg = f"{path} is not a multiscale group written by pyramid-dataset"
            raise ConfigurationError(msg)

    def __repr__(self) -> str:
        return f"ZarrHostStore({self._path!r})"

    @classmethod
    def _validate_shape(
        cls, shape: Sequence[int]
    ) -> tuple[int, int, int, int, int]:
        if len(shape) != 5:
            msg = "shape must be length 5 (x, y, z, c, t)"
            raise ValueError(msg)
        if any(s < 1 for s in shape):
            msg = f"All entries of shape must be >= 1, got {tuple(shape)}"
            raise ValueError(msg)
        return tuple(int(s) for s in shape)  # type: ignore[return-value]

    def _create_zarr_group(
        self,
        *,
        name: str,
        voxel_size: tuple[float, float, float],
        spatial_unit: str,
        shape: Sequence[int],
        dtype: DTypeLike,
        chunks: tuple[int, int, int] | None,
    ) -> None:
        """Create the zarr group, with an empty full resolution array."""
        shape = self._validate_shape(shape)
        calib = DatasetCalibration(
            spatial_unit, voxel_size, tuple(v / 2 for v in voxel_size)
        )
        if chunks is None:
            chunks = tuple(min(64, s) for s in shape[:3])  # type: ignore[assignment]
        dtype = np.dtype(dtype)
        n_channels = shape[3]

        # Only the shape and dtype of the template are used, so it takes no memory
        template = np.broadcast_to(np.zeros((), dtype=dtype), _to_store_order(shape))
        array_spec = ArraySpec.from_array(
            template,
            chunk_grid={
                "name": "regular",
                "configuration": {"chunk_shape": (1, 1, *_to_store_order(chunks))},
            },
            fill_value=0,
            dimension_names=DIMENSION_NAMES,
        )
        scale, translation = _level_transform(calib, 0)
        image = Image.new(
            array_specs=[array_spec],
            paths=["0"],
            axes=_axes(spatial_unit),
            name=name,
            multiscale_type="local mean",
            metadata={
                "description": "Downscaled using local mean in 2x2x2 blocks.",
                "method": "skimage.measure.block_reduce",
                "kwargs": {"block_size": 2, "func": "np.mean"},
            },
            scales=[scale],
            translations=[translation],
        )
        group = image.to_zarr(store=self._store, path="/")
        group.attrs["host"] = {
            "extent_min": list(calib.extent_min()),
            "extent_max": list(calib.extent_max(shape)),
            "modified": False,
            "parameters": {
                "Image": {
                    "Name": name,
                    "Filename": str(self._path),
                    "Unit": spatial_unit,
                }
            },
        }
        omero = Omero(
            channels=[
                Channel(
                    label=f"Channel {c}",
                    color=DEFAULT_CHANNEL_COLORS[c % len(DEFAULT_CHANNEL_COLORS)],
                    window=Window(**_default_window(dtype)),
                    active=True,
                )
                for c in range(n_channels)
            ]
        )
        self._group = group
        self._write_multiscale_metadata(omero)

    # Group structure

    @property
    def levels(self) -> list[int]:
        """
        List of downsample levels currently stored.

        Level 0 corresponds to full resolution data, and level ``i`` to
        data downsampled by a factor of ``2**i``.
        """
        return sorted(int(k) for k in self._group)

    def __getitem__(self, level: int) -> zarr.Array:
        """
        Get zarr Array for a given level.
        """
        if level not in self.levels:
            msg = f"Given level {level} not in added levels {self.levels}"
            raise ValueError(msg)

        return self._group[str(level)]

    def _get_host_attrs(self) -> dict[str, Any]:
        return copy.deepcopy(self._group.attrs["host"])

    def _set_host_attrs(self, host_attrs: dict[str, Any]) -> None:
        with _host_errors("write host metadata"):
            self._group.attrs["host"] = host_attrs

    def _calibration(self) -> DatasetCalibration:
        host_attrs = self._get_host_attrs()
        return DatasetCalibration.from_extents(
            host_attrs["parameters"]["Image"].get("Unit", "pixel"),
            host_attrs["extent_min"],
            host_attrs["extent_max"],
            self.get_host_dimensions(),
        )

    def _write_multiscale_metadata(self, omero: Omero | None = None) -> None:
        """
        Write axes and coordinate transformations of all levels.

        Transformations are derived from the current extents, so this needs
        re-running every time the extents or the levels change. The name, type
        and metadata of the multiscale, and the omero channels, are kept unless
        ``omero`` is given.
        """
        calib = self._calibration()
        with _host_errors("read multiscale metadata"):
            ome = dict(self._group.attrs["ome"])
        current = ImageAttrs.model_validate(ome).multiscales[0]
        if omero is None:
            omero = Omero.model_validate(ome["omero"])

        datasets = []
        for level in self.levels:
            scale, translation = _level_transform(calib, level)
            datasets.append(
                Dataset.build(path=str(level), scale=scale, translation=translation)
            )
        image_attrs = ImageAttrs(
            version="0.5",
            multiscales=[
                Multiscale(
                    axes=_axes(calib.unit()),
                    datasets=tuple(datasets),
                    name=current.name,
                    type=current.type,
                    metadata=current.metadata,
                )
            ],
            omero=omero.model_dump(mode="json"),
        )
        with _host_errors("write multiscale metadata"):
            self._group.attrs["ome"] = image_attrs.model_dump(
                mode="json", exclude_none=True
            )

    def add_full_res_data(
        self,
        data: da.Array | np.ndarray,
        *,
        n_processes: int,
    ) -> None:
        """
        Add the 'original' full resolution data to this group.

        Parameters
        ----------
        data :
            Input data, with dimensions ``(x, y, z, c, t)`` and the shape of the
            full resolution image.
        n_processes :
            Number of parallel processes to use to read/write data.

        """
        data = da.asarray(data)
        arr_zarr = self[0]
        expected_shape = self.get_host_dimensions()
        if tuple(data.shape) != tuple(expected_shape):
            msg = f"Input data has shape {data.shape}, expected {expected_shape}"
            raise ValueError(msg)

        chunk_size = arr_zarr.chunks[2]
        nx, ny, nz, nc, nt = expected_shape
        all_args = [
            (
                arr_zarr,
                data[:, :, zmin : min(zmin + chunk_size, nz), c, t],
                t,
                c,
                zmin,
                min(zmin + chunk_size, nz),
            )
            for t in range(nt)
            for c in range(nc)
            for zmin in range(0, nz, chunk_size)
        ]

        logger.info("Starting full resolution copy to zarr...")
        jobs = [_copy_slab(*args) for args in all_args]
        Parallel(n_jobs=n_processes, prefer="threads")(jobs)
        logger.info("Finished full resolution copy to zarr.")

    def add_downsample_level(self, level: int, *, n_processes: int) -> None:
        """
        Add a level of downsampling.

        Parameters
        ----------
        level :
            Level of downsampling. Level ``i`` corresponds to a downsampling factor
            of ``2**i``.
        n_processes :
            Number of parallel jobs to use to read/write data. See the
            joblib.Parallel documentation for more info of allowed values.

        Notes
        -----
        To add level ``i`` to the zarr group, level ``i - 1`` must first have been
        added.

        """
        logger.info(f"Downsampling to level {level} with {n_processes=}")
        if not (level >= 1 and int(level) == level):
            msg = "level must be an integer >= 1"
            raise ValueError(msg)

        level_str = str(int(level))
        if level_str in self._group:
            msg = f"Level {level_str} already found in zarr group"
            raise RuntimeError(msg)

        if (level_minus_one := str(int(level) - 1)) not in self._group:
            msg = f"Level below (level={level_minus_one}) not present in group."
            raise RuntimeError(msg)

        source_arr: zarr.Array = self._group[level_minus_one]
        new_shape = source_arr.shape[:2] + tuple(
            -(-i // 2) for i in source_arr.shape[2:]
        )
        self._group.create_array(
            name=level_str,
            shape=new_shape,
            chunks=source_arr.chunks,
            dtype=source_arr.dtype,
            fill_value=0,
            dimension_names=DIMENSION_NAMES,
        )
        self._downsample(int(level), n_processes=n_processes)
        self._write_multiscale_metadata()

    def _downsample(self, level: int, *, n_processes: int) -> None:
        """(Re)compute a level from the level below it."""
        source_arr: zarr.Array = self._group[str(level - 1)]
        sink_arr: zarr.Array = self._group[str(level)]
        nt, nc, nz, ny, nx = sink_arr.shape
        _, _, cz, cy, cx = sink_arr.chunks
        block_indices = [
            (t, c, z, y, x)
            for t in range(nt)
            for c in range(nc)
            for z in range(0, nz, cz)
            for y in range(0, ny, cy)
            for x in range(0, nx, cx)
        ]
        all_args = [(source_arr, sink_arr, idxs) for idxs in block_indices]

        logger.info(f"Starting downsampling from level {level - 1} > {level}...")
        jobs = [_downsample_block(*args) for args in all_args]
        logger.info(f"Launching {len(jobs)} jobs")
        Parallel(n_jobs=n_processes, prefer="threads")(jobs)
        logger.info(f"Finished downsampling from level {level - 1} > {level}")

    # HostStore interface

    def get_host_dimensions(self) -> tuple[int, int, int, int, int]:
        return _to_store_order(self._group["0"].shape)  # type: ignore[return-value]

    def get_level_factors(self) -> list[tuple[int, int, int]]:
        return [(2**level,) * 3 for level in self.levels]  # type: ignore[misc]

    def get_data_type(self) -> np.dtype:
        return np.dtype(self._group["0"].dtype)

    def _region(
        self, level: int, offset: Sequence[int], size: Sequence[int]
    ) -> tuple[slice, ...]:
        if len(offset) != 5 or len(size) != 5:
            msg = "offset and size must be length 5 (x, y, z, c, t)"
            raise ValueError(msg)
        if level not in self.levels:
            msg = f"Level {level} not in levels {self.levels}"
            raise OutOfRangeError(msg)
        return tuple(
            slice(o, o + s)
            for o, s in zip(_to_store_order(offset), _to_store_order(size), strict=True)
        )

    def get_pixel_block(
        self, level: int, offset: Sequence[int], size: Sequence[int]
    ) -> np.ndarray:
        region = self._region(level, offset, size)
        with _host_errors(f"read level {level}"):
            block = self._group[str(level)][region]
        return np.asarray(block).transpose(4, 3, 2, 1, 0)

    def set_pixel_block(
        self, level: int, offset: Sequence[int], data: np.ndarray
    ) -> None:
        region = self._region(level, offset, data.shape)
        with self._lock, _host_errors(f"write level {level}"):
            self._group[str(level)][region] = np.asarray(data).transpose(4, 3, 2, 1, 0)
        self.set_modified(True)

    def _omero_channel(self, channel: int) -> dict[str, Any]:
        channels = self._group.attrs["ome"]["omero"]["channels"]
        if not 0 <= channel < len(channels):
            msg = f"Channel {channel} out of range [0, {len(channels)})"
            raise OutOfRangeError(msg)
        return channels[channel]

    def get_channel_range_min(self, channel: int) -> float:
        return float(self._omero_channel(channel)["window"]["start"])

    def get_channel_range_max(self, channel: int) -> float:
        return float(self._omero_channel(channel)["window"]["end"])

    def get_channel_color(self, channel: int) -> Color:
        color = self._omero_channel(channel)["color"]
        r, g, b = (int(color[i : i + 2], 16) / 255 for i in (0, 2, 4))
        return (r, g, b, 1.0)

    def get_parameter(self, category: str, key: str) -> str:
        parameters = self._get_host_attrs()["parameters"]
        return str(parameters.get(category, {}).get(key, ""))

    def set_parameter(self, category: str, key: str, value: str) -> None:
        with self._lock:
            host_attrs = self._get_host_attrs()
            host_attrs["parameters"].setdefault(category, {})[key] = value
            self._set_host_attrs(host_attrs)

    def get_extents(self) -> tuple[list[float], list[float]]:
        host_attrs = self._get_host_attrs()
        return host_attrs["extent_min"], host_attrs["extent_max"]

    def set_extents(
        self, extent_min: Sequence[float], extent_max: Sequence[float]
    ) -> None:
        with self._lock:
            host_attrs = self._get_host_attrs()
            host_attrs["extent_min"] = [float(e) for e in extent_min]
            host_attrs["extent_max"] = [float(e) for e in extent_max]
            self._set_host_attrs(host_attrs)
            self._write_multiscale_metadata()

    def is_modified(self) -> bool:
        return bool(self._get_host_attrs()["modified"])

    def set_modified(self, modified: bool) -> None:  # noqa: FBT001
        with self._lock:
            host_attrs = self._get_host_attrs()
            host_attrs["modified"] = bool(modified)
            self._set_host_attrs(host_attrs)

    def persist(self) -> None:
        """Recompute all downsampled levels from the full resolution data."""
        with self._lock:
            for level in self.levels[1:]:
                self._downsample(level, n_processes=self._n_processes)
            self._write_multiscale_metadata()

    def release(self) -> None:
        self._store.close()


def open_host_store(path: Path, *, n_processes: int = 1) -> ZarrHostStore:
    """
    Open a previously created multiscale zarr group.

    Parameters
    ----------
    path :
        Path to existing group.
    n_processes :
        Number of parallel jobs used to recompute the resolution pyramid.

    """
    path = Path(path)
    if not path.exists():
        msg = f"No multiscale group found at {path}"
        raise HostCommunicationError(msg)
    return ZarrHostStore(path, n_processes=n_processes)

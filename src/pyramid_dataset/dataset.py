"""
A host image exposed as arrays, sources and datasets.
"""

import dataclasses
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from types import TracebackType

import numpy as np
import xarray as xr
from loguru import logger

from pyramid_dataset.calibration import DatasetCalibration, VoxelDimensions
from pyramid_dataset.config import DatasetOptions
from pyramid_dataset.dimensions import DatasetDimensions
from pyramid_dataset.exceptions import (
    CalibrationSyncError,
    ConfigurationError,
    HostCommunicationError,
    HostReleasedError,
    NotWritableError,
    OutOfRangeError,
)
from pyramid_dataset.host import Color, HostStore
from pyramid_dataset.pyramid import ImagePyramid
from pyramid_dataset.sources import (
    ChannelConverter,
    SourceAndConverter,
    SpimData,
    ViewSetup,
    make_sources,
)
from pyramid_dataset.zarr_host import open_host_store

SPATIAL_DIMS = ("x", "y", "z")


class PyramidDataset:
    """
    A 5D (XYZCT) multi-resolution host image.

    The image is available as

    - a calibrated `xarray.DataArray` of the full resolution image (`as_array`),
    - an `xarray.Dataset` wrapping that array (`as_dataset`),
    - a list of multi-resolution sources, one per channel (`as_sources`),
    - a `SpimData` combining the sources with calibration and timepoints
      (`as_spim_data`).

    All of these are created on first access and then reused.

    Parameters
    ----------
    host :
        Host store holding the image.
    name :
        Name of the dataset. Defaults to the ``Image > Name`` host parameter.
    writable :
        Whether modifications may be written to the host. If ``False``, all
        modifying methods raise `NotWritableError`.
    fetch_threads :
        Number of threads volatile sources use to fetch levels in the background.

    """

    def __init__(
        self,
        host: HostStore,
        name: str | None = None,
        *,
        writable: bool = False,
        fetch_threads: int = 2,
    ) -> None:
        self._host = host
        self._writable = writable
        self._fetch_threads = fetch_threads

        # Dimensions of the dataset, and how they map to array dimensions
        self._dimensions = DatasetDimensions(host.get_host_dimensions())
        if name is None:
            name = host.get_parameter("Image", "Name") or "image"
        self._name = name
        # Only a single pyramid is supported for now, but datasets are keyed by
        # channel group so several pyramids can be combined later.
        self._pyramids = {name: ImagePyramid(host, self._dimensions)}

        # Physical calibration, with min in the voxel-centre convention
        try:
            self._calibration = DatasetCalibration.from_host(
                host, self._dimensions.host_dimensions
            )
        except ValueError as exc:
            msg = f"Host calibration of {name!r} is invalid: {exc}"
            raise ConfigurationError(msg) from exc

        self._calibration_lock = threading.RLock()
        self._array_lock = threading.Lock()
        self._dataset_lock = threading.Lock()
        self._sources_lock = threading.Lock()
        self._converters_lock = threading.Lock()

        self._converters: list[ChannelConverter] | None = None
        self._array: xr.DataArray | None = None
        self._xr_dataset: xr.Dataset | None = None
        self._sources: list[SourceAndConverter] | None = None
        self._spim_data: SpimData | None = None
        self._executor: ThreadPoolExecutor | None = None

        self._host_calibration_stale = False
        self._closed = False

        logger.info(
            f"Bound dataset {name!r}: dimensions={self._dimensions.host_dimensions}, "
            f"levels={self.num_resolutions()}, writable={writable}"
        )

    def __repr__(self) -> str:
        return (
            f"PyramidDataset(name={self._name!r}, "
            f"dimensions={self._dimensions.host_dimensions}, writable={self._writable})"
        )

    def __enter__(self) -> "PyramidDataset":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def _pyramid(self) -> ImagePyramid:
        return self._pyramids[self._name]

    @property
    def name(self) -> str:
        return self._name

    @property
    def host(self) -> HostStore:
        """The underlying host store."""
        return self._host

    @property
    def writable(self) -> bool:
        return self._writable

    @property
    def host_calibration_stale(self) -> bool:
        """
        Whether the last calibration change failed to reach the host.

        See `sync_calibration`.
        """
        return self._host_calibration_stale

    def _check_open(self) -> None:
        if self._closed:
            msg = f"Dataset {self._name!r} has been closed"
            raise HostReleasedError(msg)

    def _ensure_writable(self) -> None:
        self._check_open()
        if not self._writable:
            msg = f"Dataset {self._name!r} is not writable"
            raise NotWritableError(msg)

    # Metadata

    def num_channels(self) -> int:
        return self._dimensions.num_channels

    def num_timepoints(self) -> int:
        return self._dimensions.num_timepoints

    def num_dimensions(self) -> int:
        """Number of dimensions of the array returned by `as_array`."""
        return self._dimensions.num_dimensions

    def num_resolutions(self) -> int:
        """Number of levels in the resolution pyramid."""
        return self._pyramid.num_resolutions()

    def get_type(self) -> np.dtype:
        """Pixel data type."""
        return self._pyramid.get_type()

    def get_dataset_dimensions(self) -> DatasetDimensions:
        """
        Get the size of the 5D host image, and the mapping to the dimensions of
        the array representation.
        """
        return self._dimensions

    def get_calibration(self) -> DatasetCalibration:
        """Get a copy of the physical calibration: unit, voxel size and min."""
        with self._calibration_lock:
            return self._calibration.copy()

    def voxel_dimensions(self) -> VoxelDimensions:
        """Unit and voxel size of the spatial axes."""
        with self._calibration_lock:
            return self._calibration.voxel_dimensions()

    def get_channel_color(self, channel: int) -> Color:
        """Get the base colour of a channel, as RGBA values in [0, 1]."""
        if not 0 <= channel < self.num_channels():
            msg = f"Channel {channel} out of range [0, {self.num_channels()})"
            raise OutOfRangeError(msg)
        return tuple(self._host.get_channel_color(channel))  # type: ignore[return-value]

    def get_name(self) -> str:
        """Get the ``Image > Name`` parameter of the host image."""
        return self._host.get_parameter("Image", "Name")

    def get_filename(self) -> str:
        """Get the ``Image > Filename`` parameter of the host image."""
        return self._host.get_parameter("Image", "Filename")

    # Representations

    def _get_converters(self) -> list[ChannelConverter]:
        """Channel colours and display ranges, read from the host once."""
        with self._converters_lock:
            if self._converters is None:
                logger.info(f"Reading channel colours of {self._name!r} from host")
                self._converters = [
                    ChannelConverter(
                        color=self.get_channel_color(c),
                        display_min=self._host.get_channel_range_min(c),
                        display_max=self._host.get_channel_range_max(c),
                    )
                    for c in range(self.num_channels())
                ]
            return self._converters

    def as_array(self) -> xr.DataArray:
        """
        Get the full resolution image as a calibrated `xarray.DataArray`.

        Dimensions are a subset of ``("x", "y", "z", "c", "t")``, with Z, C and T
        left out if they have size 1. Spatial coordinates are voxel centres in
        physical units. Channel colour tables and display ranges are stored in
        ``attrs``.

        The array data is the writable level 0 buffer of the pyramid; edits are
        sent to the host by `persist`.
        """
        self._check_open()
        array = self._array
        if array is not None:
            return array
        with self._array_lock:
            if self._array is None:
                self._init_array()
            return self._array  # type: ignore[return-value]

    def _init_array(self) -> None:
        data = self._pyramid.get_level(0)
        converters = self._get_converters()
        dims = self._dimensions.dims
        array = xr.DataArray(data, dims=dims, name=self._name)
        if "c" in dims:
            array.coords["c"] = ("c", np.arange(self.num_channels()))
        if "t" in dims:
            array.coords["t"] = ("t", np.arange(self.num_timepoints()))
        array.attrs["color_tables"] = [c.color_table() for c in converters]
        array.attrs["channel_ranges"] = [
            (c.display_min, c.display_max) for c in converters
        ]

        with self._calibration_lock:
            self._apply_axes(array)
            self._array = array
        logger.info(f"Created array for {self._name!r} with dims {dims}")

    def as_dataset(self) -> xr.Dataset:
        """
        Get an `xarray.Dataset` wrapping the array returned by `as_array`.

        The same instance is returned on every call.
        """
        array = self.as_array()
        with self._dataset_lock:
            if self._xr_dataset is None:
                dataset = xr.Dataset(
                    {self._name: array}, attrs={"name": self._name, "rgb_merged": False}
                )
                with self._calibration_lock:
                    self._apply_axes(dataset)
                    self._xr_dataset = dataset
            return self._xr_dataset

    def as_sources(self) -> list[SourceAndConverter]:
        """
        Get one multi-resolution source per channel.

        Each source serves every level of the resolution pyramid, and carries a
        volatile version that does not block on the host.
        """
        self._check_open()
        with self._sources_lock:
            if self._sources is None:
                converters = self._get_converters()
                with self._calibration_lock:
                    self._sources = make_sources(
                        self._pyramid,
                        self._name,
                        self._calibration,
                        converters,
                        self._get_executor(),
                    )
            return self._sources

    def as_spim_data(self) -> SpimData:
        """Get the sources combined with calibration and timepoint metadata."""
        sources = self.as_sources()
        with self._sources_lock:
            if self._spim_data is None:
                with self._calibration_lock:
                    spim_data = SpimData(
                        sources=list(sources),
                        view_setups=[
                            ViewSetup(
                                id=channel,
                                name=sac.source.name,
                                channel=channel,
                                size=self._dimensions.host_dimensions[:3],
                                voxel_dimensions=self._calibration.voxel_dimensions(),
                            )
                            for channel, sac in enumerate(sources)
                        ],
                        timepoints=list(range(self.num_timepoints())),
                    )
                    spim_data.update_registrations(self._calibration)
                    self._spim_data = spim_data
            return self._spim_data

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._fetch_threads, thread_name_prefix="pyramid-fetch"
            )
        return self._executor

    # Calibration

    def _apply_axes(self, target: xr.DataArray | xr.Dataset) -> None:
        """Set calibrated spatial coordinates on ``target`` in place."""
        calib = self._calibration
        unit = calib.unit()
        for axis, dim in enumerate(SPATIAL_DIMS):
            if dim in target.dims:
                n = target.sizes[dim]
                target.coords[dim] = (
                    dim,
                    calib.axis_coordinates(axis, n),
                    {"units": unit},
                )
        target.attrs["unit"] = unit
        target.attrs["voxel_size"] = calib.voxel_size()
        target.attrs["min"] = calib.min()

    def _push_axes(self) -> None:
        """Update all created representations to the current calibration."""
        calib = self._calibration
        if self._array is None:
            logger.debug("Array not created yet, its axes are set when it is created")
        else:
            self._apply_axes(self._array)
            if self._xr_dataset is not None:
                self._apply_axes(self._xr_dataset)

        if self._sources is not None:
            for sac in self._sources:
                sac.source.set_calibration(calib)
                if sac.volatile is not None:
                    sac.volatile.source.set_calibration(calib)
        if self._spim_data is not None:
            self._spim_data.view_setups = [
                dataclasses.replace(setup, voxel_dimensions=calib.voxel_dimensions())
                for setup in self._spim_data.view_setups
            ]
            self._spim_data.update_registrations(calib)

    def _push_calibration_to_host(self) -> None:
        try:
            self._calibration.apply_to_host(
                self._host, self._dimensions.host_dimensions
            )
        except HostCommunicationError as exc:
            self._host_calibration_stale = True
            logger.warning(
                f"Calibration of {self._name!r} changed, but pushing it to the host "
                f"failed: {exc!r}"
            )
            msg = (
                f"Calibration of {self._name!r} changed locally but could not be "
                f"written to the host; host extents may be stale"
            )
            raise CalibrationSyncError(msg) from exc
        self._host_calibration_stale = False

    def _update_calibration(self, update: Callable[[DatasetCalibration], None]) -> None:
        """
        Modify the calibration, then push it to the representations and the host.

        If pushing to the host fails the modification is kept and
        `CalibrationSyncError` is raised.
        """
        self._ensure_writable()
        with self._calibration_lock:
            update(self._calibration)
            self._push_axes()
            self._push_calibration_to_host()

    def set_extents(  # noqa: PLR0913
        self,
        unit: str,
        extent_min_x: float,
        extent_max_x: float,
        extent_min_y: float,
        extent_max_y: float,
        extent_min_z: float,
        extent_max_z: float,
    ) -> None:
        """
        Set unit, voxel size, and min coordinate from host extents.

        Note, that the given extents are in the host convention: ``extent_min_x``
        is the min corner of the first voxel, ``extent_max_x`` the max corner of
        the last voxel. The Z extents are ignored for 2D datasets.
        """
        size = self._dimensions.host_dimensions
        self._update_calibration(
            lambda calib: calib.set_extents(
                unit,
                extent_min_x,
                extent_max_x,
                extent_min_y,
                extent_max_y,
                extent_min_z,
                extent_max_z,
                size,
            )
        )

    def set_voxel_size(
        self, voxel_size: Sequence[float], unit: str | None = None
    ) -> None:
        """Set voxel size, and optionally unit. The min coordinate is kept."""
        self._update_calibration(lambda calib: calib.set_voxel_size(voxel_size, unit))

    def set_min(self, min_x: float, min_y: float, min_z: float) -> None:
        """
        Set the min coordinate. The voxel size is kept.

        Note, that the min coordinate refers to the centre of the first voxel.
        """
        self._update_calibration(lambda calib: calib.set_min(min_x, min_y, min_z))

    def set_calibration(self, calibration: DatasetCalibration) -> None:
        """Set unit, voxel size and min coordinate from ``calibration``."""
        self._update_calibration(lambda calib: calib.set(calibration))

    def sync_calibration(self) -> None:
        """Push the current calibration to the host again."""
        self._ensure_writable()
        with self._calibration_lock:
            self._push_calibration_to_host()

    # Modification

    def set_modified(self, modified: bool) -> None:  # noqa: FBT001
        """
        Set the modification flag of the host image.

        Hosts may ask whether to save a modified image before closing it.
        """
        self._ensure_writable()
        self._host.set_modified(modified)

    def persist(self) -> None:
        """Write all modifications of the full resolution image to the host."""
        self._ensure_writable()
        self._pyramid.persist()

    def invalidate_pyramid(self) -> None:
        """
        Invalidate cached levels of the resolution pyramid, except level 0.

        Edits to the full resolution image are immediately visible in all
        representations, but the lower resolution levels are recomputed by the
        host. After making edits, first call `persist` so the host has the
        edits and recomputes the pyramid, then call this method so the
        recomputed levels are fetched again.
        """
        self._ensure_writable()
        self._pyramid.invalidate()

    # Lifecycle

    def close(self) -> None:
        """
        Release all representations and the host connection.

        Sources obtained before closing raise `HostReleasedError` when read.
        Other representations obtained before closing should not be used
        afterwards.
        """
        if self._closed:
            return
        self._closed = True
        for sac in self._sources or []:
            sac.source.release()
            if sac.volatile is not None:
                sac.volatile.source.release()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self._array = None
        self._xr_dataset = None
        self._sources = None
        self._spim_data = None
        release = getattr(self._host, "release", None)
        if callable(release):
            release()
        logger.info(f"Closed dataset {self._name!r}")


def open_dataset(path: Path, options: DatasetOptions | None = None) -> PyramidDataset:
    """
    Open an OME-Zarr multiscale group as a `PyramidDataset`.

    Parameters
    ----------
    path :
        Path to the group, as written by `ZarrHostStore`.
    options :
        Dataset options. Defaults to `DatasetOptions.from_env`.

    """
    if options is None:
        options = DatasetOptions.from_env()
    host = open_host_store(path, n_processes=options.n_processes)
    return PyramidDataset(
        host, writable=options.writable, fetch_threads=options.fetch_threads
    )

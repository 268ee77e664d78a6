"""Expose multi-resolution 5D host images as arrays, sources and datasets."""

__all__ = [
    "SPATIAL_UNIT",
    "AxisOrder",
    "CalibrationSyncError",
    "ChannelConverter",
    "ChannelSource",
    "ConfigurationError",
    "DatasetCalibration",
    "DatasetDimensions",
    "DatasetOptions",
    "HostCommunicationError",
    "HostReleasedError",
    "HostStore",
    "ImagePyramid",
    "NotWritableError",
    "OutOfRangeError",
    "PyramidDataset",
    "PyramidDatasetError",
    "SourceAndConverter",
    "SpimData",
    "ViewSetup",
    "VolatileChannelSource",
    "VoxelDimensions",
    "ZarrHostStore",
    "__version__",
    "open_dataset",
    "open_host_store",
]

from loguru import logger

from ._version import __version__
from .calibration import DatasetCalibration, VoxelDimensions
from .config import DatasetOptions
from .dataset import PyramidDataset, open_dataset
from .dimensions import AxisOrder, DatasetDimensions
from .exceptions import (
    CalibrationSyncError,
    ConfigurationError,
    HostCommunicationError,
    HostReleasedError,
    NotWritableError,
    OutOfRangeError,
    PyramidDatasetError,
)
from .host import HostStore
from .ome_ngff import SPATIAL_UNIT
from .pyramid import ImagePyramid
from .sources import (
    ChannelConverter,
    ChannelSource,
    SourceAndConverter,
    SpimData,
    ViewSetup,
    VolatileChannelSource,
)
from .zarr_host import ZarrHostStore, open_host_store

logger.disable("pyramid_dataset")

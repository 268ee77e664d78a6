"""Errors raised by pyramid-dataset."""


class PyramidDatasetError(Exception):
    """Base class for all pyramid-dataset errors."""


class ConfigurationError(PyramidDatasetError, ValueError):
    """
    Host metadata cannot be mapped to a dataset.

    Raised at construction, e.g. for a malformed host dimension vector or
    inconsistent pyramid level factors.
    """


class NotWritableError(PyramidDatasetError):
    """A mutating operation was called on a read-only dataset."""


class HostCommunicationError(PyramidDatasetError):
    """A call to the host store failed."""


class CalibrationSyncError(HostCommunicationError):
    """
    The calibration changed locally but could not be pushed to the host.

    The local calibration (and the array axes) stay in the new state,
    so the host coordinate metadata may now be stale.
    """


class HostReleasedError(HostCommunicationError):
    """The dataset was used after its host connection was released."""


class OutOfRangeError(PyramidDatasetError, IndexError):
    """A channel, timepoint, level or axis index is out of range."""

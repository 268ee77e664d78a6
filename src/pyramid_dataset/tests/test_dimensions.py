"""Tests for the dimensions.py module."""

import itertools

import numpy as np
import pytest

from pyramid_dataset import ConfigurationError, DatasetDimensions, OutOfRangeError

ALL_HOST_DIMENSIONS = [
    (x, y, z, c, t)
    for x, y, z, c, t in itertools.product((1, 5), (1, 7), (1, 3), (1, 2), (1, 4))
]


@pytest.mark.parametrize("host_dimensions", ALL_HOST_DIMENSIONS)
def test_mapping_properties(host_dimensions: tuple[int, ...]) -> None:
    dims = DatasetDimensions(host_dimensions)
    assert 2 <= dims.num_dimensions <= 5

    host_axes = [dims.to_host(i) for i in range(dims.num_dimensions)]
    # Host order is preserved
    assert host_axes == sorted(host_axes)
    # X and Y always present
    assert host_axes[:2] == [0, 1]
    for host_axis in range(5):
        mapped = dims.to_mapped(host_axis)
        if mapped is None:
            assert host_dimensions[host_axis] == 1
        else:
            assert dims.to_host(mapped) == host_axis


def test_no_z_three_channels() -> None:
    dims = DatasetDimensions([100, 100, 1, 3, 1])
    assert dims.num_dimensions == 3
    assert dims.dims == ("x", "y", "c")
    assert dims.num_channels == 3
    assert dims.num_timepoints == 1
    assert dims.axis_order.has_channels
    assert not dims.axis_order.has_z
    assert not dims.axis_order.has_timepoints
    assert dims.to_mapped(2) is None
    assert dims.to_mapped(3) == 2
    assert dims.to_host(2) == 3


def test_all_axes() -> None:
    dims = DatasetDimensions((4, 5, 6, 2, 3))
    assert dims.dims == ("x", "y", "z", "c", "t")
    assert dims.mapped_shape(dims.host_dimensions) == (4, 5, 6, 2, 3)


def test_only_timepoints() -> None:
    dims = DatasetDimensions((4, 5, 1, 1, 3))
    assert dims.dims == ("x", "y", "t")
    assert dims.mapped_shape((2, 3, 1, 1, 3)) == (2, 3, 3)


@pytest.mark.parametrize("host_dimensions", [(), (10, 10, 1, 1), (1, 1, 1, 1, 1, 1)])
def test_wrong_length(host_dimensions: tuple[int, ...]) -> None:
    with pytest.raises(ConfigurationError, match="Host dimensions must have length 5"):
        DatasetDimensions(host_dimensions)


def test_zero_size() -> None:
    with pytest.raises(ConfigurationError, match="must be >= 1"):
        DatasetDimensions((10, 0, 1, 1, 1))


def test_configuration_error_is_value_error() -> None:
    with pytest.raises(ValueError):  # noqa: PT011
        DatasetDimensions((10, 10))


def test_out_of_range() -> None:
    dims = DatasetDimensions((10, 10, 1, 1, 1))
    with pytest.raises(OutOfRangeError):
        dims.to_host(2)
    with pytest.raises(OutOfRangeError):
        dims.to_mapped(5)
    with pytest.raises(IndexError):
        dims.to_host(-1)


def test_array_layout() -> None:
    dims = DatasetDimensions((4, 3, 1, 2, 1))
    block = np.arange(4 * 3 * 2).reshape((4, 3, 1, 2, 1))
    mapped = dims.to_mapped_array(block)
    assert mapped.shape == (4, 3, 2)
    np.testing.assert_equal(mapped[:, :, 1], block[:, :, 0, 1, 0])

    restored = dims.to_host_array(mapped)
    assert restored.shape == (4, 3, 1, 2, 1)
    np.testing.assert_equal(restored, block)

    with pytest.raises(ValueError, match="must be 5-dimensional"):
        dims.to_mapped_array(mapped)
    with pytest.raises(ValueError, match="Expected a 3-dimensional array"):
        dims.to_host_array(block)


def test_immutable() -> None:
    dims = DatasetDimensions((4, 3, 1, 2, 1))
    with pytest.raises(AttributeError):
        dims.host_dimensions = (1, 1, 1, 1, 1)  # type: ignore[misc]

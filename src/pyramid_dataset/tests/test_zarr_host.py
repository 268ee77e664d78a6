"""Tests for the zarr host store."""

from pathlib import Path

import numpy as np
import pytest
import zarr
import zarr.errors
from ome_zarr_models.v05 import Image

from pyramid_dataset import (
    ConfigurationError,
    DatasetOptions,
    HostCommunicationError,
    HostStore,
    OutOfRangeError,
    ZarrHostStore,
    open_dataset,
    open_host_store,
)
from pyramid_dataset.ome_ngff import normalize_unit


def ome_attrs(zarr_path: Path) -> dict:  # type: ignore[type-arg]
    return zarr.open_group(zarr_path, mode="r").attrs["ome"]  # type: ignore[return-value]


@pytest.fixture
def data() -> np.ndarray:
    shape = (8, 6, 4, 2, 1)
    rng = np.random.default_rng(seed=1)
    return rng.integers(low=0, high=2**16, size=shape, dtype=np.uint16)


@pytest.fixture
def store(tmp_path: Path, data: np.ndarray) -> ZarrHostStore:
    store = ZarrHostStore(
        tmp_path / "group.ome.zarr",
        name="my_zarr_group",
        voxel_size=(1, 2, 0.5),
        spatial_unit="micrometer",
        shape=data.shape,  # type: ignore[arg-type]
        dtype=data.dtype,
        chunks=(4, 4, 2),
    )
    store.add_full_res_data(data, n_processes=1)
    store.add_downsample_level(1, n_processes=2)
    return store


def test_workflow(tmp_path: Path, data: np.ndarray) -> None:
    """Basic smoke test of creating a group as a user would."""
    zarr_path = tmp_path / "group.ome.zarr"
    store = ZarrHostStore(
        zarr_path,
        name="my_zarr_group",
        voxel_size=(3, 4, 5),
        spatial_unit="centimeter",
        shape=data.shape,  # type: ignore[arg-type]
        dtype=data.dtype,
    )
    assert zarr_path.exists()
    assert store.levels == [0]
    assert isinstance(store, HostStore)

    store.add_full_res_data(data, n_processes=1)
    zarr_arr = zarr.open_array(zarr_path / "0", mode="r")
    assert zarr_arr.shape == (1, 2, 4, 6, 8)
    assert zarr_arr.dtype == np.uint16
    np.testing.assert_equal(zarr_arr[:], data.transpose(4, 3, 2, 1, 0))

    # Check that re-loading works
    del store
    store = open_host_store(zarr_path)
    assert store.levels == [0]
    assert store.get_host_dimensions() == data.shape
    assert store.get_data_type() == np.uint16
    assert store.get_parameter("Image", "Name") == "my_zarr_group"
    assert store.get_parameter("Image", "Missing") == ""

    store.add_downsample_level(1, n_processes=2)
    assert store.levels == [0, 1]
    assert store.get_level_factors() == [(1, 1, 1), (2, 2, 2)]
    assert store[1].shape == (1, 2, 2, 3, 4)

    multiscales = ome_attrs(zarr_path)["multiscales"][0]
    assert multiscales["axes"] == [
        {"name": "t", "type": "time"},
        {"name": "c", "type": "channel"},
        {"name": "z", "type": "space", "unit": "centimeter"},
        {"name": "y", "type": "space", "unit": "centimeter"},
        {"name": "x", "type": "space", "unit": "centimeter"},
    ]
    assert multiscales["datasets"] == [
        {
            "path": "0",
            "coordinateTransformations": [
                {"type": "scale", "scale": [1.0, 1.0, 5.0, 4.0, 3.0]},
                {"type": "translation", "translation": [0.0, 0.0, 2.5, 2.0, 1.5]},
            ],
        },
        {
            "path": "1",
            "coordinateTransformations": [
                {"type": "scale", "scale": [1.0, 1.0, 10.0, 8.0, 6.0]},
                {"type": "translation", "translation": [0.0, 0.0, 5.0, 4.0, 3.0]},
            ],
        },
    ]

    image = Image.from_zarr(zarr.open_group(zarr_path, mode="r"))
    assert [d.path for d in image.datasets[0]] == ["0", "1"]
    assert image.ome_attributes.multiscales[0].name == "my_zarr_group"

    with pytest.raises(RuntimeError, match="Level 1 already found in zarr group"):
        store.add_downsample_level(1, n_processes=2)
    with pytest.raises(
        RuntimeError, match=r"Level below \(level=2\) not present in group."
    ):
        store.add_downsample_level(3, n_processes=2)
    with pytest.raises(ValueError, match="level must be an integer >= 1"):
        store.add_downsample_level(0.1, n_processes=2)  # type: ignore[arg-type]
    with pytest.raises(ValueError, match="level must be an integer >= 1"):
        store.add_downsample_level(-2, n_processes=2)


def test_wrong_data_shape(store: ZarrHostStore, data: np.ndarray) -> None:
    with pytest.raises(ValueError, match="Input data has shape"):
        store.add_full_res_data(data[:4], n_processes=1)


def test_known_data(tmp_path: Path) -> None:
    # Test downsampling on some simple data that gives an exact known result
    arr = np.arange(8).reshape((2, 2, 2, 1, 1))

    store = ZarrHostStore(
        tmp_path / "group.ome.zarr",
        name="my_zarr_group",
        voxel_size=(3, 4, 5),
        shape=arr.shape,  # type: ignore[arg-type]
        dtype=arr.dtype,
        chunks=(1, 1, 1),
    )
    store.add_full_res_data(arr, n_processes=1)
    store.add_downsample_level(1, n_processes=1)
    downsampled = store.get_pixel_block(1, (0,) * 5, (1, 1, 1, 1, 1))
    np.testing.assert_equal(downsampled[..., 0, 0], [[[3]]])


def test_padding(tmp_path: Path) -> None:
    # Test data that doesn't fit exactly into (2, 2, 2) shaped chunks
    arr = np.arange(8).reshape((2, 2, 2))
    arr = np.concatenate([arr, [[[10, 10], [12, 16]]]], axis=0)
    arr = arr[..., np.newaxis, np.newaxis]

    store = ZarrHostStore(
        tmp_path / "group.ome.zarr",
        name="my_zarr_group",
        voxel_size=(3, 4, 5),
        shape=arr.shape,  # type: ignore[arg-type]
        dtype=arr.dtype,
        chunks=(1, 1, 1),
    )
    store.add_full_res_data(arr, n_processes=1)
    store.add_downsample_level(1, n_processes=1)
    downsampled = store.get_pixel_block(1, (0,) * 5, (2, 1, 1, 1, 1))
    np.testing.assert_equal(downsampled[..., 0, 0], [[[3]], [[12]]])


def test_pixel_blocks(store: ZarrHostStore, data: np.ndarray) -> None:
    block = store.get_pixel_block(0, (2, 1, 0, 1, 0), (3, 2, 4, 1, 1))
    np.testing.assert_equal(block, data[2:5, 1:3, :, 1:2, :])
    assert not store.is_modified()

    store.set_pixel_block(0, (0, 0, 0, 0, 0), np.zeros((2, 2, 2, 1, 1), np.uint16))
    assert store.is_modified()
    np.testing.assert_equal(store.get_pixel_block(0, (0,) * 5, (2, 2, 2, 1, 1)), 0)

    with pytest.raises(OutOfRangeError, match="Level 2 not in levels"):
        store.get_pixel_block(2, (0,) * 5, (1, 1, 1, 1, 1))
    with pytest.raises(ValueError, match="must be length 5"):
        store.get_pixel_block(0, (0, 0, 0), (1, 1, 1))


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (OSError("disk gone"), HostCommunicationError),
        (zarr.errors.MetadataValidationError("bad metadata"), HostCommunicationError),
        (TypeError("bad selection"), TypeError),
    ],
)
def test_store_errors(
    monkeypatch: pytest.MonkeyPatch,
    store: ZarrHostStore,
    error: Exception,
    expected: type[Exception],
) -> None:
    """Only store failures are reported as host communication errors."""

    def broken_read(self: zarr.Array, selection: object) -> None:
        raise error

    monkeypatch.setattr(zarr.Array, "__getitem__", broken_read)
    with pytest.raises(expected, match=str(error)) as exc_info:
        store.get_pixel_block(0, (0,) * 5, (1, 1, 1, 1, 1))
    if expected is HostCommunicationError:
        assert exc_info.value.__cause__ is error
        assert "Failed to read level 0" in str(exc_info.value)


def test_persist_recomputes_levels(store: ZarrHostStore) -> None:
    store.set_pixel_block(0, (0,) * 5, np.full((8, 6, 4, 2, 1), 7, np.uint16))
    # Lower levels are only recomputed on persist
    assert not np.all(store.get_pixel_block(1, (0,) * 5, (4, 3, 2, 2, 1)) == 7)

    store.persist()
    np.testing.assert_equal(store.get_pixel_block(1, (0,) * 5, (4, 3, 2, 2, 1)), 7)


def test_channels(store: ZarrHostStore) -> None:
    assert store.get_channel_color(0) == (1.0, 0.0, 0.0, 1.0)
    assert store.get_channel_color(1) == (0.0, 1.0, 0.0, 1.0)
    assert store.get_channel_range_min(0) == 0.0
    assert store.get_channel_range_max(0) == 65535.0
    with pytest.raises(OutOfRangeError, match=r"Channel 2 out of range \[0, 2\)"):
        store.get_channel_color(2)


def test_extents(tmp_path: Path, store: ZarrHostStore) -> None:
    extent_min, extent_max = store.get_extents()
    assert extent_min == [0.0, 0.0, 0.0]
    assert extent_max == [8.0, 12.0, 2.0]

    store.set_extents((10, 0, 0), (18, 12, 2))
    level0 = ome_attrs(tmp_path / "group.ome.zarr")["multiscales"][0]["datasets"][0]
    assert level0["coordinateTransformations"][1] == {
        "type": "translation",
        "translation": [0.0, 0.0, 0.25, 1.0, 10.5],
    }


def test_dataset_round_trip(tmp_path: Path, store: ZarrHostStore) -> None:
    """Edits and calibration made through a dataset end up on disk."""
    zarr_path = tmp_path / "group.ome.zarr"
    store.release()

    with open_dataset(zarr_path, DatasetOptions(writable=True)) as dataset:
        assert dataset.name == "my_zarr_group"
        assert dataset.num_resolutions() == 2
        array = dataset.as_array()
        assert array.dims == ("x", "y", "z", "c")
        np.testing.assert_allclose(array.coords["y"].values, 1 + 2 * np.arange(6))

        array.data[...] = 100
        dataset.persist()
        dataset.invalidate_pyramid()
        source = dataset.as_sources()[1].source
        np.testing.assert_equal(source.get_source(0, 1), 100)

        dataset.set_extents("micron", 0, 8, 0, 12, 0, 2)

    multiscales = ome_attrs(zarr_path)["multiscales"][0]
    assert multiscales["axes"][-1] == {
        "name": "x",
        "type": "space",
        "unit": "micrometer",
    }
    transforms = multiscales["datasets"][0]["coordinateTransformations"]
    assert transforms == [
        {"type": "scale", "scale": [1.0, 1.0, 0.5, 2.0, 1.0]},
        {"type": "translation", "translation": [0.0, 0.0, 0.25, 1.0, 0.5]},
    ]
    image = Image.from_zarr(zarr.open_group(zarr_path, mode="r"))
    assert image.ome_attributes.multiscales[0].axes[-1].unit == "micrometer"

    store = open_host_store(zarr_path)
    assert store.is_modified()
    assert store.get_parameter("Image", "Unit") == "micron"
    np.testing.assert_equal(store.get_pixel_block(0, (0,) * 5, (8, 6, 4, 2, 1)), 100)


def test_read_only_dataset(tmp_path: Path, store: ZarrHostStore) -> None:
    store.release()
    with open_dataset(tmp_path / "group.ome.zarr") as dataset:
        assert not dataset.writable
        assert dataset.get_channel_color(1) == (0.0, 1.0, 0.0, 1.0)


def test_missing_group(tmp_path: Path) -> None:
    with pytest.raises(HostCommunicationError, match="No multiscale group found"):
        open_host_store(tmp_path / "missing.ome.zarr")

    with pytest.raises(ValueError, match="Group does not already exist"):
        ZarrHostStore(tmp_path / "missing.ome.zarr", name="my_zarr_group")


def test_not_a_pyramid(tmp_path: Path) -> None:
    zarr_path = tmp_path / "plain.zarr"
    zarr.open_group(zarr_path, mode="w")
    with pytest.raises(ConfigurationError, match="is not a multiscale group"):
        open_host_store(zarr_path)


def test_bad_shape(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match=r"shape must be length 5 \(x, y, z, c, t\)"):
        ZarrHostStore(
            tmp_path / "test.ome.zarr",
            name="my_zarr_group",
            voxel_size=(3, 4, 5),
            shape=(4, 4, 4),  # type: ignore[arg-type]
            dtype=np.uint8,
        )


@pytest.mark.parametrize(
    ("unit", "expected"),
    [
        ("micrometer", "micrometer"),
        ("micron", "micrometer"),
        (" um ", "micrometer"),
        ("NM", "nanometer"),
        ("pixel", None),
    ],
)
def test_normalize_unit(unit: str, expected: str | None) -> None:
    assert normalize_unit(unit) == expected

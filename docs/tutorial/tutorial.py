"""
Tutorial
========

This page steps through storing a 3D image as a multi-resolution zarr group,
opening it as a `PyramidDataset`, and using the dataset to calibrate and edit
the image.
"""

import pathlib
import sys
import tempfile

import dask.array as da
import matplotlib.pyplot as plt
import numpy as np
import skimage.color
import skimage.data
from loguru import logger

import pyramid_dataset

# %%
# Generating sample data
# ----------------------
#
# We'll start by generating some sample data: 35 copies of a grayscale cat,
# stacked along Z. Each copy is a lazily evaluated dask chunk, so nothing is
# copied in memory until the data is written to disk.
data_2d = skimage.color.rgb2gray(skimage.data.cat())
data_2d = (data_2d * 255).astype(np.uint8).T
images = da.stack([da.from_array(data_2d)] * 35, axis=-1)
# Add single channel and timepoint axes, giving (x, y, z, c, t)
images = images[..., np.newaxis, np.newaxis]
print(images)

plt.imshow(data_2d.T, cmap="gray")

# %%
# Creating a host store
# ---------------------
# A `PyramidDataset` reads its pixels from a host store. ``pyramid-dataset``
# comes with `ZarrHostStore`, which keeps the image as an OME-Zarr multiscale
# group on disk.
#
# We'll also enable logging here, so we can see what is read and written:

logger.enable("pyramid_dataset")
logger.add(sys.stdout, level="INFO")

temp_dir = tempfile.TemporaryDirectory()
temp_dir_path = pathlib.Path(temp_dir.name)

store = pyramid_dataset.ZarrHostStore(
    temp_dir_path / "cat.ome.zarr",
    name="cat",
    spatial_unit="micrometer",
    voxel_size=(0.5, 0.5, 2),
    shape=images.shape,
    dtype=images.dtype,
    chunks=(64, 64, 16),
)
store.add_full_res_data(images, n_processes=1)

# %%
# Now lets add some downsampled levels. Each level is downsampled by a factor
# of ``2**level`` along every spatial axis:
for level in range(1, 4):
    store.add_downsample_level(level, n_processes=1)
print(store.levels)
store.release()

# %%
# Opening a dataset
# -----------------
# `open_dataset` opens the group again as a `PyramidDataset`. Datasets are read
# only unless ``writable=True`` is set in the options, or the
# ``PYRAMID_DATASET_WRITABLE`` environment variable is set.

options = pyramid_dataset.DatasetOptions(writable=True)
dataset = pyramid_dataset.open_dataset(temp_dir_path / "cat.ome.zarr", options)
print(dataset)

# %%
# Nothing has been read from disk yet. `PyramidDataset.as_array` reads the full
# resolution level, and returns it as a calibrated `xarray.DataArray`. Axes with
# a single entry (here channel and time) are left out:

array = dataset.as_array()
print(array.dims)
print(array.coords["x"])

# %%
# Calibration
# -----------
# Changing the calibration updates the coordinates of the array in place, and
# writes the new extents to the zarr group:

dataset.set_voxel_size((1, 1, 4), unit="micron")
print(array.coords["x"])

# %%
# Editing data
# ------------
# The array data is the full resolution image, and can be edited directly.
# Edits are only written to disk when the dataset is persisted, which also
# recomputes the downsampled levels. Invalidating the pyramid then makes the
# sources read the recomputed levels:

array.data[100:200, 100:200, :] = 255
dataset.persist()
dataset.invalidate_pyramid()

# %%
# Multi-resolution sources
# ------------------------
# `PyramidDataset.as_sources` gives one source per channel, which can read any
# resolution level. As an example, lets plot a slice of the third level:

source = dataset.as_sources()[0].source
plt.imshow(source.get_source(0, 3)[:, :, 0].T, cmap="gray")

# %%
# Cleanup
# -------
#
# Finally we close the dataset, and clean up the temporary directory we made
# earlier.
dataset.close()
temp_dir.cleanup()

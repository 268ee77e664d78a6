import dask.array as da
import numpy as np
import skimage.measure
import zarr
from joblib import delayed
from loguru import logger


@delayed  # type: ignore[misc]
def _copy_slab(
    arr_zarr: zarr.Array,
    slab: da.Array,
    t: int,
    c: int,
    zstart: int,
    zend: int,
) -> None:
    """
    Copy a single slab of data to a zarr array.

    Parameters
    ----------
    arr_zarr :
        Array to copy to, with dimensions ``(t, c, z, y, x)``.
    slab :
        Slab of data to copy, with dimensions ``(x, y, z)``.
    t, c :
        Timepoint and channel to copy to.
    zstart, zend :
        Start and end indices to copy to in destination array.

    """
    logger.info(f"Reading t={t}, c={c}, z={zstart} -> {zend - 1}")
    data = np.empty(slab.shape, dtype=slab.dtype)
    for i in range(slab.shape[2]):
        data[:, :, i] = np.asarray(slab[:, :, i])

    logger.info(f"Writing t={t}, c={c}, z={zstart} -> {zend - 1}")
    arr_zarr[t, c, zstart:zend, :, :] = data.T
    logger.info(f"Finished copying t={t}, c={c}, z={zstart} -> {zend - 1}")


@delayed  # type: ignore[misc]
def _downsample_block(
    arr_in: zarr.Array,
    arr_out: zarr.Array,
    block_idx: tuple[int, int, int, int, int],
) -> None:
    """
    Fill a single chunk of one level from the level below, downsampling by two.

    Data is copied from a block starting at ``2 * block_idx`` and ending at
    ``2 * (block_idx + arr_out.chunks)`` in the spatial dimensions.
    Data is downsampled using local mean, and written to a single chunk in
    `arr_out`.

    Parameters
    ----------
    arr_in :
        Input array, with dimensions ``(t, c, z, y, x)``.
    arr_out :
        Output array, with the same dimensions as `arr_in` and half the spatial
        size (rounded up).
    block_idx :
        Index of the first voxel of the output chunk, ``(t, c, z, y, x)``.
        The spatial indices must be multiples of the output chunk shape.

    """
    t, c, *spatial_idx = block_idx
    chunk_shape = arr_out.chunks[2:]
    np.testing.assert_equal(
        np.array(spatial_idx) % np.array(chunk_shape),
        np.array([0, 0, 0]),
        err_msg=f"Block index {block_idx} not aligned with chunks {arr_out.chunks}",
    )

    in_slice = (t, c) + tuple(
        slice(i * 2, min((i + s) * 2, n))
        for i, s, n in zip(spatial_idx, chunk_shape, arr_in.shape[2:], strict=True)
    )
    data = arr_in[in_slice]

    # Pad to an even number
    pads = np.array(data.shape) % 2
    pad_width = [(0, p) for p in pads]
    data = np.pad(data, pad_width, mode="edge")
    data = skimage.measure.block_reduce(data, block_size=2, func=np.mean)

    out_slice = (t, c) + tuple(
        slice(i, min(i + s, n))
        for i, s, n in zip(spatial_idx, chunk_shape, arr_out.shape[2:], strict=True)
    )
    arr_out[out_slice] = data.astype(arr_out.dtype)

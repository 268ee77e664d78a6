"""
Benchmark
"""

import pathlib
import shutil
import time

import numpy as np

import pyramid_dataset

if __name__ == "__main__":
    shape = (1024, 1024, 64, 1, 1)
    volume = np.random.randint(low=0, high=2**16, size=shape, dtype=np.uint16)
    data_dir = pathlib.Path(__file__).parent / "data"
    print(f"Volume size: {volume.nbytes / 1e6} MB")

    for n_processes in [1, 2, 3, 4]:
        zarr_path = data_dir / "pyramid.ome.zarr"
        if zarr_path.exists():
            shutil.rmtree(zarr_path)
        store = pyramid_dataset.ZarrHostStore(
            zarr_path,
            name="my_zarr_group",
            spatial_unit="centimeter",
            voxel_size=(3, 4, 5),
            shape=shape,
            dtype=volume.dtype,
            n_processes=n_processes,
        )
        store.add_full_res_data(volume, n_processes=n_processes)
        for level in range(1, 4):
            store.add_downsample_level(level, n_processes=n_processes)

        dataset = pyramid_dataset.PyramidDataset(store, writable=True)
        dataset.as_array().data[:] = 0
        t_start = time.time()
        dataset.persist()
        t_end = time.time()
        print(f"{n_processes=}, persist t={t_end - t_start} seconds")
        dataset.close()

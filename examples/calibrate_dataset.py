"""
An example script to set the calibration of an existing multiscale group.

The group is looked up in a data folder set as an environment variable, and
opened as a writable dataset. The new voxel size is written back to the group.
"""

import sys

from loguru import logger

from pyramid_dataset import DatasetOptions, open_dataset
from pyramid_dataset.config import load_env_var_as_path

# Folder containing the zarr groups (set as an environment variable)
data_dir = load_env_var_as_path("PYRAMID_DATASET_DATA_DIR")

# Define the group name and check that it exists
group_name = "topro35_488.ome.zarr"
assert (data_dir / group_name).is_dir()

# Voxel size measured on the microscope, in microns
voxel_size = (3.0, 3.0, 3.0)


if __name__ == "__main__":
    logger.enable("pyramid_dataset")
    logger.add(sys.stdout, level="INFO")

    options = DatasetOptions(writable=True)
    with open_dataset(data_dir / group_name, options) as dataset:
        print(f"Old calibration: {dataset.get_calibration()}")
        dataset.set_voxel_size(voxel_size, unit="micron")
        dataset.set_modified(True)
        print(f"New calibration: {dataset.get_calibration()}")

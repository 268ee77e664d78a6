"""
Options for opening datasets, and loading them from the environment.
"""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "PYRAMID_DATASET_"


def load_env_var_as_path(env_var: str) -> Path:
    """Load an environment variable as a Path object."""
    path_str = os.getenv(env_var)

    if path_str is None:
        msg = f"Please set the environment variable {env_var}."
        raise ValueError(msg)

    path = Path(path_str)
    if not path.is_dir():
        msg = f"{path} is not a valid directory path."
        raise ValueError(msg)
    return path


class DatasetOptions(BaseSettings):
    """
    Options for a `PyramidDataset`.

    Options that are not passed in are read from ``PYRAMID_DATASET_*``
    environment variables, and otherwise keep their default value.

    Parameters
    ----------
    writable :
        Whether calibration, pixel edits and the modified flag may be written
        back to the host.
    fetch_threads :
        Number of threads used by volatile sources to fetch resolution levels
        in the background.
    n_processes :
        Number of joblib jobs used when a `ZarrHostStore` recomputes its
        resolution pyramid.

    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        frozen=True,
        extra="forbid",
    )

    writable: bool = False
    fetch_threads: int = Field(default=2, ge=1)
    n_processes: int = 1

    @classmethod
    def from_env(cls) -> "DatasetOptions":
        """
        Read options from ``PYRAMID_DATASET_*`` environment variables.

        Unset variables keep their default value. For example
        ``PYRAMID_DATASET_WRITABLE=1`` sets ``writable=True``.
        """
        return cls()

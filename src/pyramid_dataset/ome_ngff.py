"""Info for working with OME-NGFF."""

from typing import Literal, get_args

SPATIAL_UNIT = Literal[
    "angstrom",
    "attometer",
    "centimeter",
    "decimeter",
    "exameter",
    "femtometer",
    "foot",
    "gigameter",
    "hectometer",
    "inch",
    "kilometer",
    "megameter",
    "meter",
    "micrometer",
    "mile",
    "millimeter",
    "nanometer",
    "parsec",
    "petameter",
    "picometer",
    "terameter",
    "yard",
    "yoctometer",
    "yottameter",
    "zeptometer",
    "zettameter",
]

# Common spellings of spatial units, as found in microscopy metadata
UNIT_ALIASES: dict[str, SPATIAL_UNIT] = {
    "micron": "micrometer",
    "microns": "micrometer",
    "um": "micrometer",
    "µm": "micrometer",  # noqa: RUF001
    "nm": "nanometer",
    "mm": "millimeter",
    "cm": "centimeter",
    "m": "meter",
}


def normalize_unit(unit: str) -> SPATIAL_UNIT | None:
    """
    Get the OME-NGFF spelling of a spatial unit.

    Returns ``None`` for units OME-NGFF does not know (e.g. ``"pixel"``).
    """
    unit = unit.strip()
    if unit in get_args(SPATIAL_UNIT):
        return unit  # type: ignore[return-value]
    return UNIT_ALIASES.get(unit.lower())


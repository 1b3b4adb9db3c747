"""
Vocabulary Store — unit files served through the secure channel.

Layout of the vocabulary directory:
    Volume{V}_Welcome_Unit.json
    Volume{V}_Unit_{U}.json

Each file holds a JSON array of entries such as
``{"word": ..., "phonetic": ..., "explanation": [...]}``; entries are
passed through untouched.
"""
import re
import random
import logging
from pathlib import Path
from typing import Any, Optional, Union

import orjson

from .exceptions import InvalidRequest, ResourceNotFound

logger = logging.getLogger("wordmatch.vocabulary")

WELCOME_UNIT = "welcome"

_FILE_PATTERN = re.compile(r"^Volume(\d+)_(?:Unit_(\d+)|Welcome_Unit)\.json$")
_VOLUME_PATTERN = re.compile(r"^\d+$")
_UNIT_PATTERN = re.compile(r"^(?:\d+|welcome)$")


def unit_sort_key(unit: str) -> tuple[int, int]:
    """Order units as welcome, 1, 2, ..., 10."""
    if unit == WELCOME_UNIT:
        return (0, 0)
    return (1, int(unit))


def serialize(entries: Any) -> bytes:
    """Compact UTF-8 JSON, byte-identical to ``JSON.stringify`` output."""
    return orjson.dumps(entries)


class VocabularyStore:
    """Read-only access to a directory of vocabulary unit files."""

    def __init__(self, path: Union[str, Path], rng: Optional[random.Random] = None):
        self._path = Path(path)
        self._rng = rng or random.SystemRandom()

    @property
    def path(self) -> Path:
        return self._path

    def _file_for(self, volume: str, unit: str) -> Path:
        """Map (volume, unit) to a file inside the store.

        Identifiers are matched against fixed patterns so a request can
        never name a path outside the vocabulary directory.
        """
        volume, unit = str(volume), str(unit).lower()
        if unit == "welcome_unit":
            unit = WELCOME_UNIT
        if not _VOLUME_PATTERN.match(volume) or not _UNIT_PATTERN.match(unit):
            raise ResourceNotFound(f"Volume {volume} Unit {unit} not found")
        if unit == WELCOME_UNIT:
            name = f"Volume{volume}_Welcome_Unit.json"
        else:
            name = f"Volume{volume}_Unit_{unit}.json"
        return self._path / name

    def list_units(self) -> dict[str, list[str]]:
        """List available units grouped by volume.

        Returns:
            Mapping of volume number (str) to unit names, welcome first.

        Raises:
            OSError: If the vocabulary directory cannot be read.
        """
        units: dict[str, list[str]] = {}
        for entry in self._path.iterdir():
            match = _FILE_PATTERN.match(entry.name)
            if not match:
                continue
            volume, unit = match.group(1), match.group(2) or WELCOME_UNIT
            units.setdefault(volume, []).append(unit)
        return {
            volume: sorted(names, key=unit_sort_key)
            for volume, names in sorted(units.items(), key=lambda i: int(i[0]))
        }

    def load(self, volume: str, unit: str) -> list[Any]:
        """Return all entries of a unit.

        Raises:
            ResourceNotFound: If the unit file does not exist.
            ValueError: If the file is not a JSON array.
        """
        path = self._file_for(volume, unit)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise ResourceNotFound(
                f"Volume {volume} Unit {unit} not found"
            ) from None
        entries = orjson.loads(data)
        if not isinstance(entries, list):
            raise ValueError(f"{path.name} does not contain a JSON array")
        logger.debug(
            "Loaded %d entries for volume=%s unit=%s", len(entries), volume, unit,
        )
        return entries

    def sample(self, volume: str, unit: str, count: int) -> list[Any]:
        """Return ``count`` randomly chosen entries (fewer if the unit is short).

        Raises:
            InvalidRequest: If count is less than 1.
            ResourceNotFound: If the unit file does not exist.
        """
        if count < 1:
            raise InvalidRequest("Invalid count parameter")
        entries = self.load(volume, unit)
        return self._rng.sample(entries, min(count, len(entries)))

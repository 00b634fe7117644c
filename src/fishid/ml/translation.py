"""Species name translation (English model label -> display name)."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType

logger = logging.getLogger(__name__)

DEFAULT_FISH_NAMES: Mapping[str, str] = MappingProxyType(
    {
        "gourami": "гурами",
        "catfish": "сом",
        "perch": "окунь",
        "northern pike": "щука",
        "unknown": "неизвестная рыба",
    }
)


class TranslationTable:
    """Read-only lookup from lowercase English label to display name."""

    def __init__(self, names: Mapping[str, str] | None = None) -> None:
        source = DEFAULT_FISH_NAMES if names is None else names
        self._names: Mapping[str, str] = MappingProxyType(
            {key.strip().lower(): value for key, value in source.items()}
        )

    @classmethod
    def from_file(cls, path: str | Path) -> TranslationTable:
        """Load a table from a JSON object of ``{"label": "display name"}``."""
        with Path(path).open(encoding="utf-8") as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            raise ValueError(f"Translation file {path} must contain a JSON object")
        logger.info("Loaded %s translations from %s", len(data), path)
        return cls({str(k): str(v) for k, v in data.items()})

    def __len__(self) -> int:
        return len(self._names)

    def translate(self, label: str) -> str:
        """Resolve a display name for a model label.

        Exact case-insensitive match first, then a case-insensitive substring
        match in either direction, otherwise the label unchanged.
        """
        needle = label.strip().lower()
        if needle in self._names:
            return self._names[needle]

        if needle:
            for key, value in self._names.items():
                if key in needle or needle in key:
                    return value

        return label

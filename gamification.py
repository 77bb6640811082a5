"""Level and rank ladder used when experience points are granted."""

from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Sequence


class RankConfigError(ValueError):
    """Raised when a rank ladder file contains invalid data."""


@dataclass(frozen=True)
class Rank:
    """Immutable rank definition: reached at ``level`` once ``min_xp`` is earned."""

    level: int
    name: str
    min_xp: int


DEFAULT_RANKS: Sequence[Rank] = (
    Rank(1, "Stellar Cadet", 0),
    Rank(5, "Space Explorer", 5000),
    Rank(10, "Nebula Navigator", 10000),
    Rank(15, "Star Seeker", 15000),
    Rank(20, "Galaxy Guardian", 20000),
    Rank(25, "Stellar Master", 25000),
    Rank(30, "Cosmic Commander", 30000),
    Rank(40, "Galaxy Master", 40000),
    Rank(50, "Universal Legend", 50000),
)

DEFAULT_XP_PER_LEVEL = 1000
MAX_LEVEL = 100


class RankRegistry:
    """Rank ladder plus the XP-to-level arithmetic.

    The ladder defaults to :data:`DEFAULT_RANKS`; a JSON list of
    ``{"level", "name", "min_xp"}`` objects may replace it.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        xp_per_level: int = DEFAULT_XP_PER_LEVEL,
    ) -> None:
        if xp_per_level <= 0:
            raise RankConfigError("xp_per_level must be positive")
        self.xp_per_level = int(xp_per_level)
        self.path = Path(path) if path is not None else None
        self._ranks: List[Rank] = list(DEFAULT_RANKS)
        if self.path is not None:
            self.reload()

    # ------------------------------------------------------------------
    def reload(self) -> None:
        """Reload the ladder from ``self.path`` and validate the structure."""

        if self.path is None:
            return
        if not self.path.exists():
            raise FileNotFoundError(f"Rank ladder file not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)

        if not isinstance(raw, list):
            raise RankConfigError("Rank ladder file must contain a JSON list")

        ranks: List[Rank] = []
        for idx, entry in enumerate(raw, start=1):
            if not isinstance(entry, dict):
                raise RankConfigError(f"Entry #{idx} must be a JSON object")
            name = str(entry.get("name", "")).strip()
            if not name:
                raise RankConfigError(f"Entry #{idx} is missing a non-empty 'name'")
            try:
                level = int(entry["level"])
                min_xp = int(entry.get("min_xp", 0))
            except (KeyError, TypeError, ValueError) as exc:
                raise RankConfigError(f"Entry {name} needs integer 'level' and 'min_xp'") from exc
            if level < 1 or min_xp < 0:
                raise RankConfigError(f"Entry {name} has a negative threshold")
            ranks.append(Rank(level, name, min_xp))

        if not ranks:
            raise RankConfigError("Rank ladder file may not be empty")

        ranks.sort(key=lambda rank: (rank.level, rank.min_xp))
        self._ranks = ranks

    # ------------------------------------------------------------------
    @property
    def ranks(self) -> List[Rank]:
        return list(self._ranks)

    def level_for(self, xp: int) -> int:
        """Level reached with ``xp`` points: ``floor(xp / xp_per_level) + 1``."""

        return min(MAX_LEVEL, math.floor(max(0, xp) / self.xp_per_level) + 1)

    def xp_to_next_level(self, xp: int) -> int:
        next_threshold = self.level_for(xp) * self.xp_per_level
        return max(0, next_threshold - xp)

    def level_progress(self, xp: int) -> float:
        """Percentage (0-100) of the way from the current level to the next."""

        floor_xp = (self.level_for(xp) - 1) * self.xp_per_level
        return min(100.0, max(0.0, (xp - floor_xp) / self.xp_per_level * 100))

    def rank_name(self, level: int, xp: int) -> str:
        """Highest rank whose level and XP thresholds are both met."""

        for rank in sorted(self._ranks, key=lambda r: r.level, reverse=True):
            if level >= rank.level and xp >= rank.min_xp:
                return rank.name
        return self._ranks[0].name

    def __iter__(self) -> Iterable[Rank]:
        return iter(self._ranks)


def _registry_from_env() -> RankRegistry:
    raw_xp = os.getenv("XP_PER_LEVEL")
    xp_per_level = int(raw_xp) if raw_xp and raw_xp.strip() else DEFAULT_XP_PER_LEVEL
    return RankRegistry(os.getenv("GAMIFICATION_RANKS_PATH") or None, xp_per_level=xp_per_level)


RANKS = _registry_from_env()
"""Singleton registry used throughout the application."""


def reset_registry() -> RankRegistry:
    """Rebuild :data:`RANKS` from the current environment (used after config changes)."""

    global RANKS
    RANKS = _registry_from_env()
    return RANKS

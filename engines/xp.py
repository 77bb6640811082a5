"""Experience-point grants with award-once semantics."""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import db
import gamification
from env_validation import get_env_float

_LOGGER = logging.getLogger(__name__)

DEFAULT_MINI_TRAINING_XP_SHARE = 0.2


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def xp_for_score(base_points: int, score: Optional[int], passed: bool) -> int:
    """``base * score / 100`` for a scored pass, half the base otherwise."""

    multiplier = score / 100 if passed and score is not None else 0.5
    return round_half_up(base_points * multiplier)


@dataclass
class XpGrant:
    points: int
    total_xp: int
    level: int
    rank: str
    leveled_up: bool = False


class XpAwarder:
    """Grant XP once per ``(user, activity)`` and keep level and rank in sync.

    The ``xp_awards`` unique key makes a repeated grant a no-op that returns
    zero points, even when two submissions race.
    """

    def __init__(self, mini_training_share: Optional[float] = None) -> None:
        share = (
            get_env_float("MINI_TRAINING_XP_SHARE", DEFAULT_MINI_TRAINING_XP_SHARE)
            if mini_training_share is None
            else float(mini_training_share)
        )
        if not 0.0 < share <= 1.0:
            raise ValueError("mini_training_share must be in (0, 1]")
        self.mini_training_share = share
        self._lock = threading.Lock()

    def mini_training_base(self, training: Mapping[str, Any]) -> int:
        return round_half_up(int(training.get("total_xp") or 0) * self.mini_training_share)

    def award_xp(
        self,
        user_id: str,
        base_points: int,
        score: Optional[int],
        passed: bool,
        *,
        activity_type: str,
        activity_id: str,
    ) -> int:
        grant = self.grant(
            user_id,
            base_points,
            score,
            passed,
            activity_type=activity_type,
            activity_id=activity_id,
        )
        return grant.points if grant else 0

    def grant(
        self,
        user_id: str,
        base_points: int,
        score: Optional[int],
        passed: bool,
        *,
        activity_type: str,
        activity_id: str,
    ) -> Optional[XpGrant]:
        points = xp_for_score(base_points, score, passed)
        if points <= 0:
            return None

        registry = gamification.RANKS
        with self._lock:
            before = db.get_user(user_id)
            total = db.grant_xp(
                user_id,
                activity_type,
                activity_id,
                base_points=base_points,
                score=score,
                points=points,
            )
            if total is None:
                _LOGGER.info(
                    "XP for %s %s already granted to user %s", activity_type, activity_id, user_id
                )
                return None
            level = registry.level_for(total)
            rank = registry.rank_name(level, total)
            db.update_user_rank(user_id, level, rank)

        previous_level = int(before["level"]) if before else 1
        _LOGGER.info(
            "Granted %s XP to user %s for %s %s (total %s, level %s)",
            points,
            user_id,
            activity_type,
            activity_id,
            total,
            level,
        )
        return XpGrant(
            points=points,
            total_xp=total,
            level=level,
            rank=rank,
            leveled_up=level > previous_level,
        )

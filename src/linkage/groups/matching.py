"""
Natural match candidates for a founder.

The similarity formula itself lives outside this package. A scorer is any
callable ``(founder_key, candidate_key) -> float | None``; None means the
pair was not compared. Scores are bucketed by two thresholds:

    score >= true_match                 -> natural candidate
    near_match <= score < true_match    -> near miss (recorded, not claimed)
"""

import csv
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from linkage.config import Settings, settings as default_settings
from linkage.overrides.assembler import ScoredCandidate

logger = logging.getLogger(__name__)

Scorer = Callable[[str, str], Optional[float]]


class ScoreTableError(Exception):
    """Raised when a pair score table cannot be read."""

    pass


@dataclass(frozen=True)
class MatchThresholds:
    """Score cut-offs for natural matches and near misses."""

    true_match: float = 0.85
    near_match: float = 0.70

    def __post_init__(self) -> None:
        if not 0.0 <= self.near_match <= self.true_match <= 1.0:
            raise ValueError(
                f"Invalid thresholds: near_match={self.near_match}, true_match={self.true_match}"
            )

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "MatchThresholds":
        config = config or default_settings
        return cls(
            true_match=config.true_match_threshold,
            near_match=config.near_match_threshold,
        )

    def is_true_match(self, score: float) -> bool:
        return score >= self.true_match

    def is_near_match(self, score: float) -> bool:
        return self.near_match <= score < self.true_match


@dataclass
class MatchCandidates:
    """Candidates found for one founder."""

    naturals: list[ScoredCandidate] = field(default_factory=list)
    near_misses: list[ScoredCandidate] = field(default_factory=list)


class ThresholdMatcher:
    """Finds natural candidates for a founder by thresholding scorer output."""

    def __init__(self, scorer: Scorer, thresholds: Optional[MatchThresholds] = None):
        self.scorer = scorer
        self.thresholds = thresholds or MatchThresholds.from_settings()

    def find_candidates(
        self,
        founder_key: str,
        pool: Iterable[str],
        is_claimed: Optional[Callable[[str], bool]] = None,
    ) -> MatchCandidates:
        """
        Score the founder against every key in the pool.

        Claimed keys cannot become naturals but can still be near misses.

        Returns:
            MatchCandidates with naturals sorted by descending score, then key
        """
        claimed = is_claimed or (lambda key: False)
        result = MatchCandidates()

        for key in pool:
            if key == founder_key:
                continue
            score = self.scorer(founder_key, key)
            if score is None:
                continue
            if self.thresholds.is_true_match(score):
                if not claimed(key):
                    result.naturals.append(ScoredCandidate(key=key, score=score))
            elif self.thresholds.is_near_match(score):
                result.near_misses.append(ScoredCandidate(key=key, score=score))

        result.naturals.sort(key=lambda c: (-c.score, c.key))
        result.near_misses.sort(key=lambda c: (-c.score, c.key))
        return result


class PairScoreTable:
    """
    Symmetric table of precomputed pair similarity scores.

    Usable directly as a scorer: ``table(key1, key2)``.
    """

    def __init__(self) -> None:
        self._scores: dict[tuple[str, str], float] = {}
        self._neighbors: dict[str, set[str]] = {}

    @staticmethod
    def _pair(key1: str, key2: str) -> tuple[str, str]:
        return (key1, key2) if key1 <= key2 else (key2, key1)

    def add_score(self, key1: str, key2: str, score: float) -> None:
        if key1 == key2:
            return
        self._scores[self._pair(key1, key2)] = float(score)
        self._neighbors.setdefault(key1, set()).add(key2)
        self._neighbors.setdefault(key2, set()).add(key1)

    def get(self, key1: str, key2: str) -> Optional[float]:
        return self._scores.get(self._pair(key1, key2))

    def __call__(self, key1: str, key2: str) -> Optional[float]:
        return self.get(key1, key2)

    def __len__(self) -> int:
        return len(self._scores)

    def neighbors(self, key: str) -> set[str]:
        """Keys with a recorded score against the given key."""
        return set(self._neighbors.get(key, ()))

    @classmethod
    def from_rows(cls, rows: Iterable[list[str]]) -> "PairScoreTable":
        """Build from ``key1,key2,score`` rows; malformed rows are skipped with a warning."""
        table = cls()
        for line_no, row in enumerate(rows, start=1):
            if len(row) < 3 or not row[0].strip() or not row[1].strip():
                continue
            try:
                score = float(row[2])
            except ValueError:
                logger.warning(f"Score table row {line_no}: invalid score '{row[2]}'")
                continue
            table.add_score(row[0].strip(), row[1].strip(), score)
        return table

    @classmethod
    def load(cls, path: Path) -> "PairScoreTable":
        """Load a CSV score table with a ``key1,key2,score`` header row."""
        try:
            with open(path, newline="", encoding="utf-8") as f:
                rows = list(csv.reader(f))
        except OSError as e:
            raise ScoreTableError(f"Failed to read score table {path}: {e}") from e

        table = cls.from_rows(rows[1:])
        logger.info(f"Loaded {len(table)} pair scores from {path}")
        return table

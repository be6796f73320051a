"""
Entity group construction.

- Models: EntityGroup and the EntityGroupDatabase
- Matching: Threshold-based natural candidates from an external scorer
- Builder: Phase-ordered construction driving the GroupAssembler
"""

from linkage.groups.models import EntityGroup, EntityGroupDatabase, GroupDatabaseStats
from linkage.groups.matching import (
    MatchCandidates,
    MatchThresholds,
    PairScoreTable,
    ScoreTableError,
    ThresholdMatcher,
)
from linkage.groups.builder import BuildResult, EntityGroupBuilder, PhaseReport

__all__ = [
    # Models
    "EntityGroup",
    "EntityGroupDatabase",
    "GroupDatabaseStats",
    # Matching
    "MatchCandidates",
    "MatchThresholds",
    "PairScoreTable",
    "ScoreTableError",
    "ThresholdMatcher",
    # Builder
    "BuildResult",
    "EntityGroupBuilder",
    "PhaseReport",
]

"""
Phase-ordered entity group construction.

Drives one full build:
1. Reset override counters and validate rules against the entity universe
2. Build the Force-Match anchor schedule
3. Walk the construction phases in order. Every unclaimed entity founds a
   group whose members come from the GroupAssembler
4. Entities waiting on an unclaimed anchor are deferred so the anchor can
   pull them in; any still unclaimed at the end found their own groups
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Optional

from linkage.config import Settings, settings as default_settings
from linkage.entities.schemas import EntityRecord
from linkage.groups.matching import MatchCandidates, ThresholdMatcher
from linkage.groups.models import EntityGroup, EntityGroupDatabase
from linkage.overrides.assembler import GroupAssembler
from linkage.overrides.phases import PhaseClassifier, ScheduleEntry, default_phases, dependents_index
from linkage.overrides.stats import OverrideStats
from linkage.overrides.store import RuleStore
from linkage.overrides.validator import ValidationResult, validate_rules

logger = logging.getLogger(__name__)


@dataclass
class PhaseReport:
    """Counts for one construction phase."""

    phase: int
    description: str
    groups_created: int = 0
    members_added: int = 0
    near_misses_added: int = 0
    deferred: int = 0


@dataclass
class BuildResult:
    """Everything produced by one build."""

    database: EntityGroupDatabase
    validation: ValidationResult
    stats: OverrideStats
    schedule: dict[str, ScheduleEntry] = field(default_factory=dict)
    phases: list[PhaseReport] = field(default_factory=list)


class EntityGroupBuilder:
    """
    Builds an EntityGroupDatabase from an entity universe and override rules.

    Example:
        builder = EntityGroupBuilder(entities, store, ThresholdMatcher(scores))
        result = builder.build()
        print(result.database.summary())
    """

    def __init__(
        self,
        entities: Mapping[str, EntityRecord],
        store: RuleStore,
        matcher: Optional[ThresholdMatcher] = None,
        classifier: Optional[PhaseClassifier] = None,
        config: Optional[Settings] = None,
        stats: Optional[OverrideStats] = None,
    ):
        self.entities = entities
        self.store = store
        self.matcher = matcher
        self.config = config or default_settings
        self.classifier = classifier or PhaseClassifier(default_phases(self.config))
        self.stats = stats if stats is not None else OverrideStats()

    def build(self) -> BuildResult:
        """Run a full build. Rule statuses and counters are recomputed from scratch."""
        self.stats.reset()
        logger.info(f"Building entity groups for {len(self.entities)} entities")

        validation = validate_rules(self.store, self.entities, self.stats)
        schedule = self.classifier.build_schedule(self.store.force_match_rules, self.entities)
        waiting_for = dependents_index(schedule)

        database = EntityGroupDatabase()
        assembler = GroupAssembler(self.store, self.entities, self.stats)
        result = BuildResult(
            database=database,
            validation=validation,
            stats=self.stats,
            schedule=schedule,
        )

        deferred: list[str] = []
        by_phase = self._entities_by_phase()

        for phase in self.classifier.phase_numbers:
            report = PhaseReport(phase=phase, description=self.classifier.describe(phase))
            logger.info(f"--- Phase {phase}: {report.description} ---")

            for key in by_phase.get(phase, ()):
                if database.is_claimed(key):
                    continue
                pending = [a for a in waiting_for.get(key, ()) if not database.is_claimed(a)]
                if pending:
                    deferred.append(key)
                    report.deferred += 1
                    continue
                self._found_group(key, phase, database, assembler, report)

            logger.info(
                f"Phase {phase} complete: {report.groups_created} groups created, "
                f"{report.members_added} additional members, "
                f"{report.near_misses_added} near misses, {report.deferred} deferred"
            )
            result.phases.append(report)

        # Dependents whose anchors never pulled them in
        sweep = PhaseReport(phase=0, description="Deferred dependents")
        for key in deferred:
            if database.is_claimed(key):
                continue
            phase = self.classifier.classify(self.entities.get(key))
            self._found_group(key, phase, database, assembler, sweep)
        if sweep.groups_created:
            logger.info(f"Deferred sweep: {sweep.groups_created} groups created")
            result.phases.append(sweep)

        database.mark_complete()
        logger.info(database.summary())
        logger.info(f"Override stats: {self.stats.to_dict()}")
        return result

    def _entities_by_phase(self) -> dict[int, list[str]]:
        """Group entity keys by phase, keeping universe order inside a phase."""
        by_phase: dict[int, list[str]] = {}
        for key, entity in self.entities.items():
            by_phase.setdefault(self.classifier.classify(entity), []).append(key)

        # Catch-all phase: primary source first, then everything else
        fallback = by_phase.get(self.classifier.fallback_phase)
        if fallback:
            primary = self.config.primary_source
            fallback.sort(key=lambda k: not self.entities[k].is_from(primary))
        return by_phase

    def _found_group(
        self,
        founder_key: str,
        phase: int,
        database: EntityGroupDatabase,
        assembler: GroupAssembler,
        report: PhaseReport,
    ) -> EntityGroup:
        if self.matcher is not None:
            candidates = self.matcher.find_candidates(
                founder_key, self.entities.keys(), is_claimed=database.is_claimed
            )
        else:
            candidates = MatchCandidates()

        assembly = assembler.assemble(
            founder_key, candidates.naturals, is_claimed=database.is_claimed
        )

        founder = self.entities.get(founder_key)
        group = database.create_group(
            founder_key, phase=phase, source=founder.source if founder else None
        )
        report.groups_created += 1

        for key in assembly.members:
            if key == founder_key:
                continue
            member = self.entities.get(key)
            if database.add_member_to_group(
                group.index, key, source=member.source if member else None
            ):
                report.members_added += 1

        member_keys = assembly.member_keys
        for near_miss in candidates.near_misses:
            if near_miss.key in member_keys:
                continue
            database.add_near_miss_to_group(group.index, near_miss.key)
            report.near_misses_added += 1

        database.complete_group(group.index)
        return group

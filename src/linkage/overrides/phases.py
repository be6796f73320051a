"""
Construction phases and the Force-Match anchor schedule.

Groups are built phase by phase: collective households before individuals,
and within each entity type the primary source before the secondary source.
For a Force-Match pair the member built earlier is the anchor and the other
is its dependent, so that the dependent can be pulled into the anchor's group
instead of founding a group of its own.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Optional

from linkage.config import Settings, settings as default_settings
from linkage.entities.schemas import EntityRecord
from linkage.overrides.rules import ForceMatchRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhaseSpec:
    """One construction phase: entities of a source and type."""

    phase: int
    source: str
    entity_type: str
    description: str = ""

    def matches(self, entity: EntityRecord) -> bool:
        return (
            self.source.lower() in (entity.source or "").lower()
            and entity.entity_type == self.entity_type
        )


@dataclass
class AnchorAssignment:
    """Anchor/dependent split of a Force-Match pair."""

    anchor: str
    dependent: str
    anchor_phase: int


@dataclass
class ScheduleEntry:
    """Dependents that should be pulled into an anchor's group."""

    anchor_phase: int
    dependents: list[str] = field(default_factory=list)
    rule_ids: list[str] = field(default_factory=list)


def default_phases(config: Optional[Settings] = None) -> tuple[PhaseSpec, ...]:
    """Default phase order built from configured source and type names."""
    config = config or default_settings
    primary, secondary = config.primary_source, config.secondary_source
    household, individual = config.household_type, config.individual_type
    return (
        PhaseSpec(1, primary, household, f"{primary} households"),
        PhaseSpec(2, secondary, household, f"{secondary} households"),
        PhaseSpec(3, primary, individual, f"{primary} individuals"),
        PhaseSpec(4, secondary, individual, f"{secondary} individuals"),
    )


class PhaseClassifier:
    """
    Assigns construction phases and builds the Force-Match schedule.

    Entities matching no configured phase (and missing entities) fall into
    the final catch-all phase.
    """

    def __init__(self, phases: Optional[Iterable[PhaseSpec]] = None):
        self.phases = tuple(sorted(phases or default_phases(), key=lambda p: p.phase))
        self.fallback_phase = (self.phases[-1].phase + 1) if self.phases else 1

    @property
    def phase_numbers(self) -> list[int]:
        """All phase numbers in construction order, catch-all last."""
        return [p.phase for p in self.phases] + [self.fallback_phase]

    def describe(self, phase: int) -> str:
        for spec in self.phases:
            if spec.phase == phase:
                return spec.description or f"{spec.source} {spec.entity_type}"
        return "Remaining entity types"

    def classify(self, entity: Optional[EntityRecord]) -> int:
        """Return the construction phase of an entity; lower builds earlier."""
        if entity is None:
            return self.fallback_phase
        for spec in self.phases:
            if spec.matches(entity):
                return spec.phase
        return self.fallback_phase

    def determine_anchor(
        self,
        key1: str,
        key2: str,
        anchor_override: Optional[str],
        entities: Mapping[str, EntityRecord],
    ) -> AnchorAssignment:
        """
        Determine anchor and dependent for a Force-Match pair.

        An explicit override is the anchor outright. Otherwise the key with the
        earlier phase anchors, ties going to key1.
        """
        if anchor_override:
            dependent = key2 if anchor_override == key1 else key1
            return AnchorAssignment(
                anchor=anchor_override,
                dependent=dependent,
                anchor_phase=self.classify(entities.get(anchor_override)),
            )

        phase1 = self.classify(entities.get(key1))
        phase2 = self.classify(entities.get(key2))
        if phase1 <= phase2:
            return AnchorAssignment(anchor=key1, dependent=key2, anchor_phase=phase1)
        return AnchorAssignment(anchor=key2, dependent=key1, anchor_phase=phase2)

    def build_schedule(
        self,
        rules: Iterable[ForceMatchRule],
        entities: Mapping[str, EntityRecord],
    ) -> dict[str, ScheduleEntry]:
        """
        Accumulate ACTIVE Force-Match rules into one entry per anchor.

        Returns:
            Mapping of anchor key to its ScheduleEntry
        """
        schedule: dict[str, ScheduleEntry] = {}

        for rule in rules:
            if not rule.is_active:
                continue

            assignment = self.determine_anchor(
                rule.key1, rule.key2, rule.anchor_override, entities
            )
            entry = schedule.setdefault(
                assignment.anchor, ScheduleEntry(anchor_phase=assignment.anchor_phase)
            )
            if assignment.dependent not in entry.dependents:
                entry.dependents.append(assignment.dependent)
            entry.rule_ids.append(rule.rule_id)

        logger.info(f"Built schedule: {len(schedule)} anchors")
        return schedule


def schedule_for_phase(
    schedule: Mapping[str, ScheduleEntry],
    phase: int,
) -> dict[str, list[str]]:
    """Anchors (and their dependents) whose anchor phase is ``phase``."""
    return {
        anchor: list(entry.dependents)
        for anchor, entry in schedule.items()
        if entry.anchor_phase == phase
    }


def dependents_index(schedule: Mapping[str, ScheduleEntry]) -> dict[str, list[str]]:
    """Invert a schedule: dependent key -> anchors it waits for."""
    index: dict[str, list[str]] = {}
    for anchor, entry in schedule.items():
        for dependent in entry.dependents:
            index.setdefault(dependent, []).append(anchor)
    return index

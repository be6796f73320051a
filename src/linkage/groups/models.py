"""
Entity groups and the group database.

An EntityGroup collects every source record believed to describe the same
real-world entity. Membership is disjoint: once a key is claimed by a group
it cannot join another. Near misses are recorded for review but never claimed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

SERIALIZATION_TYPE = "EntityGroupDatabase"
SERIALIZATION_VERSION = "1.0"


@dataclass
class EntityGroup:
    """A set of entity keys linked as one real-world entity."""

    index: int
    founder_key: str
    member_keys: list[str] = field(default_factory=list)
    near_miss_keys: list[str] = field(default_factory=list)
    construction_phase: Optional[int] = None
    sources: set[str] = field(default_factory=set)
    complete: bool = False
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def __post_init__(self) -> None:
        if self.founder_key not in self.member_keys:
            self.member_keys.insert(0, self.founder_key)

    def add_member(self, key: str, source: Optional[str] = None) -> bool:
        """Add a member; returns False for a completed group or a duplicate key."""
        if self.complete:
            logger.warning(f"Group {self.index} is complete, cannot add {key}")
            return False
        if key in self.member_keys:
            return False
        self.member_keys.append(key)
        if source:
            self.sources.add(source.lower())
        return True

    def add_near_miss(self, key: str) -> None:
        if key not in self.near_miss_keys and key not in self.member_keys:
            self.near_miss_keys.append(key)

    def has_member_from(self, source: str) -> bool:
        """Check if any member came from the given source (substring, case-insensitive)."""
        source = source.lower()
        return any(source in s for s in self.sources)

    @property
    def member_count(self) -> int:
        return len(self.member_keys)

    @property
    def has_multiple_members(self) -> bool:
        return len(self.member_keys) > 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "founder_key": self.founder_key,
            "member_keys": list(self.member_keys),
            "near_miss_keys": list(self.near_miss_keys),
            "construction_phase": self.construction_phase,
            "sources": sorted(self.sources),
            "complete": self.complete,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntityGroup":
        return cls(
            index=int(data["index"]),
            founder_key=data["founder_key"],
            member_keys=list(data.get("member_keys", [])),
            near_miss_keys=list(data.get("near_miss_keys", [])),
            construction_phase=data.get("construction_phase"),
            sources=set(data.get("sources", [])),
            complete=bool(data.get("complete", False)),
            created_at=data.get("created_at") or datetime.now(timezone.utc).isoformat(),
        )


@dataclass
class PhaseCounts:
    groups: int = 0
    entities: int = 0


@dataclass
class GroupDatabaseStats:
    """Summary counts of a group database."""

    total_groups: int = 0
    single_member_groups: int = 0
    multi_member_groups: int = 0
    total_entities_assigned: int = 0
    near_miss_count: int = 0
    by_phase: dict[int, PhaseCounts] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_groups": self.total_groups,
            "single_member_groups": self.single_member_groups,
            "multi_member_groups": self.multi_member_groups,
            "total_entities_assigned": self.total_entities_assigned,
            "near_miss_count": self.near_miss_count,
            "by_phase": {
                str(phase): {"groups": c.groups, "entities": c.entities}
                for phase, c in sorted(self.by_phase.items())
            },
        }


class EntityGroupDatabase:
    """
    All groups of one build, indexed by group number and by member key.

    Group indices are assigned sequentially from 0 in creation order.
    """

    def __init__(self) -> None:
        self.groups: dict[int, EntityGroup] = {}
        self.next_index = 0
        self._group_by_key: dict[str, int] = {}
        self.construction_complete = False
        self.constructed_at: Optional[str] = None
        self.stats = GroupDatabaseStats()

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    def create_group(
        self,
        founder_key: str,
        phase: Optional[int] = None,
        source: Optional[str] = None,
    ) -> Optional[EntityGroup]:
        """Create a group seeded by founder_key; None if the key is already claimed."""
        if founder_key in self._group_by_key:
            logger.warning(f"Entity {founder_key} is already assigned to a group")
            return None

        group = EntityGroup(
            index=self.next_index,
            founder_key=founder_key,
            construction_phase=phase,
        )
        if source:
            group.sources.add(source.lower())

        self.groups[group.index] = group
        self._group_by_key[founder_key] = group.index
        self.next_index += 1
        return group

    def add_member_to_group(
        self,
        group_index: int,
        key: str,
        source: Optional[str] = None,
    ) -> bool:
        """Claim key for a group. Fails for claimed keys, unknown or completed groups."""
        if key in self._group_by_key:
            logger.warning(f"Entity {key} is already assigned to a group")
            return False

        group = self.groups.get(group_index)
        if group is None:
            logger.warning(f"Group {group_index} not found")
            return False

        if not group.add_member(key, source):
            return False
        self._group_by_key[key] = group_index
        return True

    def add_near_miss_to_group(self, group_index: int, key: str) -> bool:
        """Record a near miss. Near misses are not claimed."""
        group = self.groups.get(group_index)
        if group is None:
            logger.warning(f"Group {group_index} not found")
            return False
        group.add_near_miss(key)
        return True

    def complete_group(self, group_index: int) -> None:
        group = self.groups.get(group_index)
        if group is not None:
            group.complete = True

    def mark_complete(self) -> None:
        """Mark the whole build as finished."""
        self.construction_complete = True
        self.constructed_at = datetime.now(timezone.utc).isoformat()
        self.update_stats()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def is_claimed(self, key: str) -> bool:
        return key in self._group_by_key

    @property
    def claimed_keys(self) -> set[str]:
        return set(self._group_by_key)

    def get_group(self, index: int) -> Optional[EntityGroup]:
        return self.groups.get(index)

    def find_group_by_key(self, key: str) -> Optional[EntityGroup]:
        """Return the group a key is a member of, or None."""
        index = self._group_by_key.get(key)
        if index is None:
            return None
        return self.groups.get(index)

    def group_index_of(self, key: str) -> Optional[int]:
        return self._group_by_key.get(key)

    def all_groups(self) -> list[EntityGroup]:
        return [self.groups[i] for i in sorted(self.groups)]

    def filtered_groups(
        self,
        phase: Optional[int] = None,
        multi_member_only: bool = False,
        without_source: Optional[str] = None,
    ) -> list[EntityGroup]:
        """
        Get groups matching the given criteria.

        Args:
            phase: Only groups built in this construction phase
            multi_member_only: Only groups with more than one member
            without_source: Only groups with no member from this source
                (e.g. prospects absent from the primary source)
        """
        groups = self.all_groups()
        if phase is not None:
            groups = [g for g in groups if g.construction_phase == phase]
        if multi_member_only:
            groups = [g for g in groups if g.has_multiple_members]
        if without_source:
            groups = [g for g in groups if not g.has_member_from(without_source)]
        return groups

    def update_stats(self) -> GroupDatabaseStats:
        groups = self.all_groups()
        stats = GroupDatabaseStats(
            total_groups=len(groups),
            single_member_groups=sum(1 for g in groups if not g.has_multiple_members),
            multi_member_groups=sum(1 for g in groups if g.has_multiple_members),
            total_entities_assigned=len(self._group_by_key),
            near_miss_count=sum(len(g.near_miss_keys) for g in groups),
        )
        for group in groups:
            if group.construction_phase is None:
                continue
            counts = stats.by_phase.setdefault(group.construction_phase, PhaseCounts())
            counts.groups += 1
            counts.entities += group.member_count
        self.stats = stats
        return stats

    def summary(self) -> str:
        stats = self.update_stats()
        return (
            f"EntityGroupDatabase: {stats.total_groups} groups "
            f"({stats.multi_member_groups} multi-member, "
            f"{stats.single_member_groups} single-member), "
            f"{stats.total_entities_assigned} entities assigned, "
            f"{stats.near_miss_count} near-misses recorded"
        )

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def build_reference(self) -> dict[str, list[str]]:
        """Lightweight view: ``"{index}||{founder}"`` -> other member keys."""
        return {
            f"{g.index}||{g.founder_key}": [k for k in g.member_keys if k != g.founder_key]
            for g in self.all_groups()
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": SERIALIZATION_TYPE,
            "version": SERIALIZATION_VERSION,
            "groups": {str(i): g.to_dict() for i, g in sorted(self.groups.items())},
            "next_index": self.next_index,
            "construction_complete": self.construction_complete,
            "constructed_at": self.constructed_at,
            "stats": self.update_stats().to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntityGroupDatabase":
        if data.get("type") != SERIALIZATION_TYPE:
            raise ValueError("Invalid EntityGroupDatabase serialization format")

        database = cls()
        for group_data in data.get("groups", {}).values():
            group = EntityGroup.from_dict(group_data)
            database.groups[group.index] = group
            for key in group.member_keys:
                database._group_by_key[key] = group.index

        database.next_index = int(
            data.get("next_index", max(database.groups, default=-1) + 1)
        )
        database.construction_complete = bool(data.get("construction_complete", False))
        database.constructed_at = data.get("constructed_at")
        database.update_stats()
        return database

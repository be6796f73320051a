"""
Indexed storage for override rules.

A RuleStore is built once per run from freshly loaded rules and is read-only
afterwards. Exclusions are indexed by canonicalized key pair so that every
lookup is symmetric by construction.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterator, Optional, Union

from linkage.overrides.rules import (
    ExclusionMeta,
    ForceExcludeRule,
    ForceMatchRule,
    MutualSet,
    OnConflictPolicy,
    RuleKind,
)

logger = logging.getLogger(__name__)

Rule = Union[ForceMatchRule, ForceExcludeRule, MutualSet]


def pair_key(key1: str, key2: str) -> tuple[str, str]:
    """Canonical (sorted) form of an unordered key pair."""
    return (key1, key2) if key1 <= key2 else (key2, key1)


@dataclass
class RuleAddResult:
    """Outcome of inserting a rule into the store."""

    success: bool
    errors: list[str] = field(default_factory=list)
    key_count: int = 0


class RuleStore:
    """
    Holds pairwise and MUTUAL override rules with O(1) key lookups.

    Indices:
    - force-match rules by key
    - pairwise exclusions by canonical key pair
    - mutual inclusion / exclusion set indices by key
    """

    def __init__(self) -> None:
        self.force_match_rules: list[ForceMatchRule] = []
        self.force_exclude_rules: list[ForceExcludeRule] = []
        self.mutual_inclusion_sets: list[MutualSet] = []
        self.mutual_exclusion_sets: list[MutualSet] = []

        self._force_match_by_key: dict[str, list[ForceMatchRule]] = defaultdict(list)
        self._exclusions_by_pair: dict[tuple[str, str], list[ForceExcludeRule]] = defaultdict(list)
        self._exclusion_partners: dict[str, list[str]] = defaultdict(list)
        self._mutual_inclusion_index: dict[str, list[int]] = defaultdict(list)
        self._mutual_exclusion_index: dict[str, list[int]] = defaultdict(list)

    # -------------------------------------------------------------------------
    # Rule loading
    # -------------------------------------------------------------------------

    def add_force_match(self, rule: ForceMatchRule) -> RuleAddResult:
        """Validate and index a pairwise Force-Match rule."""
        errors = rule.validate()
        if errors:
            return RuleAddResult(success=False, errors=errors)

        self.force_match_rules.append(rule)
        self._force_match_by_key[rule.key1].append(rule)
        self._force_match_by_key[rule.key2].append(rule)
        return RuleAddResult(success=True, key_count=2)

    def add_force_exclude(self, rule: ForceExcludeRule) -> RuleAddResult:
        """Validate and index a pairwise Force-Exclude rule."""
        errors = rule.validate()
        if errors:
            return RuleAddResult(success=False, errors=errors)

        self.force_exclude_rules.append(rule)
        pair = pair_key(rule.defective_key, rule.other_key)
        if not self._exclusions_by_pair[pair]:
            self._exclusion_partners[rule.defective_key].append(rule.other_key)
            self._exclusion_partners[rule.other_key].append(rule.defective_key)
        self._exclusions_by_pair[pair].append(rule)
        return RuleAddResult(success=True, key_count=2)

    def add_mutual_inclusion(self, mutual_set: MutualSet) -> RuleAddResult:
        """Validate and index a MUTUAL inclusion set."""
        if mutual_set.kind != RuleKind.MUTUAL_INCLUDE:
            return RuleAddResult(success=False, errors=["not a MUTUAL inclusion set"])
        return self._add_mutual(
            mutual_set, self.mutual_inclusion_sets, self._mutual_inclusion_index
        )

    def add_mutual_exclusion(self, mutual_set: MutualSet) -> RuleAddResult:
        """Validate and index a MUTUAL exclusion set."""
        if mutual_set.kind != RuleKind.MUTUAL_EXCLUDE:
            return RuleAddResult(success=False, errors=["not a MUTUAL exclusion set"])
        return self._add_mutual(
            mutual_set, self.mutual_exclusion_sets, self._mutual_exclusion_index
        )

    def _add_mutual(
        self,
        mutual_set: MutualSet,
        sets: list[MutualSet],
        index: dict[str, list[int]],
    ) -> RuleAddResult:
        errors = mutual_set.validate()
        if errors:
            return RuleAddResult(success=False, errors=errors)

        if not mutual_set.rule_id:
            prefix = "MUTUAL-FM" if mutual_set.kind == RuleKind.MUTUAL_INCLUDE else "MUTUAL-FE"
            mutual_set.rule_id = f"{prefix}-{len(sets) + 1}"

        set_index = len(sets)
        sets.append(mutual_set)
        for key in mutual_set.keys:
            index[key].append(set_index)

        logger.debug(
            f"Added {mutual_set.kind.value} set {mutual_set.rule_id} "
            f"with {len(mutual_set.keys)} keys"
        )
        return RuleAddResult(success=True, key_count=len(mutual_set.keys))

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def get_force_matches_for(self, key: str) -> list[str]:
        """
        Get all entity keys that must be force-matched to the given key.

        Unions ACTIVE pairwise partners with co-members of ACTIVE mutual
        inclusion sets, de-duplicated in first-seen order. The key itself and
        mutual members absent from the entity universe are never returned.
        """
        result: dict[str, None] = {}

        for rule in self._force_match_by_key.get(key, ()):
            if not rule.is_active:
                continue
            partner = rule.partner_of(key)
            if partner and partner != key:
                result.setdefault(partner, None)

        for idx in self._mutual_inclusion_index.get(key, ()):
            mutual_set = self.mutual_inclusion_sets[idx]
            if not mutual_set.is_active:
                continue
            for member in mutual_set.present_keys:
                if member != key:
                    result.setdefault(member, None)

        return list(result)

    def get_exclusion_rule(self, key1: str, key2: str) -> Optional[ExclusionMeta]:
        """
        Get the exclusion metadata between two keys.

        Checks the pairwise index first, then MUTUAL exclusion sets containing
        both keys. Only ACTIVE rules participate.

        Returns:
            ExclusionMeta, or None if the pair is not excluded
        """
        if key1 == key2:
            return None

        for rule in self._exclusions_by_pair.get(pair_key(key1, key2), ()):
            if rule.is_active:
                return rule.to_meta()

        indices1 = self._mutual_exclusion_index.get(key1)
        if not indices1:
            return None
        indices2 = self._mutual_exclusion_index.get(key2)
        if not indices2:
            return None

        for idx in indices1:
            if idx not in indices2:
                continue
            mutual_set = self.mutual_exclusion_sets[idx]
            if not mutual_set.is_active:
                continue
            # Symmetric set: the first-queried key is the one that yields
            return ExclusionMeta(
                rule_id=mutual_set.rule_id,
                defective_key=key1,
                other_key=key2,
                on_conflict=OnConflictPolicy.USE_SIMILARITY,
                is_mutual=True,
            )

        return None

    def is_excluded_pair(self, key1: str, key2: str) -> bool:
        """Check if two keys have an exclusion between them."""
        return self.get_exclusion_rule(key1, key2) is not None

    def exclusion_partners(self, key: str) -> list[str]:
        """Keys that a given key is excluded from by ACTIVE pairwise rules."""
        return [
            partner
            for partner in self._exclusion_partners.get(key, ())
            if any(r.is_active for r in self._exclusions_by_pair[pair_key(key, partner)])
        ]

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def all_rules(self) -> Iterator[Rule]:
        """Iterate every stored rule and set, pairwise rules first."""
        yield from self.force_match_rules
        yield from self.force_exclude_rules
        yield from self.mutual_inclusion_sets
        yield from self.mutual_exclusion_sets

    def find_rule(self, rule_id: str) -> Optional[Rule]:
        """Find a rule by id; a bare id also matches its expanded sub-rules."""
        for rule in self.all_rules():
            if rule.rule_id == rule_id:
                return rule
        for rule in self.force_exclude_rules:
            if rule.expanded_from == rule_id:
                return rule
        return None

    @property
    def rule_count(self) -> int:
        return (
            len(self.force_match_rules)
            + len(self.force_exclude_rules)
            + len(self.mutual_inclusion_sets)
            + len(self.mutual_exclusion_sets)
        )

    def summary(self) -> dict[str, int]:
        """Counts of stored and active rules per kind."""
        return {
            "force_match_count": len(self.force_match_rules),
            "force_exclude_count": len(self.force_exclude_rules),
            "active_force_match": sum(r.is_active for r in self.force_match_rules),
            "active_force_exclude": sum(r.is_active for r in self.force_exclude_rules),
            "mutual_inclusion_sets": len(self.mutual_inclusion_sets),
            "mutual_inclusion_keys": sum(len(s.keys) for s in self.mutual_inclusion_sets),
            "mutual_exclusion_sets": len(self.mutual_exclusion_sets),
            "mutual_exclusion_keys": sum(len(s.keys) for s in self.mutual_exclusion_sets),
        }

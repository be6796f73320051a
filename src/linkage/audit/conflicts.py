"""
Conflict analysis for failing rules.

A failing exclusion whose keys also appear in inclusion rules (or the reverse)
usually means two rules are fighting. ``analyze_conflicts`` lists those
overlaps; ``investigate_exclusion_failure`` digs into one failed exclusion and
finds the chain of inclusion rules that pulled its two keys together.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Optional

import networkx as nx

from linkage.audit.auditor import AuditResult
from linkage.groups.models import EntityGroupDatabase
from linkage.overrides.rules import ForceExcludeRule, RuleKind
from linkage.overrides.store import RuleStore

logger = logging.getLogger(__name__)


@dataclass
class KeyConflict:
    """A key of a failing rule that also appears in rules of the opposite type."""

    key: str
    rule_ids: list[str]


@dataclass
class RuleConflict:
    """A failing rule and its overlapping keys."""

    failed_rule_id: str
    failed_rule_type: RuleKind
    reason: str
    conflicts: list[KeyConflict] = field(default_factory=list)


@dataclass
class ConflictAnalysis:
    """Overlaps between failing rules and rules of the opposite type."""

    inclusion_conflicts: list[RuleConflict] = field(default_factory=list)
    exclusion_conflicts: list[RuleConflict] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.inclusion_conflicts or self.exclusion_conflicts)


def _add_key(index: dict[str, list[str]], key: str, rule_id: str) -> None:
    rule_ids = index.setdefault(key, [])
    if rule_id not in rule_ids:
        rule_ids.append(rule_id)


def inclusion_key_index(store: RuleStore) -> dict[str, list[str]]:
    """Key -> ids of ACTIVE inclusion rules and sets naming it."""
    index: dict[str, list[str]] = {}
    for rule in store.force_match_rules:
        if rule.is_active:
            _add_key(index, rule.key1, rule.rule_id)
            _add_key(index, rule.key2, rule.rule_id)
    for mutual_set in store.mutual_inclusion_sets:
        if mutual_set.is_active:
            for key in mutual_set.keys:
                _add_key(index, key, mutual_set.rule_id)
    return index


def exclusion_key_index(store: RuleStore) -> dict[str, list[str]]:
    """Key -> ids of ACTIVE exclusion rules and sets naming it."""
    index: dict[str, list[str]] = {}
    for rule in store.force_exclude_rules:
        if rule.is_active:
            _add_key(index, rule.defective_key, rule.rule_id)
            _add_key(index, rule.other_key, rule.rule_id)
    for mutual_set in store.mutual_exclusion_sets:
        if mutual_set.is_active:
            for key in mutual_set.keys:
                _add_key(index, key, mutual_set.rule_id)
    return index


def _cross_reference(
    failures: Iterable[AuditResult],
    index: dict[str, list[str]],
) -> list[RuleConflict]:
    conflicts = []
    for failure in failures:
        key_conflicts = [
            KeyConflict(key=key, rule_ids=list(index[key]))
            for key in failure.keys
            if index.get(key)
        ]
        if key_conflicts:
            conflicts.append(
                RuleConflict(
                    failed_rule_id=failure.rule_id,
                    failed_rule_type=failure.rule_type,
                    reason=failure.reason,
                    conflicts=key_conflicts,
                )
            )
    return conflicts


def analyze_conflicts(
    failed_inclusions: Iterable[AuditResult],
    failed_exclusions: Iterable[AuditResult],
    store: RuleStore,
) -> ConflictAnalysis:
    """
    Cross-reference failing rules against rules of the opposite type.

    Failing exclusions are checked against inclusion rules, failing
    inclusions against exclusion rules.
    """
    analysis = ConflictAnalysis(
        exclusion_conflicts=_cross_reference(failed_exclusions, inclusion_key_index(store)),
        inclusion_conflicts=_cross_reference(failed_inclusions, exclusion_key_index(store)),
    )
    logger.info(
        f"Conflict analysis: {len(analysis.exclusion_conflicts)} failing exclusions and "
        f"{len(analysis.inclusion_conflicts)} failing inclusions overlap other rules"
    )
    return analysis


# =============================================================================
# Exclusion failure investigation
# =============================================================================


@dataclass
class InclusionLink:
    """An ACTIVE inclusion rule touching a key of interest."""

    rule_id: str
    rule_type: RuleKind
    keys: list[str]


@dataclass
class ExclusionInvestigation:
    """Why a Force-Exclude rule's two keys share (or do not share) a group."""

    rule: ForceExcludeRule
    group1_index: Optional[int] = None
    group2_index: Optional[int] = None
    group_members: list[str] = field(default_factory=list)
    direct_inclusions: list[InclusionLink] = field(default_factory=list)
    chain: list[str] = field(default_factory=list)
    chain_rule_ids: list[str] = field(default_factory=list)

    @property
    def violated(self) -> bool:
        return self.group1_index is not None and self.group1_index == self.group2_index

    @property
    def joined_by_natural_matching(self) -> bool:
        """A violation with no inclusion chain came from similarity matching."""
        return self.violated and not self.chain


def build_inclusion_graph(store: RuleStore, nodes: Optional[set[str]] = None) -> nx.Graph:
    """
    Undirected graph of ACTIVE inclusion rules.

    Edges carry the ids of every rule joining the two keys. MUTUAL inclusion
    sets contribute their complete pairwise graph. When ``nodes`` is given,
    only edges between those keys are added.
    """
    graph = nx.Graph()

    def link(key1: str, key2: str, rule_id: str) -> None:
        if nodes is not None and (key1 not in nodes or key2 not in nodes):
            return
        if graph.has_edge(key1, key2):
            graph[key1][key2]["rule_ids"].append(rule_id)
        else:
            graph.add_edge(key1, key2, rule_ids=[rule_id])

    for rule in store.force_match_rules:
        if rule.is_active:
            link(rule.key1, rule.key2, rule.rule_id)
    for mutual_set in store.mutual_inclusion_sets:
        if mutual_set.is_active:
            for key1, key2 in mutual_set.pairs():
                link(key1, key2, mutual_set.rule_id)
    return graph


def investigate_exclusion_failure(
    rule_id: str,
    store: RuleStore,
    database: EntityGroupDatabase,
) -> Optional[ExclusionInvestigation]:
    """
    Explain a failed Force-Exclude rule.

    Args:
        rule_id: Rule id, or the id of a one-to-many row (first sub-rule used)
        store: Rules of the build
        database: The built group database

    Returns:
        ExclusionInvestigation, or None if no Force-Exclude rule has that id
    """
    rule = store.find_rule(rule_id)
    if not isinstance(rule, ForceExcludeRule):
        logger.warning(f"Rule {rule_id} not found among FORCE_EXCLUDE rules")
        return None

    group1 = database.find_group_by_key(rule.defective_key)
    group2 = database.find_group_by_key(rule.other_key)
    investigation = ExclusionInvestigation(
        rule=rule,
        group1_index=group1.index if group1 else None,
        group2_index=group2.index if group2 else None,
    )
    if not investigation.violated:
        return investigation

    investigation.group_members = list(group1.member_keys)
    targets = {rule.defective_key, rule.other_key}

    for fm_rule in store.force_match_rules:
        if fm_rule.is_active and targets.intersection(fm_rule.keys):
            investigation.direct_inclusions.append(
                InclusionLink(fm_rule.rule_id, RuleKind.FORCE_MATCH, list(fm_rule.keys))
            )
    for mutual_set in store.mutual_inclusion_sets:
        if mutual_set.is_active and targets.intersection(mutual_set.keys):
            investigation.direct_inclusions.append(
                InclusionLink(mutual_set.rule_id, RuleKind.MUTUAL_INCLUDE, list(mutual_set.keys))
            )

    graph = build_inclusion_graph(store, nodes=set(group1.member_keys))
    try:
        path = nx.shortest_path(graph, rule.defective_key, rule.other_key)
    except (nx.NetworkXNoPath, nx.NodeNotFound):
        path = []

    investigation.chain = path
    for key1, key2 in zip(path, path[1:]):
        for chain_rule_id in graph[key1][key2]["rule_ids"]:
            if chain_rule_id not in investigation.chain_rule_ids:
                investigation.chain_rule_ids.append(chain_rule_id)

    if path:
        logger.info(
            f"{rule.rule_id}: keys joined through inclusion chain "
            f"{' -> '.join(path)} ({', '.join(investigation.chain_rule_ids)})"
        )
    else:
        logger.info(f"{rule.rule_id}: no inclusion chain, keys joined by natural matching")
    return investigation

"""
Validation of loaded override rules against the entity universe.

Two passes, in this order:
1. Orphan check: rules referencing keys missing from the universe become ORPHANED
2. Contradiction check: a Force-Match and a Force-Exclude naming the same pair
   both become ERROR

Orphaned rules never take part in the contradiction pass. Rules loaded as
ORPHANED or ERROR keep that status and are skipped by both passes, as are
DISABLED rules. Every other rule is recomputed from its keys on each call, so
validating the same rules against the same universe twice gives the same
statuses and counter increments.
"""

import logging
from collections.abc import Container
from dataclasses import dataclass, field
from typing import Optional

from linkage.overrides.rules import RuleStatus
from linkage.overrides.stats import OverrideStats
from linkage.overrides.store import RuleStore, pair_key

logger = logging.getLogger(__name__)

LOADED_TERMINAL_STATUSES = (RuleStatus.ORPHANED, RuleStatus.ERROR)


@dataclass
class ValidationResult:
    """Outcome of validating a rule store."""

    valid: int = 0
    orphaned: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def contradictions(self) -> int:
        return len(self.errors)


def _skipped(rule) -> bool:
    """Restore and skip rules whose loaded status is DISABLED, ORPHANED or ERROR."""
    if rule.initial_status in LOADED_TERMINAL_STATUSES:
        rule.status = rule.initial_status
        return True
    return rule.status == RuleStatus.DISABLED


def validate_rules(
    store: RuleStore,
    universe: Container[str],
    stats: Optional[OverrideStats] = None,
) -> ValidationResult:
    """
    Validate every rule in the store against the entity universe.

    Args:
        store: Rule store to validate (rule statuses are updated in place)
        universe: Container of every entity key that exists in this run
        stats: Counters to increment (orphaned_rules, errors)

    Returns:
        ValidationResult with counts, contradiction messages and warnings
    """
    stats = stats if stats is not None else OverrideStats()
    result = ValidationResult()

    # Pass 1: referential integrity
    for rule in [*store.force_match_rules, *store.force_exclude_rules]:
        if _skipped(rule):
            continue
        if all(key in universe for key in rule.keys):
            rule.status = RuleStatus.ACTIVE
            result.valid += 1
            continue
        rule.status = RuleStatus.ORPHANED
        result.orphaned += 1
        stats.orphaned_rules += 1
        logger.debug(f"Orphaned rule {rule.rule_id}: key not in entity universe")

    for mutual_set in [*store.mutual_inclusion_sets, *store.mutual_exclusion_sets]:
        if _skipped(mutual_set):
            continue
        absent = frozenset(k for k in mutual_set.keys if k not in universe)
        mutual_set.absent_keys = absent
        if absent:
            result.warnings.append(
                f"{mutual_set.rule_id}: {len(absent)} key(s) not in entity universe: "
                f"{', '.join(sorted(absent))}"
            )
        if len(mutual_set.present_keys) < 2:
            mutual_set.status = RuleStatus.ORPHANED
            result.orphaned += 1
            stats.orphaned_rules += 1
        else:
            mutual_set.status = RuleStatus.ACTIVE
            result.valid += 1

    # Pass 2: Force-Match vs Force-Exclude on the same pair
    excludes_by_pair: dict[tuple[str, str], list] = {}
    for fe_rule in store.force_exclude_rules:
        if fe_rule.status != RuleStatus.ACTIVE:
            continue
        excludes_by_pair.setdefault(
            pair_key(fe_rule.defective_key, fe_rule.other_key), []
        ).append(fe_rule)

    for fm_rule in store.force_match_rules:
        if fm_rule.status != RuleStatus.ACTIVE:
            continue
        for fe_rule in excludes_by_pair.get(pair_key(fm_rule.key1, fm_rule.key2), ()):
            result.errors.append(f"Contradiction: {fm_rule.rule_id} vs {fe_rule.rule_id}")
            fm_rule.status = RuleStatus.ERROR
            fe_rule.status = RuleStatus.ERROR
            stats.errors += 1

    for warning in result.warnings:
        logger.warning(warning)
    for error in result.errors:
        logger.warning(error)

    logger.info(
        f"Validation: {result.valid} valid, {result.orphaned} orphaned, "
        f"{len(result.errors)} errors"
    )
    return result

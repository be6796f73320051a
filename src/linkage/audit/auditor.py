"""
Post-build audit of override rules.

Replays every rule against a finished EntityGroupDatabase:
- Inclusion (FORCE_MATCH, MUTUAL_INCLUDE): did the keys end up in one group?
- Exclusion (FORCE_EXCLUDE, MUTUAL_EXCLUDE): did the keys stay apart?

The audit only reads the database and the store.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from linkage.groups.models import EntityGroupDatabase
from linkage.overrides.rules import RuleKind
from linkage.overrides.store import RuleStore

logger = logging.getLogger(__name__)

MUTUAL_KEY_SEPARATOR = " | "


class AuditStatus(str, Enum):
    """Outcome of checking one rule."""

    PASS = "PASS"
    FAIL = "FAIL"
    SKIPPED = "SKIPPED"


@dataclass
class AuditResult:
    """Audit outcome for a single rule or MUTUAL set."""

    rule_type: RuleKind
    rule_id: str
    status: AuditStatus
    keys: list[str]
    reason: str = ""
    group1_index: Optional[int] = None
    group2_index: Optional[int] = None

    @property
    def is_mutual(self) -> bool:
        return self.rule_type in (RuleKind.MUTUAL_INCLUDE, RuleKind.MUTUAL_EXCLUDE)

    @property
    def key1(self) -> str:
        """First key column; MUTUAL key lists are joined for display."""
        if self.is_mutual:
            return MUTUAL_KEY_SEPARATOR.join(self.keys)
        return self.keys[0] if self.keys else ""

    @property
    def key2(self) -> str:
        if self.is_mutual or len(self.keys) < 2:
            return ""
        return self.keys[1]


@dataclass
class RuleAudit:
    """Results of auditing one family of rules."""

    results: list[AuditResult] = field(default_factory=list)

    def add(self, result: AuditResult) -> None:
        self.results.append(result)

    def _count(self, status: AuditStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def pass_count(self) -> int:
        return self._count(AuditStatus.PASS)

    @property
    def fail_count(self) -> int:
        return self._count(AuditStatus.FAIL)

    @property
    def skip_count(self) -> int:
        return self._count(AuditStatus.SKIPPED)

    @property
    def failures(self) -> list[AuditResult]:
        return [r for r in self.results if r.status == AuditStatus.FAIL]


def _group_index(database: EntityGroupDatabase, key: str) -> Optional[int]:
    group = database.find_group_by_key(key)
    return group.index if group else None


def audit_inclusion(store: RuleStore, database: EntityGroupDatabase) -> RuleAudit:
    """
    Audit FORCE_MATCH rules and MUTUAL inclusion sets.

    Returns:
        RuleAudit with one result per rule or set
    """
    audit = RuleAudit()

    for rule in store.force_match_rules:
        result = AuditResult(
            rule_type=RuleKind.FORCE_MATCH,
            rule_id=rule.rule_id,
            status=AuditStatus.SKIPPED,
            keys=[rule.key1, rule.key2],
        )
        audit.add(result)

        if not rule.is_active:
            result.reason = f"Rule status: {rule.status.value}"
            continue

        result.group1_index = _group_index(database, rule.key1)
        result.group2_index = _group_index(database, rule.key2)

        if result.group1_index is None and result.group2_index is None:
            result.reason = "Both entities not in any group (may be orphaned)"
        elif result.group1_index is None:
            result.status = AuditStatus.FAIL
            result.reason = "Entity 1 not in any group"
        elif result.group2_index is None:
            result.status = AuditStatus.FAIL
            result.reason = "Entity 2 not in any group"
        elif result.group1_index == result.group2_index:
            result.status = AuditStatus.PASS
            result.reason = f"Both in group {result.group1_index}"
        else:
            result.status = AuditStatus.FAIL
            result.reason = f"Different groups: {result.group1_index} vs {result.group2_index}"

    for mutual_set in store.mutual_inclusion_sets:
        result = AuditResult(
            rule_type=RuleKind.MUTUAL_INCLUDE,
            rule_id=mutual_set.rule_id,
            status=AuditStatus.SKIPPED,
            keys=list(mutual_set.keys),
        )
        audit.add(result)

        if not mutual_set.is_active:
            result.reason = f"Rule status: {mutual_set.status.value}"
            continue

        present = mutual_set.present_keys
        absent_note = (
            f" (absent from universe: {', '.join(sorted(mutual_set.absent_keys))})"
            if mutual_set.absent_keys
            else ""
        )
        located = {key: _group_index(database, key) for key in present}
        missing = [key for key, index in located.items() if index is None]
        indices = list(dict.fromkeys(i for i in located.values() if i is not None))

        if len(missing) == len(present):
            result.reason = "All keys not in any group (may be orphaned)"
        elif missing:
            result.status = AuditStatus.FAIL
            result.reason = f"{len(missing)} keys not in any group: {', '.join(missing)}"
            result.group1_index = indices[0]
        elif len(indices) == 1:
            result.status = AuditStatus.PASS
            result.reason = f"All {len(present)} keys in group {indices[0]}"
            result.group1_index = result.group2_index = indices[0]
        else:
            result.status = AuditStatus.FAIL
            result.reason = (
                f"Keys spread across {len(indices)} groups: "
                f"{', '.join(str(i) for i in indices)}"
            )
            result.group1_index, result.group2_index = indices[0], indices[1]
        result.reason += absent_note

    logger.info(
        f"Inclusion audit: {audit.pass_count} pass, {audit.fail_count} fail, "
        f"{audit.skip_count} skipped"
    )
    return audit


def audit_exclusion(store: RuleStore, database: EntityGroupDatabase) -> RuleAudit:
    """
    Audit FORCE_EXCLUDE rules and MUTUAL exclusion sets.

    A key that is in no group satisfies its exclusions vacuously; such rules
    are reported as SKIPPED, never as failures.

    Returns:
        RuleAudit with one result per rule or set
    """
    audit = RuleAudit()

    for rule in store.force_exclude_rules:
        result = AuditResult(
            rule_type=RuleKind.FORCE_EXCLUDE,
            rule_id=rule.rule_id,
            status=AuditStatus.SKIPPED,
            keys=[rule.defective_key, rule.other_key],
        )
        audit.add(result)

        if not rule.is_active:
            result.reason = f"Rule status: {rule.status.value}"
            continue

        result.group1_index = _group_index(database, rule.defective_key)
        result.group2_index = _group_index(database, rule.other_key)

        if result.group1_index is None and result.group2_index is None:
            result.reason = "Neither entity in any group"
        elif result.group1_index is None:
            result.reason = "Defective entity not in any group"
        elif result.group2_index is None:
            result.reason = "Other entity not in any group"
        elif result.group1_index != result.group2_index:
            result.status = AuditStatus.PASS
            result.reason = (
                f"Correctly separated: groups {result.group1_index} and {result.group2_index}"
            )
        else:
            result.status = AuditStatus.FAIL
            result.reason = f"VIOLATION: Both in group {result.group1_index}"

    for mutual_set in store.mutual_exclusion_sets:
        result = AuditResult(
            rule_type=RuleKind.MUTUAL_EXCLUDE,
            rule_id=mutual_set.rule_id,
            status=AuditStatus.SKIPPED,
            keys=list(mutual_set.keys),
        )
        audit.add(result)

        if not mutual_set.is_active:
            result.reason = f"Rule status: {mutual_set.status.value}"
            continue

        located = {key: _group_index(database, key) for key in mutual_set.keys}
        violations = [
            (k1, k2, located[k1])
            for k1, k2 in mutual_set.pairs()
            if located[k1] is not None and located[k1] == located[k2]
        ]
        grouped = sum(1 for index in located.values() if index is not None)

        if violations:
            details = "; ".join(f"{k1} & {k2} both in group {index}" for k1, k2, index in violations)
            result.status = AuditStatus.FAIL
            result.reason = f"{len(violations)} violation(s): {details}"
            result.group1_index = result.group2_index = violations[0][2]
        elif grouped < 2:
            result.reason = f"Only {grouped} of {len(mutual_set.keys)} keys in any group"
        else:
            result.status = AuditStatus.PASS
            result.reason = f"All {len(mutual_set.keys)} keys in separate groups (or not grouped)"

    logger.info(
        f"Exclusion audit: {audit.pass_count} pass, {audit.fail_count} fail, "
        f"{audit.skip_count} skipped"
    )
    return audit

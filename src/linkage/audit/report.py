"""
Audit report assembly and CSV export.
"""

import csv
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from linkage.audit.auditor import AuditResult, RuleAudit, audit_exclusion, audit_inclusion
from linkage.audit.conflicts import ConflictAnalysis, analyze_conflicts
from linkage.groups.models import EntityGroupDatabase
from linkage.overrides.store import RuleStore

logger = logging.getLogger(__name__)

RESULT_HEADER = ["RuleType", "RuleId", "Status", "Key1", "Key2", "Group1Index", "Group2Index", "Reason"]
CONFLICT_HEADER = ["FailedRuleId", "FailedRuleType", "FailureReason", "ConflictingKey", "ConflictsWith"]
NO_CONFLICTS_LINE = "No conflicts found between failing rules and other rules."


@dataclass
class AuditReport:
    """Complete audit of a build: both rule families and their conflicts."""

    inclusion: RuleAudit
    exclusion: RuleAudit
    conflicts: Optional[ConflictAnalysis] = None
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def results(self) -> list[AuditResult]:
        return [*self.inclusion.results, *self.exclusion.results]

    @property
    def total_pass(self) -> int:
        return self.inclusion.pass_count + self.exclusion.pass_count

    @property
    def total_fail(self) -> int:
        return self.inclusion.fail_count + self.exclusion.fail_count

    @property
    def total_skip(self) -> int:
        return self.inclusion.skip_count + self.exclusion.skip_count

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def all_passed(self) -> bool:
        return self.total_fail == 0

    def summary(self) -> dict:
        return {
            "total": self.total,
            "pass": self.total_pass,
            "fail": self.total_fail,
            "skipped": self.total_skip,
            "inclusion": {
                "pass": self.inclusion.pass_count,
                "fail": self.inclusion.fail_count,
                "skipped": self.inclusion.skip_count,
            },
            "exclusion": {
                "pass": self.exclusion.pass_count,
                "fail": self.exclusion.fail_count,
                "skipped": self.exclusion.skip_count,
            },
        }


def run_audit(store: RuleStore, database: EntityGroupDatabase) -> AuditReport:
    """
    Audit every rule against a built group database.

    Conflict analysis runs only when at least one rule failed.
    """
    logger.info(
        f"Auditing {store.rule_count} rules against {len(database.groups)} groups"
    )
    report = AuditReport(
        inclusion=audit_inclusion(store, database),
        exclusion=audit_exclusion(store, database),
    )

    if report.total_fail:
        report.conflicts = analyze_conflicts(
            report.inclusion.failures, report.exclusion.failures, store
        )
        for failure in [*report.inclusion.failures, *report.exclusion.failures]:
            logger.warning(f"{failure.rule_id}: {failure.reason}")

    logger.info(
        f"Audit summary: {report.total_pass} pass, {report.total_fail} fail, "
        f"{report.total_skip} skipped"
    )
    return report


def _index_cell(index: Optional[int]) -> str:
    return "" if index is None else str(index)


def render_audit_csv(report: AuditReport) -> str:
    """
    Render an audit report as CSV text.

    Layout: summary block, the per-rule result table, then the conflict block.
    """
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")

    output.write("Override Rules Audit Report\n")
    output.write(f"Generated: {report.generated_at.isoformat()}\n")
    output.write("\n")
    output.write("Summary:\n")
    output.write(
        f"Inclusion - Pass: {report.inclusion.pass_count}, "
        f"Fail: {report.inclusion.fail_count}, Skip: {report.inclusion.skip_count}\n"
    )
    output.write(
        f"Exclusion - Pass: {report.exclusion.pass_count}, "
        f"Fail: {report.exclusion.fail_count}, Skip: {report.exclusion.skip_count}\n"
    )
    output.write("\n")

    writer.writerow(RESULT_HEADER)
    for result in report.results:
        writer.writerow([
            result.rule_type.value,
            result.rule_id,
            result.status.value,
            result.key1,
            result.key2,
            _index_cell(result.group1_index),
            _index_cell(result.group2_index),
            result.reason,
        ])

    if report.conflicts is not None:
        output.write("\n")
        output.write("Conflict Analysis:\n")
        if not report.conflicts.has_conflicts:
            output.write(NO_CONFLICTS_LINE + "\n")
        else:
            writer.writerow(CONFLICT_HEADER)
            for conflict in report.conflicts.exclusion_conflicts:
                for key_conflict in conflict.conflicts:
                    writer.writerow([
                        conflict.failed_rule_id,
                        conflict.failed_rule_type.value,
                        conflict.reason,
                        key_conflict.key,
                        "INCLUSION: " + "; ".join(key_conflict.rule_ids),
                    ])
            for conflict in report.conflicts.inclusion_conflicts:
                for key_conflict in conflict.conflicts:
                    writer.writerow([
                        conflict.failed_rule_id,
                        conflict.failed_rule_type.value,
                        conflict.reason,
                        key_conflict.key,
                        "EXCLUSION: " + "; ".join(key_conflict.rule_ids),
                    ])

    return output.getvalue()

"""
Post-build audit of override rules.
"""

from linkage.audit.auditor import (
    AuditResult,
    AuditStatus,
    RuleAudit,
    audit_exclusion,
    audit_inclusion,
)
from linkage.audit.conflicts import (
    ConflictAnalysis,
    ExclusionInvestigation,
    KeyConflict,
    RuleConflict,
    analyze_conflicts,
    build_inclusion_graph,
    investigate_exclusion_failure,
)
from linkage.audit.report import AuditReport, render_audit_csv, run_audit

__all__ = [
    "AuditResult",
    "AuditStatus",
    "RuleAudit",
    "audit_exclusion",
    "audit_inclusion",
    "ConflictAnalysis",
    "ExclusionInvestigation",
    "KeyConflict",
    "RuleConflict",
    "analyze_conflicts",
    "build_inclusion_graph",
    "investigate_exclusion_failure",
    "AuditReport",
    "render_audit_csv",
    "run_audit",
]

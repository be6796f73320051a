"""
Unit tests for the override rule audit, conflict analysis and report export.
"""

from datetime import datetime, timezone

import pytest

from linkage.audit import (
    AuditStatus,
    audit_exclusion,
    audit_inclusion,
    build_inclusion_graph,
    investigate_exclusion_failure,
    render_audit_csv,
    run_audit,
)
from linkage.groups.models import EntityGroupDatabase
from linkage.overrides.rules import RuleKind, RuleStatus, make_force_exclude, make_force_match, make_mutual_set
from linkage.overrides.validator import validate_rules


@pytest.fixture
def database():
    """Groups: 0 = {a, b, c}, 1 = {d}, 2 = {e}; x is ungrouped."""
    db = EntityGroupDatabase()
    first = db.create_group("a", phase=3)
    db.add_member_to_group(first.index, "b")
    db.add_member_to_group(first.index, "c")
    db.create_group("d", phase=4)
    db.create_group("e", phase=4)
    db.mark_complete()
    return db


def only(audit):
    assert len(audit.results) == 1
    return audit.results[0]


class TestInclusionAudit:
    """Tests for FORCE_MATCH and MUTUAL_INCLUDE outcomes."""

    def test_same_group_passes(self, store, database):
        store.add_force_match(make_force_match("FM-1", "a", "b"))
        result = only(audit_inclusion(store, database))
        assert result.status == AuditStatus.PASS
        assert result.reason == "Both in group 0"

    def test_different_groups_fail(self, store, database):
        store.add_force_match(make_force_match("FM-1", "a", "d"))
        result = only(audit_inclusion(store, database))
        assert result.status == AuditStatus.FAIL
        assert result.reason == "Different groups: 0 vs 1"

    def test_one_side_ungrouped_fails(self, store, database):
        store.add_force_match(make_force_match("FM-1", "x", "a"))
        result = only(audit_inclusion(store, database))
        assert result.status == AuditStatus.FAIL
        assert result.reason == "Entity 1 not in any group"

    def test_both_ungrouped_skipped(self, store, database):
        store.add_force_match(make_force_match("FM-1", "x", "y"))
        result = only(audit_inclusion(store, database))
        assert result.status == AuditStatus.SKIPPED

    def test_inactive_rule_skipped(self, store, database):
        store.add_force_match(make_force_match("FM-1", "a", "d"))
        store.force_match_rules[0].status = RuleStatus.ORPHANED
        result = only(audit_inclusion(store, database))
        assert result.status == AuditStatus.SKIPPED
        assert result.reason == "Rule status: ORPHANED"

    def test_mutual_set_outcomes(self, store, database):
        store.add_mutual_inclusion(make_mutual_set("M-1", RuleKind.MUTUAL_INCLUDE, ["a", "b", "c"]))
        store.add_mutual_inclusion(make_mutual_set("M-2", RuleKind.MUTUAL_INCLUDE, ["a", "d", "e"]))
        store.add_mutual_inclusion(make_mutual_set("M-3", RuleKind.MUTUAL_INCLUDE, ["a", "x"]))

        audit = audit_inclusion(store, database)
        passed, spread, missing = audit.results

        assert passed.status == AuditStatus.PASS
        assert passed.reason == "All 3 keys in group 0"
        assert spread.status == AuditStatus.FAIL
        assert spread.reason == "Keys spread across 3 groups: 0, 1, 2"
        assert missing.status == AuditStatus.FAIL
        assert missing.reason == "1 keys not in any group: x"
        assert passed.keys == ["a", "b", "c"]

    def test_mutual_set_ignores_keys_absent_from_universe(self, store, database):
        store.add_mutual_inclusion(make_mutual_set("M-1", RuleKind.MUTUAL_INCLUDE, ["a", "b", "GONE"]))
        validate_rules(store, {"a", "b", "c", "d", "e", "x"})

        result = only(audit_inclusion(store, database))

        assert result.status == AuditStatus.PASS
        assert result.reason == "All 2 keys in group 0 (absent from universe: GONE)"
        assert result.keys == ["a", "b", "GONE"]


class TestExclusionAudit:
    """Tests for FORCE_EXCLUDE and MUTUAL_EXCLUDE outcomes."""

    def test_separated_passes(self, store, database):
        store.add_force_exclude(make_force_exclude("FE-1", "a", "d"))
        result = only(audit_exclusion(store, database))
        assert result.status == AuditStatus.PASS
        assert result.reason == "Correctly separated: groups 0 and 1"

    def test_same_group_is_violation(self, store, database):
        store.add_force_exclude(make_force_exclude("FE-1", "a", "c"))
        result = only(audit_exclusion(store, database))
        assert result.status == AuditStatus.FAIL
        assert result.reason == "VIOLATION: Both in group 0"

    def test_ungrouped_key_never_fails(self, store, database):
        store.add_force_exclude(make_force_exclude("FE-1", "x", "a"))
        result = only(audit_exclusion(store, database))
        assert result.status == AuditStatus.SKIPPED
        assert result.reason == "Defective entity not in any group"

    def test_mutual_set_outcomes(self, store, database):
        store.add_mutual_exclusion(make_mutual_set("M-1", RuleKind.MUTUAL_EXCLUDE, ["a", "d", "e"]))
        store.add_mutual_exclusion(make_mutual_set("M-2", RuleKind.MUTUAL_EXCLUDE, ["a", "b", "d"]))
        store.add_mutual_exclusion(make_mutual_set("M-3", RuleKind.MUTUAL_EXCLUDE, ["a", "x"]))

        separated, violated, sparse = audit_exclusion(store, database).results

        assert separated.status == AuditStatus.PASS
        assert violated.status == AuditStatus.FAIL
        assert violated.reason == "1 violation(s): a & b both in group 0"
        assert sparse.status == AuditStatus.SKIPPED
        assert sparse.reason == "Only 1 of 2 keys in any group"


class TestConflictsAndReport:
    """Tests for run_audit, conflict analysis and the CSV layout."""

    def test_clean_audit_has_no_conflict_block(self, store, database):
        store.add_force_match(make_force_match("FM-1", "a", "b"))
        report = run_audit(store, database)

        assert report.all_passed
        assert report.conflicts is None
        assert "Conflict Analysis:" not in render_audit_csv(report)

    def test_failing_exclusion_cross_referenced(self, store, database):
        store.add_force_match(make_force_match("FM-1", "a", "b"))
        store.add_force_exclude(make_force_exclude("FE-1", "b", "c"))

        report = run_audit(store, database)

        conflict = report.conflicts.exclusion_conflicts[0]
        assert conflict.failed_rule_id == "FE-1"
        assert [(k.key, k.rule_ids) for k in conflict.conflicts] == [("b", ["FM-1"])]
        assert report.conflicts.inclusion_conflicts == []

    def test_failure_without_overlap(self, store, database):
        store.add_force_exclude(make_force_exclude("FE-1", "b", "c"))
        report = run_audit(store, database)

        text = render_audit_csv(report)

        assert not report.conflicts.has_conflicts
        assert text.endswith("Conflict Analysis:\nNo conflicts found between failing rules and other rules.\n")

    def test_mutual_keys_kept_whole(self, store):
        """Keys containing the display separator are never split apart."""
        db = EntityGroupDatabase()
        group = db.create_group("p | 1", phase=3)
        db.add_member_to_group(group.index, "q")
        db.mark_complete()
        store.add_force_match(make_force_match("FM-1", "p | 1", "q"))
        store.add_mutual_exclusion(make_mutual_set("M-1", RuleKind.MUTUAL_EXCLUDE, ["p | 1", "q"]))

        report = run_audit(store, db)

        failed = report.exclusion.failures[0]
        assert failed.keys == ["p | 1", "q"]
        assert failed.key1 == "p | 1 | q"
        assert failed.key2 == ""
        conflict = report.conflicts.exclusion_conflicts[0]
        assert [(k.key, k.rule_ids) for k in conflict.conflicts] == [("p | 1", ["FM-1"]), ("q", ["FM-1"])]

    def test_csv_layout(self, store, database):
        store.add_force_match(make_force_match("FM-1", "a", "d"))
        store.add_force_exclude(make_force_exclude("FE-1", "a", "x"))
        store.add_force_exclude(make_force_exclude("FE-2", "d", "e"))
        report = run_audit(store, database)
        report.generated_at = datetime(2024, 1, 2, tzinfo=timezone.utc)

        lines = render_audit_csv(report).splitlines()

        assert lines[:8] == [
            "Override Rules Audit Report",
            "Generated: 2024-01-02T00:00:00+00:00",
            "",
            "Summary:",
            "Inclusion - Pass: 0, Fail: 1, Skip: 0",
            "Exclusion - Pass: 1, Fail: 0, Skip: 1",
            "",
            "RuleType,RuleId,Status,Key1,Key2,Group1Index,Group2Index,Reason",
        ]
        assert lines[8] == "FORCE_MATCH,FM-1,FAIL,a,d,0,1,Different groups: 0 vs 1"
        assert lines[9] == "FORCE_EXCLUDE,FE-1,SKIPPED,a,x,0,,Other entity not in any group"
        assert "FM-1,FORCE_MATCH,Different groups: 0 vs 1,a,EXCLUSION: FE-1" in lines


class TestInvestigation:
    """Tests for tracing a failed exclusion through inclusion rules."""

    def test_chain_through_inclusion_rules(self, store, database):
        store.add_force_match(make_force_match("FM-1", "a", "b"))
        store.add_mutual_inclusion(make_mutual_set("M-1", RuleKind.MUTUAL_INCLUDE, ["b", "c", "x"]))
        store.add_force_exclude(make_force_exclude("FE-1", "a", "c"))

        investigation = investigate_exclusion_failure("FE-1", store, database)

        assert investigation.violated
        assert investigation.chain == ["a", "b", "c"]
        assert investigation.chain_rule_ids == ["FM-1", "M-1"]
        assert [link.rule_id for link in investigation.direct_inclusions] == ["FM-1", "M-1"]
        assert not investigation.joined_by_natural_matching

    def test_natural_matching_join(self, store, database):
        store.add_force_exclude(make_force_exclude("FE-1", "a", "c"))
        investigation = investigate_exclusion_failure("FE-1", store, database)
        assert investigation.chain == []
        assert investigation.joined_by_natural_matching

    def test_expanded_rule_found_by_original_id(self, store, database):
        store.add_force_exclude(make_force_exclude("FE-1[1]", "a", "d", expanded_from="FE-1"))
        investigation = investigate_exclusion_failure("FE-1", store, database)
        assert investigation.rule.rule_id == "FE-1[1]"
        assert not investigation.violated

    def test_unknown_or_wrong_rule_type(self, store, database):
        store.add_force_match(make_force_match("FM-1", "a", "b"))
        assert investigate_exclusion_failure("FM-1", store, database) is None
        assert investigate_exclusion_failure("NOPE", store, database) is None

    def test_inclusion_graph_restricted_to_nodes(self, store):
        store.add_force_match(make_force_match("FM-1", "a", "b"))
        store.add_force_match(make_force_match("FM-2", "b", "z"))
        graph = build_inclusion_graph(store, nodes={"a", "b"})
        assert list(graph.edges(data="rule_ids")) == [("a", "b", ["FM-1"])]

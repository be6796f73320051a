"""
Unit tests for loading override rules from rule tables.
"""

import pytest

from linkage.overrides.loader import (
    RuleTableError,
    build_rule_store,
    load_rule_store,
    parse_force_exclude_rows,
    parse_force_match_rows,
    read_rule_table,
)
from linkage.overrides.rules import OnConflictPolicy, RuleStatus


class TestForceMatchRows:
    """Tests for parsing Force-Match table rows."""

    def test_pairwise_row(self):
        parsed = parse_force_match_rows([["FM-1", "a", "b", "b", "same donor", ""]])

        rule = parsed.force_matches[0]
        assert (rule.rule_id, rule.key1, rule.key2) == ("FM-1", "a", "b")
        assert rule.anchor_override == "b"
        assert rule.status == RuleStatus.ACTIVE

    def test_disabled_and_skip_rows_dropped(self):
        parsed = parse_force_match_rows([
            ["FM-1", "a", "b", "", "", "disabled"],
            ["FM-2", "a", "c", "", "", "SKIP"],
        ])
        assert parsed.force_matches == []
        assert parsed.errors == []

    def test_incomplete_rows_skipped(self):
        parsed = parse_force_match_rows([
            [],
            ["FM-1"],
            ["", "a", "b"],
            ["FM-2", "a", ""],
        ])
        assert parsed.force_matches == []

    def test_mutual_row(self):
        parsed = parse_force_match_rows([["M-1", "mutual", "a::^::b::^::c", "", "family"]])

        mutual_set = parsed.mutual_inclusions[0]
        assert mutual_set.keys == ("a", "b", "c")
        assert mutual_set.reason == "family"

    def test_mutual_row_without_keys_is_an_error(self):
        parsed = parse_force_match_rows([["M-1", "MUTUAL", ""]])
        assert parsed.mutual_inclusions == []
        assert "M-1" in parsed.errors[0]

    def test_invalid_status_is_an_error(self):
        parsed = parse_force_match_rows([["FM-1", "a", "b", "", "", "MAYBE"]])
        assert parsed.force_matches == []
        assert "invalid status" in parsed.errors[0]

    def test_mutual_row_status_parsed(self):
        parsed = parse_force_match_rows([
            ["M-1", "MUTUAL", "a::^::b", "", "", "BOGUS"],
            ["M-2", "MUTUAL", "a::^::c", "", "", "error"],
        ])

        assert [s.rule_id for s in parsed.mutual_inclusions] == ["M-2"]
        assert parsed.mutual_inclusions[0].status == RuleStatus.ERROR
        assert "M-1" in parsed.errors[0]
        assert "invalid status" in parsed.errors[0]


class TestForceExcludeRows:
    """Tests for parsing Force-Exclude table rows."""

    def test_on_conflict_parsed(self):
        parsed = parse_force_exclude_rows([["FE-1", "a", "b", "use_similarity"]])
        assert parsed.force_excludes[0].on_conflict == OnConflictPolicy.USE_SIMILARITY

    def test_blank_on_conflict_defaults(self):
        parsed = parse_force_exclude_rows([["FE-1", "a", "b"]])
        assert parsed.force_excludes[0].on_conflict == OnConflictPolicy.DEFECTIVE_YIELDS

    def test_invalid_on_conflict_is_an_error(self):
        parsed = parse_force_exclude_rows([["FE-1", "a", "b", "LOSER_PAYS"]])
        assert parsed.force_excludes == []
        assert "invalid onConflict" in parsed.errors[0]

    def test_one_to_many_expands(self):
        parsed = parse_force_exclude_rows([["FE-7", "a", "b::^::c::^::d", "OTHER_YIELDS"]])

        ids = [rule.rule_id for rule in parsed.force_excludes]
        assert ids == ["FE-7[1]", "FE-7[2]", "FE-7[3]"]
        assert [rule.other_key for rule in parsed.force_excludes] == ["b", "c", "d"]
        assert all(rule.defective_key == "a" for rule in parsed.force_excludes)
        assert all(rule.expanded_from == "FE-7" for rule in parsed.force_excludes)
        assert all(rule.on_conflict == OnConflictPolicy.OTHER_YIELDS for rule in parsed.force_excludes)

    def test_one_to_many_with_single_key_keeps_id(self):
        parsed = parse_force_exclude_rows([["FE-7", "a", "b::^::"]])
        assert [rule.rule_id for rule in parsed.force_excludes] == ["FE-7"]

    def test_mutual_row(self):
        parsed = parse_force_exclude_rows([["M-2", "MUTUAL", "x::^::y"]])
        assert parsed.mutual_exclusions[0].keys == ("x", "y")

    def test_mutual_row_status_parsed(self):
        parsed = parse_force_exclude_rows([["M-2", "MUTUAL", "x::^::y", "", "", "ORPHANED"]])
        assert parsed.mutual_exclusions[0].status == RuleStatus.ORPHANED


class TestBuildRuleStore:
    """Tests for inserting parsed rules into a store."""

    def test_structurally_invalid_rules_reported(self):
        parsed = parse_force_match_rows([
            ["FM-1", "a", "a"],
            ["FM-2", "a", "b"],
        ])
        store, result = build_rule_store(parsed)

        assert result.loaded == 1
        assert result.errors == ["FM-1: keys cannot be same"]
        assert [rule.rule_id for rule in store.force_match_rules] == ["FM-2"]

    def test_mutual_key_counts(self):
        parsed = parse_force_match_rows([["M-1", "MUTUAL", "a::^::b::^::c"]])
        parsed.extend(parse_force_exclude_rows([["M-2", "MUTUAL", "x::^::y"]]))

        _, result = build_rule_store(parsed)

        assert result.loaded == 2
        assert result.mutual_inclusion_keys == 3
        assert result.mutual_exclusion_keys == 2

    def test_single_key_mutual_rejected(self):
        parsed = parse_force_exclude_rows([["M-1", "MUTUAL", "x::^::x"]])
        store, result = build_rule_store(parsed)
        assert store.mutual_exclusion_sets == []
        assert "at least 2 keys" in result.errors[0]

    def test_parse_errors_carried_over(self):
        parsed = parse_force_exclude_rows([["FE-1", "a", "b", "NOPE"]])
        _, result = build_rule_store(parsed)
        assert len(result.errors) == 1


class TestRuleTableFiles:
    """Tests for reading CSV exports of the rule tables."""

    def test_load_both_tables(self, tmp_path):
        fm_path = tmp_path / "force_match_rules.csv"
        fe_path = tmp_path / "force_exclude_rules.csv"
        fm_path.write_text(
            "RuleID,Key1,Key2,AnchorOverride,Reason,Status\n"
            "FM-1,a,b,,,\n"
            "FM-2,a,c,,,DISABLED\n",
            encoding="utf-8",
        )
        fe_path.write_text(
            "RuleID,DefectiveKey,OtherKey,OnConflict,Reason,Status\n"
            "FE-1,a,d::^::e,,,\n",
            encoding="utf-8",
        )

        store, result = load_rule_store(fm_path, fe_path)

        assert result.loaded == 3
        assert store.summary()["force_exclude_count"] == 2
        assert store.find_rule("FE-1").rule_id == "FE-1[1]"

    def test_header_kept_on_request(self, tmp_path):
        path = tmp_path / "rules.csv"
        path.write_text("RuleID,Key1,Key2\nFM-1,a,b\n", encoding="utf-8")
        assert len(read_rule_table(path, skip_header=False)) == 2

    def test_byte_order_mark_stripped(self, tmp_path):
        path = tmp_path / "rules.csv"
        path.write_text("\ufeffRuleID,Key1,Key2\nFM-1,a,b\n", encoding="utf-8")
        assert read_rule_table(path, skip_header=False)[0][0] == "RuleID"

    def test_missing_file(self, tmp_path):
        with pytest.raises(RuleTableError):
            read_rule_table(tmp_path / "missing.csv")

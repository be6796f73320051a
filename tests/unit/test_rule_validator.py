"""
Unit tests for rule validation against the entity universe.
"""

from linkage.overrides.loader import parse_force_exclude_rows
from linkage.overrides.rules import RuleKind, RuleStatus, make_force_exclude, make_force_match, make_mutual_set
from linkage.overrides.stats import OverrideStats
from linkage.overrides.store import RuleStore
from linkage.overrides.validator import validate_rules

UNIVERSE = {"A", "B", "C", "D"}


class TestOrphanCheck:
    """Tests for referential integrity."""

    def test_missing_key_orphans_rule(self, store):
        store.add_force_match(make_force_match("FM-1", "A", "GONE"))
        stats = OverrideStats()

        result = validate_rules(store, UNIVERSE, stats)

        assert store.force_match_rules[0].status == RuleStatus.ORPHANED
        assert result.orphaned == 1
        assert stats.orphaned_rules == 1

    def test_present_keys_stay_active(self, store):
        store.add_force_exclude(make_force_exclude("FE-1", "A", "B"))
        result = validate_rules(store, UNIVERSE)
        assert store.force_exclude_rules[0].status == RuleStatus.ACTIVE
        assert result.valid == 1

    def test_disabled_rules_ignored(self, store):
        store.add_force_match(make_force_match("FM-1", "A", "GONE", status="DISABLED"))
        result = validate_rules(store, UNIVERSE)
        assert store.force_match_rules[0].status == RuleStatus.DISABLED
        assert result.orphaned == 0

    def test_mutual_set_records_absent_keys(self, store):
        store.add_mutual_inclusion(
            make_mutual_set("M-1", RuleKind.MUTUAL_INCLUDE, ["A", "B", "GONE"])
        )
        result = validate_rules(store, UNIVERSE)

        mutual_set = store.mutual_inclusion_sets[0]
        assert mutual_set.status == RuleStatus.ACTIVE
        assert mutual_set.absent_keys == frozenset({"GONE"})
        assert store.get_force_matches_for("A") == ["B"]
        assert len(result.warnings) == 1

    def test_mutual_set_with_one_present_key_orphaned(self, store):
        store.add_mutual_exclusion(
            make_mutual_set("M-1", RuleKind.MUTUAL_EXCLUDE, ["A", "GONE", "LOST"])
        )
        stats = OverrideStats()
        validate_rules(store, UNIVERSE, stats)
        assert store.mutual_exclusion_sets[0].status == RuleStatus.ORPHANED
        assert stats.orphaned_rules == 1


class TestContradictionCheck:
    """Tests for Force-Match vs Force-Exclude contradictions."""

    def test_match_then_exclude(self, store):
        store.add_force_match(make_force_match("FM-1", "A", "B"))
        store.add_force_exclude(make_force_exclude("FE-1", "A", "B"))
        stats = OverrideStats()

        result = validate_rules(store, UNIVERSE, stats)

        assert store.force_match_rules[0].status == RuleStatus.ERROR
        assert store.force_exclude_rules[0].status == RuleStatus.ERROR
        assert result.errors == ["Contradiction: FM-1 vs FE-1"]
        assert stats.errors == 1

    def test_exclude_then_match_reversed_keys(self, store):
        """Insertion order and key order do not matter."""
        store.add_force_exclude(make_force_exclude("FE-1", "B", "A"))
        store.add_force_match(make_force_match("FM-1", "A", "B"))

        validate_rules(store, UNIVERSE)

        assert store.force_match_rules[0].status == RuleStatus.ERROR
        assert store.force_exclude_rules[0].status == RuleStatus.ERROR

    def test_contradicting_rules_leave_lookups(self, store):
        store.add_force_match(make_force_match("FM-1", "A", "B"))
        store.add_force_exclude(make_force_exclude("FE-1", "A", "B"))
        validate_rules(store, UNIVERSE)
        assert store.get_force_matches_for("A") == []
        assert not store.is_excluded_pair("A", "B")

    def test_orphan_check_runs_first(self, store):
        """Orphaned rules are never reported as contradictions."""
        store.add_force_match(make_force_match("FM-1", "A", "GONE"))
        store.add_force_exclude(make_force_exclude("FE-1", "GONE", "A"))

        result = validate_rules(store, UNIVERSE)

        assert store.force_match_rules[0].status == RuleStatus.ORPHANED
        assert store.force_exclude_rules[0].status == RuleStatus.ORPHANED
        assert result.errors == []

    def test_different_pairs_do_not_conflict(self, store):
        store.add_force_match(make_force_match("FM-1", "A", "B"))
        store.add_force_exclude(make_force_exclude("FE-1", "A", "C"))
        result = validate_rules(store, UNIVERSE)
        assert result.errors == []


class TestIdempotence:
    """Tests that repeated validation gives the same outcome."""

    def _store(self) -> RuleStore:
        store = RuleStore()
        store.add_force_match(make_force_match("FM-1", "A", "B"))
        store.add_force_exclude(make_force_exclude("FE-1", "A", "B"))
        store.add_force_match(make_force_match("FM-2", "C", "GONE"))
        store.add_mutual_exclusion(
            make_mutual_set("M-1", RuleKind.MUTUAL_EXCLUDE, ["C", "D", "GONE"])
        )
        return store

    def test_second_run_same_statuses_and_deltas(self):
        store = self._store()
        first, second = OverrideStats(), OverrideStats()

        validate_rules(store, UNIVERSE, first)
        statuses = [rule.status for rule in store.all_rules()]
        validate_rules(store, UNIVERSE, second)

        assert [rule.status for rule in store.all_rules()] == statuses
        assert first == second
        assert first.errors == 1
        assert first.orphaned_rules == 1


class TestLoadedStatuses:
    """Tests for rules whose status column already says ORPHANED or ERROR."""

    def test_loaded_error_rule_stays_error(self, store):
        parsed = parse_force_exclude_rows([["FE-1", "A", "B", "", "", "ERROR"]])
        store.add_force_exclude(parsed.force_excludes[0])

        result = validate_rules(store, UNIVERSE)

        assert store.force_exclude_rules[0].status == RuleStatus.ERROR
        assert not store.is_excluded_pair("A", "B")
        assert result.valid == 0

    def test_loaded_orphaned_rule_stays_orphaned(self, store):
        store.add_force_match(make_force_match("FM-1", "A", "B", status="ORPHANED"))
        validate_rules(store, UNIVERSE)
        assert store.force_match_rules[0].status == RuleStatus.ORPHANED
        assert store.get_force_matches_for("A") == []

    def test_loaded_error_rule_not_a_contradiction(self, store):
        store.add_force_match(make_force_match("FM-1", "A", "B"))
        store.add_force_exclude(make_force_exclude("FE-1", "A", "B", status="ERROR"))

        result = validate_rules(store, UNIVERSE)

        assert result.errors == []
        assert store.force_match_rules[0].status == RuleStatus.ACTIVE

    def test_loaded_error_mutual_set_stays_error(self, store):
        store.add_mutual_inclusion(
            make_mutual_set("M-1", RuleKind.MUTUAL_INCLUDE, ["A", "B"], status="ERROR")
        )
        validate_rules(store, UNIVERSE)
        assert store.mutual_inclusion_sets[0].status == RuleStatus.ERROR
        assert store.get_force_matches_for("A") == []

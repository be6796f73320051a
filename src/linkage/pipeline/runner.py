#!/usr/bin/env python3
"""
Entity group build runner.

Loads the rule tables and the entity universe, validates the rules, builds
the entity groups and audits the result:
  Rule tables + entities -> validate -> build groups -> audit -> JSON/CSV

Usage:
    # Validate rules only
    python -m linkage.pipeline.runner --validate

    # Build groups and audit them (default)
    python -m linkage.pipeline.runner --build --audit

    # Audit a previously built group database
    python -m linkage.pipeline.runner --audit --groups data/output/entity_groups.json

    # Explain a failed exclusion
    python -m linkage.pipeline.runner --audit --investigate FE-12
"""

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from linkage.audit.conflicts import investigate_exclusion_failure
from linkage.audit.report import AuditReport, render_audit_csv, run_audit
from linkage.config import Settings, settings as default_settings
from linkage.entities.schemas import EntityRecord
from linkage.entities.universe import EntityUniverseError, load_entity_universe
from linkage.groups.builder import BuildResult, EntityGroupBuilder
from linkage.groups.matching import MatchThresholds, PairScoreTable, ScoreTableError, ThresholdMatcher
from linkage.groups.models import EntityGroupDatabase
from linkage.overrides.loader import LoadResult, RuleTableError, load_rule_store
from linkage.overrides.store import RuleStore
from linkage.overrides.validator import ValidationResult, validate_rules

logger = logging.getLogger(__name__)

GROUPS_FILE = "entity_groups.json"
REFERENCE_FILE = "entity_groups_reference.json"


class LinkageRunner:
    """Runs the load / validate / build / audit stages against one configuration."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        force_match_path: Optional[Path] = None,
        force_exclude_path: Optional[Path] = None,
        entities_path: Optional[Path] = None,
        scores_path: Optional[Path] = None,
        output_dir: Optional[Path] = None,
    ):
        self.config = config or default_settings
        self.force_match_path = self.config.resolve_path(
            force_match_path or self.config.force_match_rules_path, "force_match_rules.csv"
        )
        self.force_exclude_path = self.config.resolve_path(
            force_exclude_path or self.config.force_exclude_rules_path, "force_exclude_rules.csv"
        )
        self.entities_path = self.config.resolve_path(
            entities_path or self.config.entities_path, "entities.json"
        )
        self.scores_path = scores_path or self.config.scores_path
        self.output_dir = output_dir or self.config.output_dir or self.config.data_dir / "output"

        self.store: Optional[RuleStore] = None
        self.load_result: Optional[LoadResult] = None
        self.entities: dict[str, EntityRecord] = {}

    def load(self) -> None:
        """Load rules and entities. Raises RuleTableError / EntityUniverseError."""
        self.store, self.load_result = load_rule_store(
            self.force_match_path, self.force_exclude_path
        )
        self.entities = load_entity_universe(self.entities_path)

    def _matcher(self) -> Optional[ThresholdMatcher]:
        scores_path = self.scores_path
        if scores_path is None:
            default_path = self.config.data_dir / "pair_scores.csv"
            if not default_path.exists():
                logger.info("No pair score table, building from override rules only")
                return None
            scores_path = default_path
        table = PairScoreTable.load(scores_path)
        return ThresholdMatcher(table, MatchThresholds.from_settings(self.config))

    def validate(self) -> ValidationResult:
        return validate_rules(self.store, self.entities)

    def build(self) -> BuildResult:
        builder = EntityGroupBuilder(
            self.entities, self.store, matcher=self._matcher(), config=self.config
        )
        return builder.build()

    def load_groups(self, path: Optional[Path] = None) -> EntityGroupDatabase:
        path = path or self.output_dir / GROUPS_FILE
        with open(path, encoding="utf-8") as f:
            return EntityGroupDatabase.from_dict(json.load(f))

    def audit(self, database: EntityGroupDatabase) -> AuditReport:
        return run_audit(self.store, database)

    def write_groups(self, database: EntityGroupDatabase) -> tuple[Path, Path]:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        groups_path = self.output_dir / GROUPS_FILE
        reference_path = self.output_dir / REFERENCE_FILE

        _write_json(groups_path, database.to_dict())
        _write_json(reference_path, {
            "metadata": {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "total_groups": database.stats.total_groups,
                "total_members": database.stats.total_entities_assigned,
            },
            "groups": database.build_reference(),
        })
        logger.info(f"Wrote {groups_path} and {reference_path}")
        return groups_path, reference_path

    def write_audit(self, report: AuditReport) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        date = report.generated_at.strftime("%Y-%m-%d")
        path = self.output_dir / f"override_rules_audit_{date}.csv"
        path.write_text(render_audit_csv(report), encoding="utf-8")
        logger.info(f"Wrote audit report {path}")
        return path


def _write_json(path: Path, data: Any) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


def _print_build_summary(result: BuildResult) -> None:
    print("\n" + "=" * 60)
    print("ENTITY GROUP BUILD")
    print("=" * 60)
    for phase in result.phases:
        print(
            f"  Phase {phase.phase} ({phase.description}): {phase.groups_created} groups, "
            f"{phase.members_added} members, {phase.near_misses_added} near misses"
        )
    print(f"\n{result.database.summary()}")
    stats = result.stats
    print(
        f"Overrides: {stats.force_matches_applied} force-matches applied, "
        f"{stats.exclusions_applied} exclusions applied, "
        f"{stats.orphaned_rules} orphaned rules, {stats.errors} contradictions"
    )
    print("=" * 60)


def _print_audit_summary(report: AuditReport) -> None:
    print("\n" + "=" * 60)
    print("AUDIT SUMMARY")
    print("=" * 60)
    print(f"Total rules checked: {report.total}")
    print(f"  PASS: {report.total_pass}")
    print(f"  FAIL: {report.total_fail}")
    print(f"  SKIPPED: {report.total_skip}")
    for failure in [*report.inclusion.failures, *report.exclusion.failures]:
        print(f"    {failure.rule_id}: {failure.reason}")
    if report.all_passed:
        print("\nAll rules passed")
    else:
        print(f"\n{report.total_fail} rule(s) failed - review failures above")
    print("=" * 60)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Entity group builder with override rules')
    parser.add_argument('--validate', action='store_true', help='Validate rules against the entity universe')
    parser.add_argument('--build', action='store_true', help='Build entity groups')
    parser.add_argument('--audit', action='store_true', help='Audit override rules against the groups')
    parser.add_argument('--force-match', type=Path, help='Force-Match rule table (CSV)')
    parser.add_argument('--force-exclude', type=Path, help='Force-Exclude rule table (CSV)')
    parser.add_argument('--entities', type=Path, help='Entity universe (JSON)')
    parser.add_argument('--scores', type=Path, help='Pair score table (CSV key1,key2,score)')
    parser.add_argument('--groups', type=Path, help='Existing group database to audit (JSON)')
    parser.add_argument('--investigate', metavar='RULE_ID', help='Explain a failed Force-Exclude rule')
    parser.add_argument('--output', type=Path, help='Output directory')

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=default_settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if not (args.validate or args.build or args.audit):
        args.build = args.audit = True

    runner = LinkageRunner(
        force_match_path=args.force_match,
        force_exclude_path=args.force_exclude,
        entities_path=args.entities,
        scores_path=args.scores,
        output_dir=args.output,
    )

    try:
        runner.load()
        print(f"Loaded {len(runner.entities)} entities, {runner.load_result.loaded} rules")
        if runner.load_result.errors:
            print(f"  {len(runner.load_result.errors)} rule row(s) rejected")

        if args.validate and not args.build:
            validation = runner.validate()
            print(
                f"Validation: {validation.valid} valid, {validation.orphaned} orphaned, "
                f"{validation.contradictions} contradictions"
            )
            for error in validation.errors:
                print(f"  {error}")

        database = None
        if args.build:
            result = runner.build()
            runner.write_groups(result.database)
            _print_build_summary(result)
            database = result.database

        if args.audit:
            if database is None:
                # Rule statuses must reflect this universe before auditing
                runner.validate()
                database = runner.load_groups(args.groups)
            report = runner.audit(database)
            path = runner.write_audit(report)
            _print_audit_summary(report)
            print(f"Audit report: {path}")

            if args.investigate:
                investigation = investigate_exclusion_failure(args.investigate, runner.store, database)
                if investigation is None:
                    print(f"Rule {args.investigate} not found")
                elif not investigation.violated:
                    print(f"{investigation.rule.rule_id}: keys are not in the same group")
                elif investigation.chain:
                    print(
                        f"{investigation.rule.rule_id}: joined via "
                        f"{' -> '.join(investigation.chain)} "
                        f"({', '.join(investigation.chain_rule_ids)})"
                    )
                else:
                    print(f"{investigation.rule.rule_id}: joined by natural matching")

    except (RuleTableError, EntityUniverseError, ScoreTableError, OSError, ValueError) as e:
        logger.error(f"Run failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())

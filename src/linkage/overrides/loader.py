"""
Loading override rules from rule tables.

Both tables share the column layout (A-F):

    RuleID | Key1 | Key2 | Extra | Reason | Status

Extra is AnchorOverride for Force-Match and OnConflict for Force-Exclude.
A row whose Key1 is ``MUTUAL`` holds a ``::^::``-delimited key list in Key2.
A Force-Exclude row with a real Key1 and a delimited Key2 expands into one
pairwise rule per listed key (``RuleID[1]``, ``RuleID[2]``, ...).
Rows with status DISABLED or SKIP are dropped at load time.
"""

import csv
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from linkage.overrides.rules import (
    KEY_DELIMITER,
    MUTUAL_MARKER,
    ForceExcludeRule,
    ForceMatchRule,
    MutualSet,
    RuleDefinitionError,
    RuleKind,
    make_force_exclude,
    make_force_match,
    make_mutual_set,
    split_keys,
)
from linkage.overrides.store import RuleStore

logger = logging.getLogger(__name__)

DROPPED_STATUSES = {"DISABLED", "SKIP"}


class RuleTableError(Exception):
    """Raised when a rule table cannot be read."""

    pass


@dataclass
class ParsedRules:
    """Rules parsed from the two rule tables, before indexing."""

    force_matches: list[ForceMatchRule] = field(default_factory=list)
    force_excludes: list[ForceExcludeRule] = field(default_factory=list)
    mutual_inclusions: list[MutualSet] = field(default_factory=list)
    mutual_exclusions: list[MutualSet] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def extend(self, other: "ParsedRules") -> None:
        self.force_matches.extend(other.force_matches)
        self.force_excludes.extend(other.force_excludes)
        self.mutual_inclusions.extend(other.mutual_inclusions)
        self.mutual_exclusions.extend(other.mutual_exclusions)
        self.errors.extend(other.errors)


@dataclass
class LoadResult:
    """Outcome of loading rules into a store."""

    loaded: int = 0
    errors: list[str] = field(default_factory=list)
    mutual_inclusion_keys: int = 0
    mutual_exclusion_keys: int = 0


def _cell(row: Sequence[Any], index: int) -> str:
    if index >= len(row) or row[index] is None:
        return ""
    return str(row[index]).strip()


def _split_row(row: Sequence[Any]) -> Optional[tuple[str, str, str, str, str, str]]:
    """Return the six cells of a usable row, or None for rows to skip."""
    if not row or len(row) < 2:
        return None
    rule_id, col1, col2, extra, reason, status = (_cell(row, i) for i in range(6))
    if not rule_id or not col1:
        return None
    return rule_id, col1, col2, extra, reason, status.upper()


def parse_force_match_rows(rows: Iterable[Sequence[Any]]) -> ParsedRules:
    """
    Parse Force-Match table rows (header already removed).

    Returns:
        ParsedRules holding pairwise rules, MUTUAL inclusion sets and row errors
    """
    parsed = ParsedRules()

    for row in rows:
        cells = _split_row(row)
        if cells is None:
            continue
        rule_id, col1, col2, extra, reason, status = cells
        if status in DROPPED_STATUSES:
            continue

        try:
            if col1.upper() == MUTUAL_MARKER:
                if not col2:
                    parsed.errors.append(f"{rule_id}: MUTUAL row missing key list in column C")
                    continue
                parsed.mutual_inclusions.append(
                    make_mutual_set(rule_id, RuleKind.MUTUAL_INCLUDE, col2, reason, status)
                )
                continue

            if not col2:
                continue  # Need both keys for pairwise

            parsed.force_matches.append(
                make_force_match(rule_id, col1, col2, extra, reason, status)
            )
        except RuleDefinitionError as e:
            parsed.errors.append(str(e))

    logger.info(
        f"Parsed {len(parsed.force_matches)} FORCE_MATCH rules, "
        f"{len(parsed.mutual_inclusions)} MUTUAL inclusion sets"
    )
    return parsed


def parse_force_exclude_rows(rows: Iterable[Sequence[Any]]) -> ParsedRules:
    """
    Parse Force-Exclude table rows (header already removed).

    Returns:
        ParsedRules holding pairwise rules, MUTUAL exclusion sets and row errors
    """
    parsed = ParsedRules()

    for row in rows:
        cells = _split_row(row)
        if cells is None:
            continue
        rule_id, col1, col2, extra, reason, status = cells
        if status in DROPPED_STATUSES:
            continue

        try:
            if col1.upper() == MUTUAL_MARKER:
                if not col2:
                    parsed.errors.append(f"{rule_id}: MUTUAL row missing key list in column C")
                    continue
                parsed.mutual_exclusions.append(
                    make_mutual_set(rule_id, RuleKind.MUTUAL_EXCLUDE, col2, reason, status)
                )
                continue

            if KEY_DELIMITER in col2:
                other_keys = split_keys(col2)
                if not other_keys:
                    parsed.errors.append(
                        f"{rule_id}: One-to-many row has empty key list after splitting"
                    )
                    continue
                for idx, other_key in enumerate(other_keys, start=1):
                    expanded_id = f"{rule_id}[{idx}]" if len(other_keys) > 1 else rule_id
                    parsed.force_excludes.append(
                        make_force_exclude(
                            expanded_id, col1, other_key, extra, reason, status,
                            expanded_from=rule_id,
                        )
                    )
                logger.debug(f"Expanded {rule_id} into {len(other_keys)} pairwise exclusion rules")
                continue

            if not col2:
                continue  # Need both keys for pairwise

            parsed.force_excludes.append(
                make_force_exclude(rule_id, col1, col2, extra, reason, status)
            )
        except RuleDefinitionError as e:
            parsed.errors.append(str(e))

    logger.info(
        f"Parsed {len(parsed.force_excludes)} FORCE_EXCLUDE rules, "
        f"{len(parsed.mutual_exclusions)} MUTUAL exclusion sets"
    )
    return parsed


def read_rule_table(path: Path, skip_header: bool = True) -> list[list[str]]:
    """Read a CSV export of a rule table into rows of cells."""
    try:
        with open(path, newline="", encoding="utf-8-sig") as f:
            rows = list(csv.reader(f))
    except OSError as e:
        raise RuleTableError(f"Failed to read rule table {path}: {e}") from e
    return rows[1:] if skip_header else rows


def build_rule_store(parsed: ParsedRules, store: Optional[RuleStore] = None) -> tuple[RuleStore, LoadResult]:
    """
    Insert parsed rules into a (new) RuleStore.

    Rules failing structural validation are reported and never indexed.
    """
    store = store if store is not None else RuleStore()
    result = LoadResult(errors=list(parsed.errors))

    for rule in parsed.force_matches:
        added = store.add_force_match(rule)
        if added.success:
            result.loaded += 1
        else:
            result.errors.append(f"{rule.rule_id}: {', '.join(added.errors)}")

    for rule in parsed.force_excludes:
        added = store.add_force_exclude(rule)
        if added.success:
            result.loaded += 1
        else:
            result.errors.append(f"{rule.rule_id}: {', '.join(added.errors)}")

    for mutual_set in parsed.mutual_inclusions:
        added = store.add_mutual_inclusion(mutual_set)
        if added.success:
            result.loaded += 1
            result.mutual_inclusion_keys += added.key_count
        else:
            result.errors.append(f"{mutual_set.rule_id}: {', '.join(added.errors)}")

    for mutual_set in parsed.mutual_exclusions:
        added = store.add_mutual_exclusion(mutual_set)
        if added.success:
            result.loaded += 1
            result.mutual_exclusion_keys += added.key_count
        else:
            result.errors.append(f"{mutual_set.rule_id}: {', '.join(added.errors)}")

    if result.errors:
        logger.warning(f"Errors loading rules: {result.errors}")
    logger.info(f"Loaded {result.loaded} rules")
    return store, result


def load_rule_store(
    force_match_path: Optional[Path] = None,
    force_exclude_path: Optional[Path] = None,
) -> tuple[RuleStore, LoadResult]:
    """Load a fresh RuleStore from the CSV exports of both rule tables."""
    parsed = ParsedRules()
    if force_match_path is not None:
        parsed.extend(parse_force_match_rows(read_rule_table(force_match_path)))
    if force_exclude_path is not None:
        parsed.extend(parse_force_exclude_rows(read_rule_table(force_exclude_path)))
    return build_rule_store(parsed)

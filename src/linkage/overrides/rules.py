"""
Override rule model.

Operators correct automatic linkage with four kinds of rule:
- FORCE_MATCH: two entities must end up in the same group
- FORCE_EXCLUDE: two entities must never share a group
- MUTUAL_INCLUDE: every key in a set belongs in one group
- MUTUAL_EXCLUDE: no two keys in a set may share a group

Rules are built through the ``make_*`` factories, which normalize raw table
values into the canonical dataclasses before any validation happens.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from itertools import combinations
from typing import Any, ClassVar, Iterator, Optional

logger = logging.getLogger(__name__)

# Column B marker for a MUTUAL row, and the key-list separator used in column C
MUTUAL_MARKER = "MUTUAL"
KEY_DELIMITER = "::^::"


class RuleDefinitionError(ValueError):
    """Raised when raw rule input cannot be normalized into a rule."""

    def __init__(self, rule_id: str, errors: list[str]):
        self.rule_id = rule_id
        self.errors = errors
        super().__init__(f"{rule_id}: {', '.join(errors)}")


class RuleStatus(str, Enum):
    """Lifecycle status of an override rule."""

    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"
    ORPHANED = "ORPHANED"  # References a key missing from the entity universe
    ERROR = "ERROR"  # Contradicts another rule


class OnConflictPolicy(str, Enum):
    """Which entity is evicted when an exclusion has to be enforced."""

    DEFECTIVE_YIELDS = "DEFECTIVE_YIELDS"  # Defective entity is blocked (default)
    OTHER_YIELDS = "OTHER_YIELDS"  # Other entity is blocked
    USE_SIMILARITY = "USE_SIMILARITY"  # Lower similarity score is blocked


class RuleKind(str, Enum):
    """Rule families, as reported by the auditor."""

    FORCE_MATCH = "FORCE_MATCH"
    FORCE_EXCLUDE = "FORCE_EXCLUDE"
    MUTUAL_INCLUDE = "MUTUAL_INCLUDE"
    MUTUAL_EXCLUDE = "MUTUAL_EXCLUDE"


@dataclass
class ForceMatchRule:
    """Two entities that must be placed in the same group."""

    kind: ClassVar[RuleKind] = RuleKind.FORCE_MATCH

    rule_id: str
    key1: str
    key2: str
    anchor_override: Optional[str] = None
    reason: str = ""
    status: RuleStatus = RuleStatus.ACTIVE
    initial_status: RuleStatus = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.initial_status = self.status

    def validate(self) -> list[str]:
        """Check structural invariants, returning a list of error strings."""
        errors = []
        if not self.key1:
            errors.append("key1 required")
        if not self.key2:
            errors.append("key2 required")
        if self.key1 and self.key1 == self.key2:
            errors.append("keys cannot be same")
        if self.anchor_override and self.anchor_override not in (self.key1, self.key2):
            errors.append("anchorOverride must be one of the rule keys")
        return errors

    @property
    def keys(self) -> tuple[str, str]:
        return (self.key1, self.key2)

    @property
    def is_active(self) -> bool:
        return self.status == RuleStatus.ACTIVE

    def partner_of(self, key: str) -> Optional[str]:
        """Return the other key of the pair, or None if key is not in the rule."""
        if key == self.key1:
            return self.key2
        if key == self.key2:
            return self.key1
        return None

    def __str__(self) -> str:
        return f"ForceMatchRule[{self.rule_id}]: {self.key1} <-> {self.key2}"


@dataclass
class ForceExcludeRule:
    """Two entities that must never share a group."""

    kind: ClassVar[RuleKind] = RuleKind.FORCE_EXCLUDE

    rule_id: str
    defective_key: str
    other_key: str
    on_conflict: OnConflictPolicy = OnConflictPolicy.DEFECTIVE_YIELDS
    reason: str = ""
    status: RuleStatus = RuleStatus.ACTIVE
    expanded_from: Optional[str] = None  # Original id of a one-to-many row
    initial_status: RuleStatus = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.initial_status = self.status

    def validate(self) -> list[str]:
        """Check structural invariants, returning a list of error strings."""
        errors = []
        if not self.defective_key:
            errors.append("defectiveKey required")
        if not self.other_key:
            errors.append("otherKey required")
        if self.defective_key and self.defective_key == self.other_key:
            errors.append("keys cannot be same")
        if not isinstance(self.on_conflict, OnConflictPolicy):
            errors.append("invalid onConflict")
        return errors

    @property
    def keys(self) -> tuple[str, str]:
        return (self.defective_key, self.other_key)

    @property
    def is_active(self) -> bool:
        return self.status == RuleStatus.ACTIVE

    def to_meta(self) -> "ExclusionMeta":
        return ExclusionMeta(
            rule_id=self.rule_id,
            defective_key=self.defective_key,
            other_key=self.other_key,
            on_conflict=self.on_conflict,
        )

    def __str__(self) -> str:
        return (
            f"ForceExcludeRule[{self.rule_id}]: {self.defective_key} != "
            f"{self.other_key} ({self.on_conflict.value})"
        )


@dataclass
class MutualSet:
    """A set of keys that are all pairwise included, or all pairwise excluded."""

    rule_id: str
    kind: RuleKind
    keys: tuple[str, ...]
    status: RuleStatus = RuleStatus.ACTIVE
    reason: str = ""
    absent_keys: frozenset[str] = field(default_factory=frozenset)
    initial_status: RuleStatus = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.initial_status = self.status

    def validate(self) -> list[str]:
        """Check structural invariants, returning a list of error strings."""
        errors = []
        if self.kind not in (RuleKind.MUTUAL_INCLUDE, RuleKind.MUTUAL_EXCLUDE):
            errors.append(f"invalid MUTUAL kind {self.kind}")
        if len(set(self.keys)) < 2:
            label = "inclusion" if self.kind == RuleKind.MUTUAL_INCLUDE else "exclusion"
            errors.append(f"MUTUAL {label} set requires at least 2 keys")
        return errors

    @property
    def is_active(self) -> bool:
        return self.status == RuleStatus.ACTIVE

    @property
    def present_keys(self) -> tuple[str, ...]:
        """Member keys that exist in the entity universe."""
        return tuple(k for k in self.keys if k not in self.absent_keys)

    def pairs(self) -> Iterator[tuple[str, str]]:
        """Expand the set into its equivalent pairwise rules."""
        return combinations(self.keys, 2)

    def __str__(self) -> str:
        return f"MutualSet[{self.rule_id}] {self.kind.value}: {len(self.keys)} keys"


@dataclass(frozen=True)
class ExclusionMeta:
    """
    Exclusion metadata returned by rule lookups.

    For pairwise rules this mirrors the ForceExcludeRule. For MUTUAL exclusion
    sets it is synthesized per query: the first-queried key is recorded as
    defective, and when scores are missing or tied that key loses.
    """

    rule_id: str
    defective_key: str
    other_key: str
    on_conflict: OnConflictPolicy
    is_mutual: bool = False

    def determine_loser(
        self,
        key1: str,
        key2: str,
        score1: Optional[float] = None,
        score2: Optional[float] = None,
    ) -> str:
        """
        Determine which entity yields (is removed) in a conflict.

        Args:
            key1: First entity key in conflict
            key2: Second entity key in conflict
            score1: Similarity score of key1 (for USE_SIMILARITY)
            score2: Similarity score of key2 (for USE_SIMILARITY)

        Returns:
            The key that should be removed
        """
        policy = self.on_conflict

        if policy == OnConflictPolicy.DEFECTIVE_YIELDS:
            return self.defective_key
        elif policy == OnConflictPolicy.OTHER_YIELDS:
            return self.other_key
        elif policy == OnConflictPolicy.USE_SIMILARITY:
            if score1 is None or score2 is None:
                if not self.is_mutual:
                    logger.warning(
                        f"Rule {self.rule_id}: USE_SIMILARITY but scores not provided, "
                        f"defaulting to DEFECTIVE_YIELDS"
                    )
                return self.defective_key
            if score1 < score2:
                return key1
            if score2 < score1:
                return key2
            # Tie goes to the defective key
            return self.defective_key
        else:
            raise ValueError(f"Unhandled on-conflict policy: {policy}")


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def parse_status(value: Any, rule_id: str = "") -> RuleStatus:
    """Parse a status cell; blank means ACTIVE."""
    if isinstance(value, RuleStatus):
        return value
    text = _clean(value).upper()
    if not text:
        return RuleStatus.ACTIVE
    try:
        return RuleStatus(text)
    except ValueError:
        raise RuleDefinitionError(rule_id, [f"invalid status '{text}'"]) from None


def parse_on_conflict(value: Any, rule_id: str = "") -> OnConflictPolicy:
    """Parse an OnConflict cell; blank means DEFECTIVE_YIELDS."""
    if isinstance(value, OnConflictPolicy):
        return value
    text = _clean(value).upper()
    if not text:
        return OnConflictPolicy.DEFECTIVE_YIELDS
    try:
        return OnConflictPolicy(text)
    except ValueError:
        raise RuleDefinitionError(rule_id, [f"invalid onConflict '{text}'"]) from None


def split_keys(value: Any) -> tuple[str, ...]:
    """Split a ``::^::``-delimited key list, dropping blanks."""
    return tuple(k.strip() for k in _clean(value).split(KEY_DELIMITER) if k.strip())


def make_force_match(
    rule_id: Any,
    key1: Any,
    key2: Any,
    anchor_override: Any = None,
    reason: Any = "",
    status: Any = RuleStatus.ACTIVE,
) -> ForceMatchRule:
    """Normalize raw values into a ForceMatchRule."""
    rule_id = _clean(rule_id)
    return ForceMatchRule(
        rule_id=rule_id,
        key1=_clean(key1),
        key2=_clean(key2),
        anchor_override=_clean(anchor_override) or None,
        reason=_clean(reason),
        status=parse_status(status, rule_id),
    )


def make_force_exclude(
    rule_id: Any,
    defective_key: Any,
    other_key: Any,
    on_conflict: Any = OnConflictPolicy.DEFECTIVE_YIELDS,
    reason: Any = "",
    status: Any = RuleStatus.ACTIVE,
    expanded_from: Optional[str] = None,
) -> ForceExcludeRule:
    """Normalize raw values into a ForceExcludeRule."""
    rule_id = _clean(rule_id)
    return ForceExcludeRule(
        rule_id=rule_id,
        defective_key=_clean(defective_key),
        other_key=_clean(other_key),
        on_conflict=parse_on_conflict(on_conflict, rule_id),
        reason=_clean(reason),
        status=parse_status(status, rule_id),
        expanded_from=expanded_from,
    )


def make_mutual_set(
    rule_id: Any,
    kind: RuleKind,
    keys: Any,
    reason: Any = "",
    status: Any = RuleStatus.ACTIVE,
) -> MutualSet:
    """
    Normalize raw values into a MutualSet.

    ``keys`` may be an iterable of keys or a ``::^::``-delimited string.
    Duplicate keys are collapsed, keeping first-seen order.
    """
    if isinstance(keys, str):
        raw_keys = split_keys(keys)
    else:
        raw_keys = tuple(_clean(k) for k in keys if _clean(k))
    return MutualSet(
        rule_id=_clean(rule_id),
        kind=kind,
        keys=tuple(dict.fromkeys(raw_keys)),
        status=parse_status(status, _clean(rule_id)),
        reason=_clean(reason),
    )

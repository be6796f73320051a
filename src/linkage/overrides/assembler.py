"""
Group assembly with override rules.

Implements the 8-step algorithm that turns a founder, its natural match
candidates and the rule store into the final member set of one group.
Priority hierarchy, strongest first:

    founder-forced > natural > forced-from-natural

- founder-forced: entities the founder's Force-Match rules / MUTUAL inclusion
  sets name directly
- natural: entities an external similarity scorer matched to the founder
- forced-from-natural: entities force-matched to a natural, pulled in
  transitively

Exclusions with the founder itself are authoritative and applied silently.
No step raises: every anomaly degrades to a warning and a dropped candidate.
"""

import logging
from collections.abc import Callable, Container, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from linkage.overrides.rules import ExclusionMeta
from linkage.overrides.stats import OverrideStats
from linkage.overrides.store import RuleStore

logger = logging.getLogger(__name__)


class AssemblyStep(str, Enum):
    """Algorithm step that evicted a candidate."""

    FOUNDER_EXCLUSION = "step_0"
    NATURAL_CONFLICT = "step_2"
    FORCED_CONTRADICTION = "step_3_5"
    FOUNDER_FORCED_CONFLICT = "step_4"
    NATURAL_VS_FOUNDER_FORCED = "step_5"
    FORCED_FROM_NATURAL_VS_FOUNDER_FORCED = "step_7"
    FORCED_FROM_NATURAL_VS_NATURAL = "step_7_natural"
    FORCED_FROM_NATURAL_FOUNDER_EXCLUSION = "step_7_5"
    FORCED_FROM_NATURAL_CONFLICT = "step_8"


@dataclass(frozen=True)
class ScoredCandidate:
    """A natural match candidate with its similarity to the founder."""

    key: str
    score: Optional[float] = None


@dataclass
class Eviction:
    """A candidate dropped by an exclusion."""

    key: str
    step: AssemblyStep
    rule_id: str
    winner: Optional[str] = None
    reason: str = ""


@dataclass
class AssemblyResult:
    """Surviving candidates of one founder, by priority tier."""

    founder_key: str
    natural_keys: list[str] = field(default_factory=list)
    founder_forced_keys: list[str] = field(default_factory=list)
    forced_from_natural_keys: list[str] = field(default_factory=list)
    evictions: list[Eviction] = field(default_factory=list)

    @property
    def members(self) -> list[str]:
        """Final membership: founder, naturals, founder-forced, forced-from-natural."""
        ordered = [
            self.founder_key,
            *self.natural_keys,
            *self.founder_forced_keys,
            *self.forced_from_natural_keys,
        ]
        return list(dict.fromkeys(ordered))

    @property
    def member_keys(self) -> set[str]:
        return set(self.members)

    @property
    def evicted_keys(self) -> set[str]:
        return {e.key for e in self.evictions}


class GroupAssembler:
    """
    Resolves a founder's candidates into a group using the override rules.

    The store is only read. The assembler mutates its stats counters and
    nothing else, so results depend only on rules, universe and scores.
    """

    def __init__(
        self,
        store: RuleStore,
        universe: Optional[Container[str]] = None,
        stats: Optional[OverrideStats] = None,
    ):
        self.store = store
        self.universe = universe
        self.stats = stats if stats is not None else OverrideStats()

    def assemble(
        self,
        founder_key: str,
        naturals: Sequence[ScoredCandidate] = (),
        is_claimed: Optional[Callable[[str], bool]] = None,
    ) -> AssemblyResult:
        """
        Run the 8-step algorithm for one founder.

        Args:
            founder_key: Entity that seeds the group
            naturals: Natural match candidates, in the caller's priority order
            is_claimed: Predicate for keys already owned by an earlier group

        Returns:
            AssemblyResult with the surviving keys of each tier and all evictions
        """
        claimed = is_claimed or (lambda key: False)
        result = AssemblyResult(founder_key=founder_key)
        evicted: set[str] = set()

        def available(key: str) -> bool:
            if key == founder_key or claimed(key):
                return False
            return self.universe is None or key in self.universe

        def evict(
            key: str,
            step: AssemblyStep,
            meta: ExclusionMeta,
            winner: Optional[str] = None,
            reason: str = "",
            silent: bool = False,
        ) -> None:
            evicted.add(key)
            result.evictions.append(
                Eviction(key=key, step=step, rule_id=meta.rule_id, winner=winner, reason=reason)
            )
            self.stats.exclusions_applied += 1
            if not silent:
                logger.debug(f"{step.value} exclusion {meta.rule_id}: {key} removed ({reason})")

        # Natural candidates, de-duplicated, highest-ranked occurrence kept
        candidates: list[ScoredCandidate] = []
        seen: set[str] = set()
        for candidate in naturals:
            if candidate.key in seen or not available(candidate.key):
                continue
            seen.add(candidate.key)
            candidates.append(candidate)
        scores = {c.key: c.score for c in candidates if c.score is not None}

        # Step 0: naturals excluded with the founder are dropped silently
        kept = []
        for candidate in candidates:
            meta = self.store.get_exclusion_rule(candidate.key, founder_key)
            if meta:
                evict(candidate.key, AssemblyStep.FOUNDER_EXCLUSION, meta,
                      winner=founder_key, reason="excluded with founder", silent=True)
            else:
                kept.append(candidate)
        candidates = kept

        # Step 3 (collection only, needed for step 2 priority)
        founder_forced = [
            key for key in self.store.get_force_matches_for(founder_key) if available(key)
        ]
        priority = set(founder_forced)

        # Step 2: exclusions among naturals, founder-forced keys win outright
        candidates = self._resolve_with_priority(candidates, priority, evict)

        # Step 3.5: founder-forced keys also excluded with the founder
        kept_forced = []
        for key in founder_forced:
            if key in evicted:
                continue  # Lost a step 2 conflict to another founder-forced key
            meta = self.store.get_exclusion_rule(key, founder_key)
            if meta:
                logger.warning(
                    f"Contradiction: {founder_key} has both FORCE_MATCH and FORCE_EXCLUDE "
                    f"with {key}. Exclusion wins ({meta.rule_id})."
                )
                evict(key, AssemblyStep.FORCED_CONTRADICTION, meta,
                      winner=founder_key, reason="force-match contradicts exclusion")
            else:
                kept_forced.append(key)

        # Step 4: exclusions within the founder-forced tier
        founder_forced = self._resolve_on_conflict(
            kept_forced, scores, AssemblyStep.FOUNDER_FORCED_CONFLICT, evict
        )

        # Step 5: founder-forced outranks natural
        natural_keys = self._remove_excluded_by_priority(
            [c.key for c in candidates], founder_forced,
            AssemblyStep.NATURAL_VS_FOUNDER_FORCED, evict, evicted,
        )

        # Step 6: force-matches of surviving naturals
        taken = {founder_key, *natural_keys, *founder_forced}
        forced_from_natural: list[str] = []
        for natural in natural_keys:
            for key in self.store.get_force_matches_for(natural):
                if key in taken or key in evicted or not available(key):
                    continue
                taken.add(key)
                forced_from_natural.append(key)

        # Step 7: founder-forced outranks forced-from-natural, and so do naturals
        forced_from_natural = self._remove_excluded_by_priority(
            forced_from_natural, founder_forced,
            AssemblyStep.FORCED_FROM_NATURAL_VS_FOUNDER_FORCED, evict, evicted,
        )
        forced_from_natural = self._remove_excluded_by_priority(
            forced_from_natural, natural_keys,
            AssemblyStep.FORCED_FROM_NATURAL_VS_NATURAL, evict, evicted,
        )

        # Step 7.5: forced-from-natural excluded with the founder, silently
        kept_forced = []
        for key in forced_from_natural:
            meta = self.store.get_exclusion_rule(key, founder_key)
            if meta:
                evict(key, AssemblyStep.FORCED_FROM_NATURAL_FOUNDER_EXCLUSION, meta,
                      winner=founder_key, reason="excluded with founder", silent=True)
            else:
                kept_forced.append(key)

        # Step 8: exclusions within the forced-from-natural tier
        forced_from_natural = self._resolve_on_conflict(
            kept_forced, scores, AssemblyStep.FORCED_FROM_NATURAL_CONFLICT, evict
        )

        result.natural_keys = natural_keys
        result.founder_forced_keys = founder_forced
        result.forced_from_natural_keys = forced_from_natural

        natural_set = set(natural_keys)
        self.stats.force_matches_applied += sum(
            1 for key in founder_forced if key not in natural_set
        )
        self.stats.force_matches_applied += len(forced_from_natural)

        return result

    # -------------------------------------------------------------------------
    # Step helpers
    # -------------------------------------------------------------------------

    def _resolve_with_priority(
        self,
        candidates: list[ScoredCandidate],
        priority: set[str],
        evict: Callable[..., None],
    ) -> list[ScoredCandidate]:
        """
        Step 2: resolve exclusions among naturals.

        If exactly one side of an excluded pair has founder-forced priority it
        wins; otherwise the rule's OnConflict policy picks the loser.
        """
        removed: set[str] = set()

        for i, first in enumerate(candidates):
            if first.key in removed:
                continue
            for second in candidates[i + 1:]:
                if second.key in removed:
                    continue
                meta = self.store.get_exclusion_rule(first.key, second.key)
                if not meta:
                    continue

                first_priority = first.key in priority
                second_priority = second.key in priority

                if first_priority and not second_priority:
                    loser, winner = second.key, first.key
                    reason = f"{first.key} has founder-forced priority"
                elif second_priority and not first_priority:
                    loser, winner = first.key, second.key
                    reason = f"{second.key} has founder-forced priority"
                else:
                    loser = meta.determine_loser(first.key, second.key, first.score, second.score)
                    winner = second.key if loser == first.key else first.key
                    reason = meta.on_conflict.value

                removed.add(loser)
                evict(loser, AssemblyStep.NATURAL_CONFLICT, meta, winner=winner, reason=reason)
                if loser == first.key:
                    break

        return [c for c in candidates if c.key not in removed]

    def _resolve_on_conflict(
        self,
        keys: list[str],
        scores: dict[str, float],
        step: AssemblyStep,
        evict: Callable[..., None],
    ) -> list[str]:
        """Steps 4 and 8: same-tier exclusions decided by OnConflict policy only."""
        removed: set[str] = set()

        for i, first in enumerate(keys):
            if first in removed:
                continue
            for second in keys[i + 1:]:
                if second in removed:
                    continue
                meta = self.store.get_exclusion_rule(first, second)
                if not meta:
                    continue

                loser = meta.determine_loser(first, second, scores.get(first), scores.get(second))
                winner = second if loser == first else first
                removed.add(loser)
                evict(loser, step, meta, winner=winner, reason=meta.on_conflict.value)
                if loser == first:
                    break

        return [k for k in keys if k not in removed]

    def _remove_excluded_by_priority(
        self,
        keys: Iterable[str],
        priority_keys: Sequence[str],
        step: AssemblyStep,
        evict: Callable[..., None],
        evicted: Container[str],
    ) -> list[str]:
        """Steps 5 and 7: drop keys excluded with any higher-tier key."""
        kept = []
        for key in keys:
            if key in evicted:
                continue  # Already removed by an earlier step
            for priority_key in priority_keys:
                if key == priority_key:
                    continue
                meta = self.store.get_exclusion_rule(key, priority_key)
                if meta:
                    evict(key, step, meta, winner=priority_key,
                          reason=f"priority {priority_key} wins")
                    break
            else:
                kept.append(key)
        return kept

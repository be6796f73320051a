"""
Override rules for entity group construction.

This module implements operator overrides of automatic linkage:
- Rules: Force-Match, Force-Exclude and MUTUAL set definitions
- Store: Indexed, symmetric rule lookups
- Validator: Orphan and contradiction checks against the entity universe
- Phases: Construction phase order and the Force-Match anchor schedule
- Assembler: The 8-step group assembly algorithm
- Loader: Rule table parsing
"""

from linkage.overrides.rules import (
    ExclusionMeta,
    ForceExcludeRule,
    ForceMatchRule,
    MutualSet,
    OnConflictPolicy,
    RuleDefinitionError,
    RuleKind,
    RuleStatus,
    make_force_exclude,
    make_force_match,
    make_mutual_set,
)
from linkage.overrides.stats import OverrideStats
from linkage.overrides.store import RuleAddResult, RuleStore
from linkage.overrides.validator import ValidationResult, validate_rules
from linkage.overrides.phases import (
    AnchorAssignment,
    PhaseClassifier,
    PhaseSpec,
    ScheduleEntry,
)
from linkage.overrides.assembler import (
    AssemblyResult,
    AssemblyStep,
    Eviction,
    GroupAssembler,
    ScoredCandidate,
)
from linkage.overrides.loader import (
    RuleTableError,
    load_rule_store,
    parse_force_exclude_rows,
    parse_force_match_rows,
    read_rule_table,
)

__all__ = [
    # Rule model
    "ExclusionMeta",
    "ForceExcludeRule",
    "ForceMatchRule",
    "MutualSet",
    "OnConflictPolicy",
    "RuleDefinitionError",
    "RuleKind",
    "RuleStatus",
    "make_force_exclude",
    "make_force_match",
    "make_mutual_set",
    # Store and validation
    "OverrideStats",
    "RuleAddResult",
    "RuleStore",
    "ValidationResult",
    "validate_rules",
    # Phases
    "AnchorAssignment",
    "PhaseClassifier",
    "PhaseSpec",
    "ScheduleEntry",
    # Assembly
    "AssemblyResult",
    "AssemblyStep",
    "Eviction",
    "GroupAssembler",
    "ScoredCandidate",
    # Loading
    "RuleTableError",
    "load_rule_store",
    "parse_force_exclude_rows",
    "parse_force_match_rows",
    "read_rule_table",
]

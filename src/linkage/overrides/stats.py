"""
Run-scoped override counters.
"""

from dataclasses import asdict, dataclass


@dataclass
class OverrideStats:
    """Counters mutated during validation and group assembly."""

    force_matches_applied: int = 0
    exclusions_applied: int = 0
    orphaned_rules: int = 0
    errors: int = 0

    def reset(self) -> None:
        """Zero every counter at the start of a full rebuild."""
        self.force_matches_applied = 0
        self.exclusions_applied = 0
        self.orphaned_rules = 0
        self.errors = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

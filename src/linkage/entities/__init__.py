"""
Source entity records and the per-build entity universe.
"""

from linkage.entities.schemas import EntityRecord
from linkage.entities.universe import (
    EntityUniverseError,
    build_universe,
    load_entity_universe,
    parse_universe,
)

__all__ = [
    "EntityRecord",
    "EntityUniverseError",
    "build_universe",
    "load_entity_universe",
    "parse_universe",
]

"""
Loading the entity universe for a build.

The universe is an ordered mapping of key -> EntityRecord. File order is kept
because it decides founder order inside a construction phase.
"""

import json
import logging
from pathlib import Path
from typing import Any, Iterable

from pydantic import ValidationError

from linkage.entities.schemas import EntityRecord

logger = logging.getLogger(__name__)


class EntityUniverseError(Exception):
    """Raised when the entity universe cannot be loaded."""

    pass


def build_universe(records: Iterable[EntityRecord]) -> dict[str, EntityRecord]:
    """Index records by key, rejecting duplicate keys."""
    universe: dict[str, EntityRecord] = {}
    for record in records:
        if record.key in universe:
            raise EntityUniverseError(f"Duplicate entity key: {record.key}")
        universe[record.key] = record
    return universe


def parse_universe(data: Any) -> dict[str, EntityRecord]:
    """
    Parse decoded JSON into an entity universe.

    Accepts a list of records, or an object whose ``entities`` member is a
    list of records or a mapping of key -> record (the key filled in from the
    mapping when the record omits it).
    """
    if isinstance(data, dict):
        data = data.get("entities", data)

    if isinstance(data, dict):
        raw_records = [{"key": key, **value} for key, value in data.items()]
    elif isinstance(data, list):
        raw_records = data
    else:
        raise EntityUniverseError("Entity file must hold a list or an 'entities' object")

    try:
        records = [EntityRecord.model_validate(raw) for raw in raw_records]
    except ValidationError as e:
        raise EntityUniverseError(f"Invalid entity record: {e}") from e

    return build_universe(records)


def load_entity_universe(path: Path) -> dict[str, EntityRecord]:
    """Load an entity universe from a JSON file."""
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise EntityUniverseError(f"Failed to read entity file {path}: {e}") from e

    universe = parse_universe(data)
    logger.info(f"Loaded {len(universe)} entities from {path}")
    return universe

"""
Pytest configuration and shared fixtures for linkage tests.
"""

from typing import Callable, Optional

import pytest

from linkage.entities.schemas import EntityRecord
from linkage.entities.universe import build_universe
from linkage.overrides.store import RuleStore


def _make_entity(
    key: str,
    source: str = "bloomerang",
    entity_type: str = "Individual",
    display_name: Optional[str] = None,
) -> EntityRecord:
    return EntityRecord(
        key=key,
        source=source,
        entity_type=entity_type,
        display_name=display_name,
    )


@pytest.fixture
def make_entity() -> Callable[..., EntityRecord]:
    """Factory for entity records."""
    return _make_entity


@pytest.fixture
def store() -> RuleStore:
    """An empty rule store."""
    return RuleStore()


@pytest.fixture
def individuals() -> dict[str, EntityRecord]:
    """A small universe of individuals from both sources."""
    return build_universe([
        _make_entity("F", "bloomerang"),
        _make_entity("A", "bloomerang"),
        _make_entity("B", "visionappraisal"),
        _make_entity("X", "visionappraisal"),
        _make_entity("Y", "visionappraisal"),
        _make_entity("Z", "visionappraisal"),
    ])

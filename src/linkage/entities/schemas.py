"""
Pydantic models for source entity records.

Only the fields the grouping core needs are modelled; everything a source
parser produces beyond them is carried in ``attributes``.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class EntityRecord(BaseModel):
    """A single source record: one person, household or organisation."""

    key: str = Field(..., description="Opaque unique key of the source record")
    source: str = Field(..., description="Data source the record came from")
    entity_type: str = Field(..., description="Structural type, e.g. Individual")
    display_name: Optional[str] = None
    attributes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Entity key must not be empty")
        return v

    def is_from(self, source: str) -> bool:
        """Case-insensitive source check, tolerant of prefixed source names."""
        return source.lower() in self.source.lower()

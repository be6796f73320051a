"""
Linkage configuration management using pydantic-settings.

Settings are read from environment variables (or a .env file) so that rule
tables, entity files and match thresholds can be changed without code edits.
"""

import logging
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    # Input / output locations
    data_dir: Path = Field(
        default=Path("./data"),
        description="Base directory for rule tables, entities and outputs",
    )
    force_match_rules_path: Optional[Path] = Field(
        default=None,
        description="CSV export of the Force-Match rule table",
    )
    force_exclude_rules_path: Optional[Path] = Field(
        default=None,
        description="CSV export of the Force-Exclude rule table",
    )
    entities_path: Optional[Path] = Field(
        default=None,
        description="JSON file holding the entity universe",
    )
    scores_path: Optional[Path] = Field(
        default=None,
        description="CSV of precomputed pair similarity scores (key1,key2,score)",
    )
    output_dir: Optional[Path] = Field(
        default=None,
        description="Directory for group database and audit report output",
    )

    # Natural matching thresholds
    true_match_threshold: float = Field(
        default=0.85,
        description="Scores at or above this make a natural match",
    )
    near_match_threshold: float = Field(
        default=0.70,
        description="Scores at or above this (but below true match) are near misses",
    )

    # Construction phase order
    primary_source: str = Field(
        default="bloomerang",
        description="Source whose records are constructed first within each entity type",
    )
    secondary_source: str = Field(
        default="visionappraisal",
        description="Source whose records are constructed second within each entity type",
    )
    household_type: str = Field(
        default="AggregateHousehold",
        description="Entity type name of collective household records",
    )
    individual_type: str = Field(
        default="Individual",
        description="Entity type name of individual person records",
    )

    @field_validator("true_match_threshold", "near_match_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        """Thresholds are similarity scores and must lie in [0, 1]."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("Match thresholds must be between 0 and 1")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and check the logging level name."""
        level = v.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def validate_thresholds_order(self) -> "Settings":
        """Near-miss threshold cannot exceed the true-match threshold."""
        if self.near_match_threshold > self.true_match_threshold:
            raise ValueError(
                "NEAR_MATCH_THRESHOLD must not exceed TRUE_MATCH_THRESHOLD"
            )
        return self

    def resolve_path(self, path: Optional[Path], default_name: str) -> Path:
        """Return an explicit path, or a default file name under data_dir."""
        if path is not None:
            return path
        return self.data_dir / default_name


# Global settings instance
settings = Settings()

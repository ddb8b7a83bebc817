"""
Settings for the recordkit engine.

Values are read from the environment (and a local .env file, if present) with
the RECORDKIT_ prefix. Every component accepts an explicit settings object, so
the environment is only consulted when a caller asks for the defaults.
"""
import os
import logging
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class RecordKitSettings(BaseModel):
    """
    Policy knobs shared by the comparator, the diff engine and the tracker.
    """
    float_tolerance: float = Field(
        default=1e-6,
        ge=0,
        description="Absolute tolerance used when comparing floating point values"
    )
    soft_active_field: str = Field(
        default="active",
        description="Name of the boolean flag whose False value marks a soft-deleted entity"
    )
    updated_field: str = Field(default="updated", description="Timestamp stamped on every save")
    updated_by_field: str = Field(default="updated_by", description="Actor stamped on every save")
    created_on_field: str = Field(default="created_on", description="Creation timestamp")
    created_by_field: str = Field(default="created_by", description="Creation actor")
    immutable_fields: List[str] = Field(
        default_factory=lambda: ["created_on", "created_by"],
        description="Fields that are never recorded on Update"
    )
    passive_fields: List[str] = Field(
        default_factory=lambda: ["updated", "updated_by"],
        description="Fields that are recorded when changed but never trigger reactivation"
    )
    suppress_empty_updates: bool = Field(
        default=False,
        description="Drop Update records whose changed-field list is empty"
    )
    default_actor: str = Field(default="system", max_length=50)
    log_level: str = Field(default="WARNING")

    @classmethod
    def from_env(cls) -> "RecordKitSettings":
        """Build settings from RECORDKIT_* environment variables."""
        load_dotenv()
        values = {}

        tolerance = os.getenv("RECORDKIT_FLOAT_TOLERANCE")
        if tolerance:
            values["float_tolerance"] = float(tolerance)

        soft_active = os.getenv("RECORDKIT_SOFT_ACTIVE_FIELD")
        if soft_active:
            values["soft_active_field"] = soft_active

        immutable = os.getenv("RECORDKIT_IMMUTABLE_FIELDS")
        if immutable is not None:
            values["immutable_fields"] = _split_names(immutable)

        passive = os.getenv("RECORDKIT_PASSIVE_FIELDS")
        if passive is not None:
            values["passive_fields"] = _split_names(passive)

        suppress = os.getenv("RECORDKIT_SUPPRESS_EMPTY_UPDATES")
        if suppress:
            values["suppress_empty_updates"] = suppress.strip().lower() in {"1", "true", "yes", "on"}

        actor = os.getenv("RECORDKIT_DEFAULT_ACTOR")
        if actor:
            values["default_actor"] = actor

        values["log_level"] = os.getenv("RECORDKIT_LOG_LEVEL", "WARNING").upper()
        return cls(**values)


def _split_names(raw: str) -> List[str]:
    return [name.strip() for name in raw.split(",") if name.strip()]


@lru_cache(maxsize=1)
def get_settings() -> RecordKitSettings:
    """Settings from the environment, read once per process."""
    return RecordKitSettings.from_env()


def configure_logging(settings: Optional[RecordKitSettings] = None) -> None:
    """
    Opt-in logging setup for applications and scripts.
    The library itself never installs handlers.
    """
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.WARNING),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

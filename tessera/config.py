"""World configuration using Pydantic Settings.

Usage:
    from tessera.config import WorldSettings

    # Load from environment variables (TESSERA_*)
    settings = WorldSettings()

    # Or override with explicit values
    settings = WorldSettings(structural_policy="block", block_timeout=0.5)
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["WorldSettings"]


class WorldSettings(BaseSettings):
    """Configuration for a `World`.

    Attributes:
        column_capacity: Initial number of rows allocated per column.
        structural_policy: What a structural change does when a query holds
            borrow guards on an archetype it touches. ``"reject"`` raises
            `StructuralConflictError` immediately, ``"block"`` waits for the
            guards to be released.
        block_timeout: Seconds to wait under the ``"block"`` policy before
            raising. ``None`` waits forever.
        log_level: Minimum level emitted by the package loggers.

    Environment Variables:
        TESSERA_COLUMN_CAPACITY
        TESSERA_STRUCTURAL_POLICY
        TESSERA_BLOCK_TIMEOUT
        TESSERA_LOG_LEVEL
    """

    model_config = SettingsConfigDict(
        env_prefix="TESSERA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    column_capacity: int = Field(default=16, ge=1)
    structural_policy: Literal["reject", "block"] = "reject"
    block_timeout: float | None = Field(default=5.0, gt=0)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"

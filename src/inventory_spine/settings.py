"""Runtime settings for inventory refresh.

Batch sizes, the sweep retry ceiling and the default integrity-assertion mode
are environment-driven so the same code can run in a development loop (small
batches, assertions on) and in production (large batches, assertions off).

Examples:
    >>> from inventory_spine.settings import RefreshSettings
    >>> RefreshSettings(batch_size=50).batch_size
    50

Environment variables use the ``INVENTORY_`` prefix, e.g.
``INVENTORY_SWEEP_RETRY_COUNT_LIMIT=20``.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RefreshSettings(BaseSettings):
    """Settings shared by the saver, the sweeper and the persister.

    Fields
    ──────
    batch_size               : Records per create/update/upsert batch
    sweep_batch_size         : Ids per storage-side sweep batch
    sweep_retry_count_limit  : Re-queues allowed while waiting for parts
    error_message_max_length : Truncation for refresh-state error messages
    assert_graph_integrity   : Default integrity-assertion mode for collections
    database_url             : Default URL of ``create_inventory_engine``
    log_level                : Default level of ``configure_logging``
    log_json                 : JSON output on/off; unset picks JSON off a tty
    """

    model_config = SettingsConfigDict(
        env_prefix="INVENTORY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Saving ───────────────────────────────────────────────────
    batch_size: int = Field(default=1000, ge=1)
    assert_graph_integrity: bool = False

    # ── Sweeping ─────────────────────────────────────────────────
    sweep_batch_size: int = Field(default=10000, ge=1)
    sweep_retry_count_limit: int = Field(default=100, ge=0)
    error_message_max_length: int = Field(default=150, ge=1)

    # ── Storage ──────────────────────────────────────────────────
    database_url: str = "sqlite:///inventory.db"

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None


@lru_cache(maxsize=1)
def get_settings() -> RefreshSettings:
    """Return the process-wide settings instance."""
    return RefreshSettings()


__all__ = ["RefreshSettings", "get_settings"]

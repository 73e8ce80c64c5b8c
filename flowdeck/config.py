"""
Runtime Configuration — Settings for discovery, watching, retry and publishing.

Every field can be set through a ``FLOWDECK_``-prefixed environment
variable or a ``.env`` file, e.g. ``FLOWDECK_WORKFLOWS_DIR=./workflows``.
List fields take JSON: ``FLOWDECK_SUPPORTED_EXTENSIONS='["json", "yaml"]'``.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RuntimeSettings(BaseSettings):
    """Runtime-wide settings for the loader orchestrator."""

    model_config = SettingsConfigDict(
        env_prefix="FLOWDECK_",
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Discovery ────────────────────────────────────────────────────
    workflows_dir: str = "workflows"
    supported_extensions: list[str] = Field(default_factory=lambda: ["json", "py", "yaml", "yml"])
    load_concurrency: int = Field(default=1, ge=1)

    # ── Retry (discovery) ────────────────────────────────────────────
    discovery_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=10.0, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1)

    # ── Watching ─────────────────────────────────────────────────────
    watch_mode: bool = False
    stability_threshold_ms: int = Field(default=300, ge=0)
    poll_interval_ms: int = Field(default=100, ge=1)
    rescan_interval_seconds: float = Field(default=30.0, gt=0)

    # ── Publishing ───────────────────────────────────────────────────
    auto_publish: bool = False
    publish_url: str | None = None
    publish_api_key: str | None = None
    publish_timeout_seconds: float = Field(default=10.0, gt=0)
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_reset_timeout_seconds: float = Field(default=30.0, ge=0)

    # ── Logging ──────────────────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool = False

    @field_validator("supported_extensions")
    @classmethod
    def _normalize_extensions(cls, value: list[str]) -> list[str]:
        normalized: list[str] = []
        for ext in value:
            ext = ext.strip().lstrip(".").lower()
            if ext and ext not in normalized:
                normalized.append(ext)
        return normalized


@lru_cache
def get_settings() -> RuntimeSettings:
    """Singleton accessor — parsed once, cached forever."""
    return RuntimeSettings()

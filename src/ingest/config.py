"""Ingestion configuration loaded from environment variables.

Every knob of the pipeline (portal location, session TTL, crawl pacing,
regression thresholds) lives here so scripts and tests share one source.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class IngestConfig(BaseSettings):
    """Ingestion configuration loaded from environment variables.

    Settings are loaded from environment variables with sensible defaults.
    For local development, create a .env file in the project root.
    """

    # Portal settings (server-rendered HTML, no API)
    portal_url: str = Field(
        default="https://aisis.ateneo.edu/j_aisis",
        description="Portal base URL (all endpoint paths are relative to it)",
    )
    portal_user: str = Field(
        default="",
        description="Default portal principal for operator scripts",
    )
    portal_pass: str = Field(
        default="",
        description="Default portal secret for operator scripts",
    )

    # Session settings
    session_ttl_minutes: int = Field(
        default=30,
        description="How long a cached portal session is reused before a fresh login",
    )
    request_timeout_seconds: float = Field(
        default=45.0,
        description="Fixed timeout applied to every portal HTTP call",
    )

    # Crawl settings
    crawl_concurrency: int = Field(
        default=8,
        description="Concurrency ceiling for schedule crawls",
    )
    curriculum_concurrency: int = Field(
        default=4,
        description="Concurrency ceiling for curriculum crawls (heavier pages)",
    )
    batch_delay_ms: int = Field(
        default=300,
        description="Pause between crawl batches",
    )
    term_probe_delay_ms: int = Field(
        default=500,
        description="Pause between sequential term discovery probes",
    )
    failed_item_passes: int = Field(
        default=1,
        description="Extra passes the pipeline runs over failed work items",
    )

    # Regression guard
    baseline_dir: str = Field(
        default="data/baselines",
        description="Directory for per-term baseline snapshots",
    )
    baseline_dept_drop_threshold: float = Field(
        default=0.5,
        description="Fractional per-department drop that counts as a regression",
    )
    baselines_file: str | None = Field(
        default=None,
        description="Optional JSON file overriding the declared department baselines",
    )
    raw_html_dir: str = Field(
        default="logs/raw",
        description="Where raw HTML of failed sanity checks is saved",
    )

    # Logging
    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format (for production)",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    model_config = {
        "env_prefix": "",
        "case_sensitive": False,
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def batch_delay(self) -> float:
        return self.batch_delay_ms / 1000

    @property
    def term_probe_delay(self) -> float:
        return self.term_probe_delay_ms / 1000


# Singleton pattern
_config: IngestConfig | None = None


def get_config() -> IngestConfig:
    """Get the ingestion configuration singleton.

    Returns:
        IngestConfig: Ingestion configuration instance
    """
    global _config
    if _config is None:
        _config = IngestConfig()
    return _config

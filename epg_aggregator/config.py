from pathlib import Path
import logging

from croniter import croniter
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from epg_aggregator.utils.timezone import DateFormatError, resolve_timezone


logger = logging.getLogger(__name__)


class CustomSettings(BaseSettings):
    """Application settings loaded from environment variables.

    Validates configuration at startup to catch misconfiguration early.
    """

    database_path: str = "./data/epg_heuristics.db"
    cache_path: str = "./data/epg_cache_v3.json"
    scratch_dir: str | None = None  # None uses the system temp directory
    epg_sources: list[str] | None = None
    epg_fetch_cron: str = "0 3 * * *"  # Daily at 3 AM
    epg_fetch_misfire_grace_sec: int = 3600  # Allow 1 hour to run missed jobs
    epg_fetch_on_startup: bool = True
    epg_default_timezone: str = "UTC"  # Zone for XMLTV timestamps without an offset

    epg_connect_timeout_sec: float = 30.0
    epg_read_timeout_sec: float = 60.0
    epg_download_max_retries: int = 3
    epg_download_backoff_factor: float = 2.0
    epg_source_timeout_sec: int = 900  # Whole pipeline per source, 0 disables
    epg_parse_timeout_sec: int = 600  # XML parsing timeout, 0 disables timeout
    epg_fetch_deadline_sec: int = 0  # Whole fetch operation, 0 disables

    epg_expected_size_fallback_bytes: int = 10_000_000
    epg_expected_parse_duration_sec: float = 20.0
    epg_max_decompressed_mb: int = 64
    epg_progress_tick_sec: float = 0.1
    epg_download_share: float = 0.2
    epg_parse_curve_k: float = 2.5

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("epg_sources", mode="before")
    @classmethod
    def parse_epg_sources(cls, value):
        """Parse comma-separated URLs or list."""
        if value is None:
            return []
        if isinstance(value, str):
            if not value.strip():
                return []
            return [url.strip() for url in value.split(",") if url.strip()]
        if isinstance(value, list):
            return value
        return []

    @field_validator("epg_sources", mode="after")
    @classmethod
    def validate_epg_sources(cls, value):
        """Validate EPG source URLs are HTTP/HTTPS."""
        if not value:
            return value

        for url in value:
            if not url.lower().startswith(("http://", "https://")):
                raise ValueError(f"EPG source URL must be HTTP/HTTPS: {url}")
        return value

    @field_validator("database_path", "cache_path")
    @classmethod
    def validate_storage_path(cls, value: str, info) -> str:
        """Validate storage path parent directory is accessible."""
        path = Path(value)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            return value
        except (OSError, PermissionError) as exc:
            raise ValueError(f"Cannot access {info.field_name} '{value}': {exc}") from exc

    @field_validator("epg_default_timezone")
    @classmethod
    def validate_default_timezone(cls, value: str) -> str:
        """Validate the zone used for offset-less XMLTV timestamps."""
        try:
            resolve_timezone(value)
        except DateFormatError as exc:
            raise ValueError(str(exc)) from exc
        return value

    @field_validator(
        "epg_parse_timeout_sec",
        "epg_source_timeout_sec",
        "epg_fetch_deadline_sec",
        "epg_fetch_misfire_grace_sec",
    )
    @classmethod
    def validate_non_negative_seconds(cls, value: int, info) -> int:
        """Validate timeouts (seconds); 0 disables."""
        if value < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return value

    @field_validator(
        "epg_connect_timeout_sec",
        "epg_read_timeout_sec",
        "epg_expected_parse_duration_sec",
        "epg_progress_tick_sec",
        "epg_parse_curve_k",
    )
    @classmethod
    def validate_positive_floats(cls, value: float, info) -> float:
        """Ensure floating-point settings are positive."""
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator(
        "epg_download_max_retries",
        "epg_expected_size_fallback_bytes",
        "epg_max_decompressed_mb",
    )
    @classmethod
    def validate_positive_ints(cls, value: int, info) -> int:
        """Ensure integer settings are positive."""
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator("epg_download_backoff_factor")
    @classmethod
    def validate_backoff_factor(cls, value: float) -> float:
        """Ensure the backoff multiplier is at least 1."""
        if value < 1:
            raise ValueError("epg_download_backoff_factor must be >= 1")
        return value

    @field_validator("epg_download_share")
    @classmethod
    def validate_download_share(cls, value: float) -> float:
        """The download phase must leave room for the parse phase."""
        if not 0 < value < 1:
            raise ValueError("epg_download_share must be between 0 and 1 (exclusive)")
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate logging level name."""
        normalized = value.upper()
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if normalized not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}")
        return normalized

    @field_validator("epg_fetch_cron")
    @classmethod
    def validate_cron_expression(cls, value: str) -> str:
        """Validate cron expression is valid."""
        try:
            croniter(value)
            return value
        except (ValueError, KeyError) as exc:
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc

    @model_validator(mode="after")
    def validate_epg_configuration(self):
        """Validate cross-field configuration."""
        if not self.epg_sources:
            logger.warning(
                "No EPG sources configured - EPG fetch will not retrieve any data"
            )

        if (
            self.epg_source_timeout_sec
            and self.epg_fetch_deadline_sec
            and self.epg_fetch_deadline_sec < self.epg_source_timeout_sec
        ):
            logger.warning(
                "epg_fetch_deadline_sec (%s) is shorter than epg_source_timeout_sec (%s); "
                "slow sources will be cut off by the overall deadline",
                self.epg_fetch_deadline_sec,
                self.epg_source_timeout_sec,
            )

        return self

    @property
    def max_decompressed_bytes(self) -> int:
        return self.epg_max_decompressed_mb * 1024 * 1024

    def __init__(self, **data):
        """Initialize settings and log configuration."""
        super().__init__(**data)

        logger.info("Configuration loaded:")
        logger.info("  Heuristics Database: %s", self.database_path)
        logger.info("  Cache File: %s", self.cache_path)
        logger.info("  EPG Sources: %s configured", len(self.epg_sources or []))
        logger.info("  Fetch Schedule: %s", self.epg_fetch_cron)
        logger.info("  Fetch Misfire Grace: %ss", self.epg_fetch_misfire_grace_sec)
        logger.info("  Fetch On Startup: %s", self.epg_fetch_on_startup)
        logger.info("  Default Timezone: %s", self.epg_default_timezone)
        logger.info(
            "  HTTP Timeouts: connect=%.1fs read=%.1fs retries=%s",
            self.epg_connect_timeout_sec,
            self.epg_read_timeout_sec,
            self.epg_download_max_retries,
        )
        logger.info(
            "  Source Timeout: %s seconds",
            self.epg_source_timeout_sec or "disabled",
        )
        logger.info(
            "  Parse Timeout: %s seconds",
            self.epg_parse_timeout_sec or "disabled",
        )
        logger.info(
            "  Fetch Deadline: %s seconds",
            self.epg_fetch_deadline_sec or "disabled",
        )
        logger.info("  Max Decompressed Size: %s MB", self.epg_max_decompressed_mb)
        logger.info(
            "  Progress Model: download share=%.2f k=%.2f fallback parse=%.1fs",
            self.epg_download_share,
            self.epg_parse_curve_k,
            self.epg_expected_parse_duration_sec,
        )


settings = CustomSettings()


def setup_logging() -> None:
    """Configure application logging."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

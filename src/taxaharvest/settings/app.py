"""Application settings powered by Pydantic BaseSettings.

Each provider reads its own environment prefix. Out-of-range numeric values
are clamped to the provider's supported bounds rather than rejected, so a
mistyped concurrency of 40 still yields a working (if conservative) client.
"""

from datetime import timedelta
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from taxaharvest.fetch.models import RetryPolicy
from taxaharvest.ingest.models import BatchTuning


DEFAULT_USER_AGENT = (
    "taxaharvest/0.1 (https://github.com/taxaharvest/taxaharvest; "
    "taxonomy cache bot)"
)


def _clamp(value: float, lower: float, upper: float) -> float:
    return min(max(value, lower), upper)


class IucnApiSettings(BaseSettings):
    """IUCN Red List API configuration."""

    model_config = SettingsConfigDict(
        env_prefix="IUCN_API_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    base_url: str = "https://api.iucnredlist.org"
    token: SecretStr | None = None
    timeout_seconds: float = 120.0
    max_concurrency: int = 1
    retry_initial_seconds: float = 2.0
    retry_max_seconds: float = 60.0

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the base URL so paths can be appended directly."""
        return v.rstrip("/")

    @field_validator("max_concurrency")
    @classmethod
    def clamp_concurrency(cls, v: int) -> int:
        """Clamp concurrency to 1-4."""
        return int(_clamp(v, 1, 4))

    @field_validator("retry_initial_seconds")
    @classmethod
    def clamp_retry_initial(cls, v: float) -> float:
        """Clamp initial backoff to 1-30 seconds."""
        return _clamp(v, 1.0, 30.0)

    @field_validator("retry_max_seconds")
    @classmethod
    def clamp_retry_max(cls, v: float) -> float:
        """Clamp maximum backoff to 5-300 seconds."""
        return _clamp(v, 5.0, 300.0)

    def require_token(self) -> str:
        """Return the API token.

        Raises:
            ValueError: If IUCN_API_TOKEN is not configured.
        """
        if self.token is None or not self.token.get_secret_value().strip():
            msg = "IUCN_API_TOKEN is not configured"
            raise ValueError(msg)
        return self.token.get_secret_value().strip()

    def retry_policy(self) -> RetryPolicy:
        """Build the retry policy for IUCN requests."""
        return RetryPolicy(
            initial_delay_seconds=self.retry_initial_seconds,
            max_delay_seconds=max(self.retry_max_seconds, self.retry_initial_seconds),
        )


class WikidataSettings(BaseSettings):
    """Wikidata action API and SPARQL configuration."""

    model_config = SettingsConfigDict(
        env_prefix="WIKIDATA_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    api_endpoint: str = "https://www.wikidata.org/w/api.php"
    sparql_endpoint: str = "https://query.wikidata.org/sparql"
    user_agent: str = DEFAULT_USER_AGENT
    timeout_seconds: float = 120.0
    request_delay_ms: int = Field(default=500, ge=0)
    sparql_delay_ms: int = Field(default=1000, ge=0)
    sparql_batch_size: int = 500
    max_concurrency: int = 2
    retry_initial_seconds: float = 2.0
    retry_max_seconds: float = 60.0

    @field_validator("timeout_seconds")
    @classmethod
    def clamp_timeout(cls, v: float) -> float:
        """Clamp timeout to 5-600 seconds."""
        return _clamp(v, 5.0, 600.0)

    @field_validator("sparql_batch_size")
    @classmethod
    def clamp_batch_size(cls, v: int) -> int:
        """Clamp SPARQL page size to 50-2000."""
        return int(_clamp(v, 50, 2000))

    @field_validator("max_concurrency")
    @classmethod
    def clamp_concurrency(cls, v: int) -> int:
        """Clamp concurrency to 1-4."""
        return int(_clamp(v, 1, 4))

    @field_validator("user_agent")
    @classmethod
    def default_blank_user_agent(cls, v: str) -> str:
        """Wikimedia rejects anonymous clients; never send a blank agent."""
        return v.strip() or DEFAULT_USER_AGENT

    def retry_policy(self) -> RetryPolicy:
        """Build the retry policy for Wikidata requests."""
        return RetryPolicy(
            initial_delay_seconds=_clamp(self.retry_initial_seconds, 1.0, 30.0),
            max_delay_seconds=_clamp(self.retry_max_seconds, 5.0, 300.0),
        )


class WikipediaSettings(BaseSettings):
    """Wikipedia action and REST API configuration."""

    model_config = SettingsConfigDict(
        env_prefix="WIKIPEDIA_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    action_endpoint: str = "https://en.wikipedia.org/w/api.php"
    rest_endpoint: str = "https://en.wikipedia.org/api/rest_v1/"
    user_agent: str = DEFAULT_USER_AGENT
    timeout_seconds: float = 120.0
    action_delay_ms: int = Field(default=500, ge=0)
    rest_delay_ms: int = Field(default=500, ge=0)
    max_concurrency: int = 2
    retry_initial_seconds: float = 2.0
    retry_max_seconds: float = 60.0

    @field_validator("rest_endpoint")
    @classmethod
    def ensure_trailing_slash(cls, v: str) -> str:
        """REST paths are joined relative to the endpoint."""
        return v if v.endswith("/") else v + "/"

    @field_validator("timeout_seconds")
    @classmethod
    def clamp_timeout(cls, v: float) -> float:
        """Clamp timeout to 5-600 seconds."""
        return _clamp(v, 5.0, 600.0)

    @field_validator("max_concurrency")
    @classmethod
    def clamp_concurrency(cls, v: int) -> int:
        """Clamp concurrency to 1-4."""
        return int(_clamp(v, 1, 4))

    @field_validator("user_agent")
    @classmethod
    def default_blank_user_agent(cls, v: str) -> str:
        """Wikimedia rejects anonymous clients; never send a blank agent."""
        return v.strip() or DEFAULT_USER_AGENT

    def retry_policy(self) -> RetryPolicy:
        """Build the retry policy for Wikipedia requests."""
        return RetryPolicy(
            initial_delay_seconds=_clamp(self.retry_initial_seconds, 1.0, 30.0),
            max_delay_seconds=_clamp(self.retry_max_seconds, 5.0, 300.0),
        )


class IngestionSettings(BaseSettings):
    """Provider-independent ingestion tuning."""

    model_config = SettingsConfigDict(
        env_prefix="HARVEST_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    cache_dir: Path = Path("data/cache")
    work_batch_size: int = Field(default=100, ge=1, le=5000)
    failure_retry_delay_seconds: float = Field(default=300.0, ge=0.0)
    failure_retry_max_delay_seconds: float = Field(default=86400.0, ge=0.0)
    refresh_max_age_days: float | None = Field(default=None, gt=0.0)
    batch_ramp_increment: int = Field(default=100, ge=1)
    batch_cool_down_seconds: float = Field(default=10.0, ge=0.0)
    max_timeout_retries: int = Field(default=5, ge=0)
    log_level: str = "INFO"
    log_json: bool = True

    @property
    def failure_retry_delay(self) -> timedelta:
        """Not-before delay after an entity's first failure."""
        return timedelta(seconds=self.failure_retry_delay_seconds)

    @property
    def failure_retry_max_delay(self) -> timedelta:
        """Cap for the doubled delay after repeated failures."""
        return timedelta(seconds=self.failure_retry_max_delay_seconds)

    @property
    def refresh_max_age(self) -> timedelta | None:
        """Age after which a cached entity is refetched, if configured."""
        if self.refresh_max_age_days is None:
            return None
        return timedelta(days=self.refresh_max_age_days)

    def batch_tuning(self, batch_size: int) -> BatchTuning:
        """Build cursor batch tuning for a stream.

        Args:
            batch_size: Configured page size for the stream.

        Returns:
            Frozen tuning parameters.
        """
        return BatchTuning(
            batch_size=batch_size,
            ramp_increment=self.batch_ramp_increment,
            cool_down_seconds=self.batch_cool_down_seconds,
            max_timeout_retries=self.max_timeout_retries,
        )


class HarvestSettings(BaseModel):
    """All configuration for a harvest process.

    Constructed once at process start by `load_settings()` and passed by
    reference to every component that needs it.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    iucn: IucnApiSettings = Field(default_factory=IucnApiSettings)
    wikidata: WikidataSettings = Field(default_factory=WikidataSettings)
    wikipedia: WikipediaSettings = Field(default_factory=WikipediaSettings)
    ingestion: IngestionSettings = Field(default_factory=IngestionSettings)

    def cache_path(self, name: str) -> Path:
        """Get the SQLite path for a provider stream.

        Args:
            name: Store file stem (e.g. "wikidata").

        Returns:
            Path under the configured cache directory.
        """
        return self.ingestion.cache_dir / f"{name}.sqlite"


def load_settings() -> HarvestSettings:
    """Read environment (and .env) into a settings object."""
    return HarvestSettings()

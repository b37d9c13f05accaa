from pathlib import Path
from typing import List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = Path(__file__).resolve().parents[2] / ".env"

DEFAULT_PARAMETERS = [
    "Total-SNO",
    "3hrly-SNO",
    "Total-QPF",
    "3hrly-QPF",
    "3hrly-TMP",
    "3h-10mWND",
]


class Settings(BaseSettings):
    # Load the repo-level .env and accept env keys in any case
    model_config = SettingsConfigDict(env_file=str(_ENV_FILE), extra="ignore", case_sensitive=False)

    app_name: str = "SREF Proxy"
    app_version: str = "0.1.0"
    debug: bool = False
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    port: int = 3001
    log_level: str = "INFO"

    # Upstream plume service
    upstream_base_url: str = Field(default="https://www.spc.noaa.gov", description="Scheme and host of the plume service")
    upstream_path: str = Field(
        default="/exper/sref/srefplumes/returndata.php",
        description="Path of the plume data endpoint.",
    )
    upstream_user_agent: str = Field(
        default="SREF-Viewer/1.0 (Personal Weather Tool)",
        description="User-Agent sent to the upstream plume service.",
    )
    upstream_timeout: float = Field(default=15.0, ge=1.0, description="Hard timeout in seconds for one upstream fetch")
    upstream_max_attempts: int = Field(default=3, ge=1, le=10, description="Attempts per miss, including the first")
    upstream_retry_base_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Backoff after failed attempt n is base * 2^(n-1) seconds.",
    )

    # Request vocabulary
    run_hours: List[int] = Field(default_factory=lambda: [3, 9, 15, 21])
    parameters: List[str] = Field(default_factory=lambda: list(DEFAULT_PARAMETERS))

    # Cache
    cache_max_entries: int = Field(default=1000, ge=1, description="Entry count that triggers eviction")
    cache_evict_fraction: float = Field(default=0.1, gt=0.0, le=1.0, description="Share of oldest entries evicted")
    cache_min_members: int = Field(
        default=10,
        ge=0,
        description="Minimum ensemble member count before a result is cached.",
    )
    cache_ttl_strategy: Literal["schedule", "fixed"] = "schedule"
    cache_ttl_min_hours: float = Field(default=1.0, gt=0.0)
    cache_ttl_max_hours: float = Field(default=8.0, gt=0.0)
    run_ready_delay_hours: float = Field(
        default=2.0,
        ge=0.0,
        description="Processing delay between a run's nominal hour and its data being published.",
    )
    cache_fixed_ttl_hours: float = Field(default=14 * 24, gt=0.0, description="TTL used by the fixed strategy")
    cache_snapshot_path: str | None = Field(
        default="data/sref_cache.json",
        description="JSON snapshot of the cache reloaded on startup. Set to blank to disable.",
    )
    cache_snapshot_debounce_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="Quiet period after the last cache mutation before the snapshot is written.",
    )

    # Admission control for cache misses
    rate_limit_enabled: bool = True
    rate_limit_capacity: int = Field(default=50, ge=1)
    rate_limit_refill_per_second: float = Field(default=1.0, gt=0.0)
    rate_limit_idle_seconds: float = Field(
        default=3600.0,
        ge=0.0,
        description="Full buckets untouched for this long are dropped.",
    )
    trust_forwarded_for: bool = Field(
        default=False,
        description="Identify clients by the first X-Forwarded-For hop (only behind a trusted reverse proxy).",
    )

    coalesce_upstream_fetches: bool = Field(
        default=False,
        description="Share one in-flight upstream fetch between concurrent misses for the same key.",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def normalize_cors(cls, v):
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("["):
                import json
                return json.loads(s)
            if s in ("", "*"):
                return ["*"]
            return [p.strip() for p in s.split(",")]
        return v

    @field_validator("cache_snapshot_path", mode="before")
    @classmethod
    def blank_snapshot_path(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("run_hours")
    @classmethod
    def check_run_hours(cls, v: List[int]) -> List[int]:
        hours = sorted(set(v))
        if not hours or any(h < 0 or h > 23 for h in hours):
            raise ValueError("run_hours must be UTC hours between 0 and 23")
        return hours

    @property
    def run_codes(self) -> List[str]:
        return [f"{hour:02d}" for hour in self.run_hours]


settings = Settings()

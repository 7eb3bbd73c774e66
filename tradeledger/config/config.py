"""
Configuration models for the reconciliation engine.

Uses Pydantic for validation and type safety. Values come from
config.yaml (with ${VAR} expansion) and environment overrides
(TRADELEDGER_ prefix, ``__`` for nesting).
"""
import os
import re
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tradeledger import constants

CONFIG_SCHEMA_VERSION = "2026-10-01"


class ReconciliationConfig(BaseSettings):
    """Tolerances and thresholds. Defaults only: each run receives them explicitly."""
    model_config = SettingsConfigDict(extra="ignore")

    tolerance_pct: Decimal = Field(
        default=constants.RECONCILE_TOLERANCE_PCT, ge=0, le=100,
        description="Max |differencePercent| for a run to count as reconciled",
    )
    match_window_minutes: int = Field(
        default=constants.MATCH_WINDOW_MINUTES, ge=0, le=24 * 60,
        description="Grace period after a lifecycle's last fill for ledger income",
    )
    min_discrepancy_abs: Decimal = Field(
        default=constants.MIN_DISCREPANCY_ABS, ge=0,
        description="Balance gaps at or below this are not discrepancies",
    )
    auto_fix_enabled: bool = Field(default=False, description="Auto-fix small discrepancies on scheduled runs")
    auto_fix_threshold: Decimal = Field(
        default=constants.AUTO_FIX_THRESHOLD, ge=0,
        description="Max |discrepancy| corrected without operator confirmation",
    )
    currency_precision: int = Field(default=constants.CURRENCY_PRECISION, ge=0, le=8)
    aggregation_workers: int = Field(default=4, ge=1, le=64, description="Threads for per-symbol aggregation")


class FetchConfig(BaseSettings):
    """Upstream feed bounds."""
    model_config = SettingsConfigDict(extra="ignore")

    timeout_seconds: float = Field(default=constants.DEFAULT_FETCH_TIMEOUT_SECONDS, gt=0, le=3600)
    max_pages: int = Field(default=constants.DEFAULT_MAX_PAGES, ge=1, le=100000)


class DataConfig(BaseSettings):
    """Persistence configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: Optional[str] = None
    run_lock_ttl_seconds: int = Field(default=constants.RUN_LOCK_TTL_SECONDS, ge=30, le=86400)
    idempotency_key_retention_days: int = Field(default=constants.IDEMPOTENCY_KEY_RETENTION_DAYS, ge=1)

    @field_validator("database_url")
    @classmethod
    def _check_scheme(cls, v: Optional[str]) -> Optional[str]:
        if v and not (v.startswith("postgresql") or v.startswith("sqlite")):
            raise ValueError("database_url must be a postgresql:// or sqlite:// URL")
        return v


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_prefix="TRADELEDGER_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "test", "prod"] = "prod"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # ${VAR} or $VAR, left as-is when unset
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        data = config_dict.setdefault("data", {}) or {}
        config_dict["data"] = data
        if str(data.get("database_url") or "").startswith("$"):
            # Unexpanded placeholder: DATABASE_URL is not set
            data["database_url"] = None
        db_url = os.getenv("DATABASE_URL")
        if db_url and not data.get("database_url"):
            data["database_url"] = db_url

        return cls(**config_dict)

    def run_parameters(self, **overrides) -> "RunParameters":
        recon = self.reconciliation
        params = dict(
            tolerance_pct=recon.tolerance_pct,
            match_window=timedelta(minutes=recon.match_window_minutes),
            min_discrepancy_abs=recon.min_discrepancy_abs,
            auto_fix_threshold=recon.auto_fix_threshold,
            currency_precision=recon.currency_precision,
            aggregation_workers=recon.aggregation_workers,
            fetch_timeout_seconds=self.fetch.timeout_seconds,
            max_pages=self.fetch.max_pages,
        )
        params.update({k: v for k, v in overrides.items() if v is not None})
        return RunParameters(**params)


@dataclass(frozen=True)
class RunParameters:
    """
    Effective knobs for one run.

    Passed into every component explicitly; nothing reads tolerances from
    module state.
    """
    tolerance_pct: Decimal = constants.RECONCILE_TOLERANCE_PCT
    match_window: timedelta = timedelta(minutes=constants.MATCH_WINDOW_MINUTES)
    min_discrepancy_abs: Decimal = constants.MIN_DISCREPANCY_ABS
    auto_fix_threshold: Decimal = constants.AUTO_FIX_THRESHOLD
    currency_precision: int = constants.CURRENCY_PRECISION
    aggregation_workers: int = 4
    fetch_timeout_seconds: float = constants.DEFAULT_FETCH_TIMEOUT_SECONDS
    max_pages: int = constants.DEFAULT_MAX_PAGES


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses the packaged config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        pydantic.ValidationError: If configuration validation fails
    """
    from tradeledger.config.dotenv_loader import load_dotenv_files

    load_dotenv_files()

    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    return Config.from_yaml(config_path)

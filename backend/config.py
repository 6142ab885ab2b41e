"""
Ledger Configuration

Environment-driven settings for the ledger engine:
- Store connection and pooling
- Valuation thresholds (price staleness, CPI series and base period)
- Reference-data lookup timeout
- Access-control policy switches
"""

import os
from dataclasses import dataclass
from typing import Optional, Tuple


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def parse_period(value: str) -> Tuple[int, int]:
    """Parse a 'YYYY-MM' period string into (year, month)."""
    year_str, month_str = value.strip().split("-", 1)
    year, month = int(year_str), int(month_str)
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month in period: {value}")
    return year, month


@dataclass
class LedgerConfig:
    """Configuration for the ledger engine"""
    database_url: Optional[str] = None
    price_staleness_days: Optional[int] = None
    cpi_series: Optional[str] = None
    cpi_base_period: Optional[str] = None
    reference_timeout_seconds: Optional[float] = None
    editors_can_grant: Optional[bool] = None
    log_level: Optional[str] = None

    def __post_init__(self):
        if not self.database_url:
            self.database_url = os.getenv("SQLALCHEMY_DATABASE_URL", "sqlite:///./ledger.db")
        if self.price_staleness_days is None:
            self.price_staleness_days = int(os.getenv("LEDGER_PRICE_STALENESS_DAYS", "7"))
        if not self.cpi_series:
            self.cpi_series = os.getenv("LEDGER_CPI_SERIES", "CUUR0000SA0")
        if not self.cpi_base_period:
            self.cpi_base_period = os.getenv("LEDGER_CPI_BASE_PERIOD", "2020-01")
        if self.reference_timeout_seconds is None:
            self.reference_timeout_seconds = float(os.getenv("LEDGER_REFERENCE_TIMEOUT_SECONDS", "5"))
        if self.editors_can_grant is None:
            self.editors_can_grant = _env_bool("LEDGER_EDITORS_CAN_GRANT", False)
        if not self.log_level:
            self.log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()

    @property
    def cpi_base(self) -> Tuple[int, int]:
        return parse_period(self.cpi_base_period)


_config: Optional[LedgerConfig] = None


def get_config() -> LedgerConfig:
    """Process-wide configuration, built from the environment on first use."""
    global _config
    if _config is None:
        _config = LedgerConfig()
    return _config


def set_config(config: Optional[LedgerConfig]) -> None:
    """Override (or reset with None) the process-wide configuration."""
    global _config
    _config = config

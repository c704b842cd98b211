"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Dict, Optional


class MiniLendConfig(BaseSettings):
    """MiniLend lending core configuration"""
    
    # Storage configuration
    database_url: str = "memory://"  # memory:// or sqlite:///path/to/db
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Credit policy
    credit_limit_ratio: str = "0.50"  # Fraction of collateral that can be borrowed
    initial_credit_score: int = 600  # 300-850
    # Lowest score of each tier -> multiplier on credit_limit_ratio
    credit_score_multipliers: Dict[int, str] = {300: "0.6", 500: "1.0", 750: "1.2"}

    # Loan policy
    default_term_days: int = 30
    repayment_schedule: str = "balloon"  # balloon or installments
    installment_count: int = 4
    grace_period_days: int = 10
    interest_compounding: str = "simple"  # simple or daily
    
    # Pool policy
    pool_interest_share: str = "0"  # Share of repaid interest returned to availableFunds
    default_rate_pause_threshold: str = "0.20"
    
    # Concurrency
    lock_timeout_seconds: float = 5.0
    
    # External ledger gateway
    ledger_gateway_url: str = ""  # Empty = dry run
    ledger_gateway_timeout: float = 10.0
    ledger_gateway_api_key: str = ""
    ledger_gateway_max_retries: int = 3
    ledger_gateway_backoff_seconds: float = 0.5
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "MINILEND_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = MiniLendConfig()


def get_config() -> MiniLendConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MiniLendConfig:
    """Reload configuration from environment"""
    global config
    config = MiniLendConfig()
    return config

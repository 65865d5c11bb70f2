"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class CustodyConfig(BaseSettings):
    """Custody programs and host ledger configuration"""
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Rent configuration (host ledger defaults)
    rent_lamports_per_byte_year: int = 3480
    rent_exemption_threshold: float = 2.0
    account_storage_overhead: int = 128
    
    # Runtime limits
    max_instructions_per_transaction: int = 64
    max_invoke_depth: int = 4
    
    # Clock
    genesis_slot: int = 0
    genesis_unix_timestamp: int = 1_700_000_000
    
    # AMM configuration
    lp_mint_decimals: int = 6
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "CUSTODY_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = CustodyConfig()


def get_config() -> CustodyConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> CustodyConfig:
    """Reload configuration from environment"""
    global config
    config = CustodyConfig()
    return config

"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings


class LedgerConfig(BaseSettings):
    """Atomic ledger service configuration"""
    
    # Database configuration (CockroachDB speaks the PostgreSQL protocol)
    database_url: str = "postgresql://root@127.0.0.1:26257/atomic_ledger?sslmode=disable"
    db_pool_min: int = 1
    db_pool_max: int = 10
    db_connect_timeout: int = 5  # seconds
    db_statement_timeout_ms: int = 5000
    
    # Transfer protocol configuration
    transfer_max_attempts: int = 5
    transfer_backoff_initial: float = 0.05  # seconds
    transfer_backoff_max: float = 1.0  # seconds
    transfer_retry_deadline: float = 10.0  # seconds, across all attempts
    default_opening_balance: str = "1000.00"
    
    # Fault injection configuration
    chaos_node: str = "atomic-ledger-roach-3-1"
    chaos_backend: str = "cli"  # cli or engine
    chaos_docker_binary: str = "docker"
    docker_engine_url: str = "http://localhost:2375"
    chaos_timeout: float = 15.0  # seconds
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8081
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    
    class Config:
        env_prefix = "ATOMIC_LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config

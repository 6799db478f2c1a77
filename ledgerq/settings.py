"""Environment settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process settings read from ``LEDGERQ_*`` variables or a ``.env`` file."""
    model_config = SettingsConfigDict(env_prefix="LEDGERQ_", env_file=".env", extra="ignore")

    data_dir: str = ".ledgerq"
    log_level: str = "INFO"
    status_key: str = "deriv:tBTCF0:USTF0"

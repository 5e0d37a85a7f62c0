"""
Configuration for the weathermap service.

We use pydantic-settings (Pydantic v2) to load process settings from:
- environment variables
- a local `.env` file in the project root

The network topology itself (routers, interfaces, links) lives in a YAML
file pointed to by CONFIG_PATH; see `weathermap.topology`.
"""

import logging
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings.

    Environment variables (with defaults):

    - DATA_DIR:                      Directory holding config, background, snapshots (default: data)
    - CONFIG_PATH:                   Topology YAML (default: <DATA_DIR>/config.yaml)
    - HOST / PORT:                   Bind address for the API (default: 0.0.0.0:3000)
    - USE_SNMP_STUB:                 "1" or "0" to toggle simulated counters (default: 1/True)
    - SNMP_TIMEOUT_SECONDS:          Per-request SNMP timeout (default: 1)
    - SNMP_RETRIES:                  Per-request SNMP retries (default: 1)
    - TARGET_TIMEOUT_SECONDS:        Hard limit for sampling one router, 0 disables (default: 30)
    - SNAPSHOT_DIR:                  Where PNG snapshots go (default: <DATA_DIR>/snapshots)
    - SNAPSHOT_INTERVAL_SECONDS:     How often to export a PNG, 0 disables (default: 60)
    - CONFIG_WATCH_INTERVAL_SECONDS: How often to check CONFIG_PATH for changes (default: 2)
    - LOG_LEVEL:                     Root log level (default: INFO)
    """

    data_dir: Path = Path("data")
    config_path: Optional[Path] = None

    host: str = "0.0.0.0"
    port: int = 3000

    use_snmp_stub: bool = True
    snmp_timeout_seconds: float = 1.0
    snmp_retries: int = 1
    target_timeout_seconds: float = 30.0

    snapshot_dir: Optional[Path] = None
    snapshot_interval_seconds: int = 60

    config_watch_interval_seconds: float = 2.0

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalise_log_level(cls, v):
        """Accept `debug`, ` Info ` etc. and hand logging an upper-case name."""
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("config_path", "snapshot_dir", mode="before")
    @classmethod
    def empty_path_is_unset(cls, v):
        """An empty CONFIG_PATH= / SNAPSHOT_DIR= line in `.env` means "use the default"."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def resolved_config_path(self) -> Path:
        return (self.config_path or self.data_dir / "config.yaml").resolve()

    @property
    def resolved_snapshot_dir(self) -> Path:
        return (self.snapshot_dir or self.data_dir / "snapshots").resolve()


# Single global settings object
settings = Settings()


def setup_logging(level: str = settings.log_level) -> None:
    """Root logging config shared by every entrypoint."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

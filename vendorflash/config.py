"""Unified Application Configuration - flashing service, tool provisioning and HTTP API"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from pathlib import Path
from typing import List


class Settings(BaseSettings):
    """Application settings for the multi-vendor flashing service"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "vendorflash"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Server
    PY_HOST: str = "127.0.0.1"
    PY_PORT: int = 17891

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"  # json or text

    # Managed directories
    TOOLS_DIR: str = Field(
        default="~/.vendorflash/tools",
        description="Managed directory for vendor tool binaries and scripts",
    )
    LOADERS_DIR: str = Field(
        default="~/.vendorflash/loaders",
        description="Managed directory for firehose programmers and scatter files",
    )
    SCRATCH_ROOT: str = Field(
        default="~/.vendorflash/scratch",
        description="Root for per-session firmware extraction directories",
    )

    # Tool downloads
    USER_AGENT: str = "vendorflash/1.0 (+firmware flashing orchestrator)"
    DOWNLOAD_TIMEOUT_SEC: int = 1800
    DOWNLOAD_MIN_BYTES: int = Field(
        default=1000,
        description="Downloads smaller than this are treated as error pages",
    )
    PYTHON_CANDIDATES: str = Field(
        default="python3,python,py",
        description="Comma-separated interpreter names tried for script-based tools",
    )

    # Safety / timeouts
    FLASH_TIMEOUT_SEC: int = 1800
    TABLE_READ_TIMEOUT_SEC: int = 120
    REBOOT_TIMEOUT_SEC: int = 30
    CRITICAL_ROLES: str = Field(
        default="BL,AP",
        description="Comma-separated firmware roles whose failure fails the whole session",
    )
    PIT_SECTOR_SIZE: int = 512

    @property
    def tools_path(self) -> Path:
        return Path(self.TOOLS_DIR).expanduser()

    @property
    def loaders_path(self) -> Path:
        return Path(self.LOADERS_DIR).expanduser()

    @property
    def scratch_path(self) -> Path:
        return Path(self.SCRATCH_ROOT).expanduser()

    @property
    def python_candidates_list(self) -> List[str]:
        """Parse interpreter candidates from comma-separated string"""
        return [c.strip() for c in self.PYTHON_CANDIDATES.split(",") if c.strip()]

    @property
    def critical_roles_list(self) -> List[str]:
        """Parse critical roles from comma-separated string"""
        return [r.strip().upper() for r in self.CRITICAL_ROLES.split(",") if r.strip()]


settings = Settings()

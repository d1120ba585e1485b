"""
Lab Range - Application Configuration
Pydantic Settings with environment variable support
"""

from functools import lru_cache
from pathlib import Path
from typing import List, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    app_name: str = "Lab Range"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "production"

    # ==========================================================================
    # Server
    # ==========================================================================
    host: str = "0.0.0.0"
    port: int = 8000

    # ==========================================================================
    # Database
    # ==========================================================================
    database_url: str = "sqlite+aiosqlite:///./data/labrange.db"
    database_pool_size: int = 20
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_echo: bool = False

    # ==========================================================================
    # Security
    # ==========================================================================
    secret_key: str = Field(min_length=32)
    jwt_algorithm: str = "HS256"

    # ==========================================================================
    # CORS
    # ==========================================================================
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | List[str]) -> List[str]:
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    # ==========================================================================
    # Rate Limiting
    # ==========================================================================
    rate_limit_enabled: bool = True
    rate_limit_submit: str = "30/minute"

    # ==========================================================================
    # Logging
    # ==========================================================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "console"] = "json"

    # ==========================================================================
    # Sessions
    # ==========================================================================
    session_duration_minutes: int = Field(default=60, gt=0)
    session_extension_minutes: int = Field(default=30, gt=0)
    max_session_extensions: int = Field(default=3, ge=0)
    max_concurrent_sessions: int = Field(default=10, gt=0)
    session_retention_hours: int = 24
    inactivity_timeout_minutes: int = 0  # 0 disables the inactivity policy

    # ==========================================================================
    # Network
    # ==========================================================================
    network_mode: Literal["nat", "bridge"] = "nat"
    public_host: str = "127.0.0.1"
    ssh_port_start: int = 2200
    ssh_port_end: int = 3199
    web_port_start: int = 8000
    web_port_end: int = 8999
    subnet_base: str = "10.10.0.0/16"
    subnet_vm_host: int = Field(default=10, ge=2, le=254)

    @model_validator(mode="after")
    def check_port_ranges(self) -> "Settings":
        if self.ssh_port_end < self.ssh_port_start:
            raise ValueError("ssh_port_end must not be below ssh_port_start")
        if self.web_port_end < self.web_port_start:
            raise ValueError("web_port_end must not be below web_port_start")
        return self

    # ==========================================================================
    # Hypervisor (libvirt)
    # ==========================================================================
    libvirt_uri: str = "qemu:///system"
    virsh_binary: str = "virsh"
    qemu_img_binary: str = "qemu-img"
    base_images_dir: Path = Path("/var/lib/labrange/templates")
    session_disks_dir: Path = Path("/var/lib/labrange/sessions")
    hypervisor_command_timeout: int = 60  # seconds
    hypervisor_retry_attempts: int = 3
    boot_timeout_seconds: int = 180
    address_poll_interval: float = 3.0

    # ==========================================================================
    # Flags
    # ==========================================================================
    flag_injection_attempts: int = 20
    flag_injection_backoff_seconds: float = 5.0
    ssh_connect_timeout: int = 10

    # ==========================================================================
    # VPN
    # ==========================================================================
    vpn_server_host: str = "vpn.labrange.local"
    vpn_server_port: int = 1194
    vpn_protocol: Literal["udp", "tcp"] = "udp"
    vpn_certs_dir: Path = Path("/etc/openvpn/server")
    vpn_configs_dir: Path = Path("/var/lib/labrange/vpn")

    # ==========================================================================
    # Cleanup
    # ==========================================================================
    cleanup_interval_seconds: int = 60
    teardown_grace_seconds: int = 300
    max_teardown_attempts: int = Field(default=5, ge=1)

    # ==========================================================================
    # Scoring hook
    # ==========================================================================
    scoring_hook_url: str = ""
    scoring_hook_timeout: float = 5.0


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

"""
faultline Configuration

Type-safe settings built on Pydantic. Values come from defaults, a JSON
file or environment variables prefixed with ``FAULTLINE_`` (nested fields
use ``__``, e.g. ``FAULTLINE_TIMEOUTS__STATUS=300``).
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class SSHConfig(BaseModel):
    """Remote execution settings."""
    user: str = "robotest"
    port: int = Field(default=22, ge=1, le=65535)
    key_path: Optional[Path] = None
    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    command_timeout_seconds: float = Field(default=600.0, gt=0)
    # Waiting for sshd after a reboot
    reconnect_deadline_seconds: float = Field(default=300.0, gt=0)
    reconnect_interval_seconds: float = Field(default=5.0, ge=0)
    strict_host_key_checking: bool = False
    extra_options: List[str] = Field(default_factory=list)


class TimeoutConfig(BaseModel):
    """Deadlines bounding blocking steps."""
    status: float = Field(default=600.0, gt=0, description="Status query and failover scenario deadline")
    operation: Optional[float] = Field(default=None, gt=0, description="Long-running operation deadline")


class RetryPolicyConfig(BaseModel):
    """Bounded retry with a fixed delay."""
    attempts: int = Field(default=100, ge=1)
    delay_seconds: float = Field(default=5.0, ge=0)


class CommandConfig(BaseModel):
    """Command templates run on cluster nodes."""
    install_dir: str = "installer"
    system_log_file: str = "./telekube-system.log"
    status: str = "sudo gravity status --output=json --system-log-file={log_file}"
    leader_key: str = "/planet/cluster/{cluster}/master"
    leader_lookup: str = "etcdctl get {key}"
    enter_container: str = "cd {install_dir} && sudo ./gravity enter -- --notty {cmd} -- {args}"
    operation_launch: str = "sudo -E {executable} {command} --insecure --quiet --system-log-file={log_path}"
    operation_status: str = "cd {install_dir} && ./gravity status --operation-id={operation_id} -q"
    collect_logs: str = "cd {install_dir} && sudo ./gravity system report {args}"
    firewall: str = "sudo iptables {action} {chain} {match} {peer} -j DROP"
    reboot: str = "sudo shutdown -r now"
    reboot_forced: str = "sudo reboot -f"
    power_off: str = "sudo shutdown -h now"
    power_off_forced: str = "sudo poweroff -f"


class FailoverConfig(BaseModel):
    """Failover scenario settings."""
    heal_on_failure: bool = Field(default=True, description="Heal the partition if a later stage fails")
    healthy_states: List[str] = Field(default_factory=lambda: ["active", "degraded"])
    converged_state: str = "active"

    @field_validator("healthy_states")
    @classmethod
    def validate_healthy_states(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("healthy_states must not be empty")
        return v


class LoggingConfig(BaseModel):
    """Logging settings."""
    level: LogLevel = LogLevel.INFO
    format: Literal["json", "console"] = "console"


class FaultlineConfig(BaseSettings):
    """
    Main faultline configuration.

    Loads configuration from environment variables and/or config files.
    Environment variables are prefixed with FAULTLINE_
    (e.g., FAULTLINE_LOGGING__LEVEL=DEBUG).
    """

    ssh: SSHConfig = Field(default_factory=SSHConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    leader_election: RetryPolicyConfig = Field(
        default_factory=lambda: RetryPolicyConfig(attempts=100, delay_seconds=5.0)
    )
    active_status: RetryPolicyConfig = Field(
        default_factory=lambda: RetryPolicyConfig(attempts=100, delay_seconds=10.0)
    )
    operation: RetryPolicyConfig = Field(
        default_factory=lambda: RetryPolicyConfig(attempts=1000, delay_seconds=20.0)
    )
    commands: CommandConfig = Field(default_factory=CommandConfig)
    failover: FailoverConfig = Field(default_factory=FailoverConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Where collected node logs are written
    state_dir: Path = Field(default=Path("./state"))

    model_config = {
        "env_prefix": "FAULTLINE_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    @field_validator("state_dir", mode="before")
    @classmethod
    def ensure_path(cls, v: Any) -> Path:
        """Ensure value is converted to Path."""
        if isinstance(v, str):
            return Path(v)
        return v

    @classmethod
    def from_file(cls, config_path: Path) -> "FaultlineConfig":
        """Load configuration from a JSON file."""
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            config_data = json.load(f)

        return cls(**config_data)

    def to_file(self, config_path: Path) -> None:
        """Save configuration to a JSON file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2)


# Global configuration instance (lazy loaded)
_config: Optional[FaultlineConfig] = None


def get_config() -> FaultlineConfig:
    """Get the global faultline configuration instance."""
    global _config
    if _config is None:
        _config = FaultlineConfig()
    return _config


def set_config(config: FaultlineConfig) -> None:
    """Set the global faultline configuration instance."""
    global _config
    _config = config

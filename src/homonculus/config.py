"""
Runtime settings for Homonculus.

Precedence: defaults < YAML config file < HOMONCULUS_* environment variables.
"""

import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import pydantic
import yaml
from pydantic import BaseModel, Field, field_validator

from homonculus.errors import ValidationError

DEFAULT_CONFIG_FILE = Path.home() / ".config" / "homonculus" / "config.yaml"
ENV_PREFIX = "HOMONCULUS_"


class Settings(BaseModel):
    """Process-wide configuration."""

    libvirt_uri: str = Field(default="qemu:///system", description="Hypervisor connection URI")
    log_level: Literal["debug", "info", "warning", "error"] = "info"
    log_format: Literal["console", "json"] = "console"
    log_file: Optional[Path] = None
    cloudinit_meta_data: bool = Field(default=True, description="Include meta-data in cidata")
    cloudinit_network_config: bool = Field(
        default=False, description="Include network-config in cidata"
    )
    ssh_host_key_policy: Literal["insecure", "known_hosts"] = "insecure"
    ssh_connect_timeout: float = Field(default=10.0, gt=0)
    bootstrap_max_parallel: Optional[int] = Field(default=None, ge=1)

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_level(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.lower()
            return "warning" if v == "warn" else v
        return v


def _env_overrides() -> Dict[str, str]:
    overrides = {}
    for name in Settings.model_fields:
        value = os.environ.get(ENV_PREFIX + name.upper())
        if value is not None and value != "":
            overrides[name] = value
    return overrides


def load_settings(path: Optional[Path] = None) -> Settings:
    """Build settings from an optional YAML file and the environment.

    An explicit ``path`` must exist; the default location is optional.
    """
    data: Dict[str, Any] = {}

    config_path = Path(path).expanduser() if path else DEFAULT_CONFIG_FILE
    if path and not config_path.exists():
        raise ValidationError(f"Config file not found: {config_path}")

    if config_path.exists():
        try:
            loaded = yaml.safe_load(config_path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ValidationError(f"Cannot parse config file {config_path}: {e}") from e
        if not isinstance(loaded, dict):
            raise ValidationError(f"Config file {config_path} must contain a mapping")
        data.update(loaded)

    data.update(_env_overrides())

    try:
        return Settings.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid configuration: {e}") from e

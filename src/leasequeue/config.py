import json
import os
from datetime import timedelta
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from .errors import ConfigError

# Stored in ~/.leasequeue/config.json
CONFIG_PATH = os.path.join(os.path.expanduser("~"), ".leasequeue", "config.json")


class LeaseConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    lease_seconds: int = Field(default=300, alias="lease-seconds", gt=0)
    heartbeat_seconds: float = Field(default=60, alias="heartbeat-seconds", gt=0)
    claim_retry_budget: int = Field(default=3, alias="claim-retry-budget", ge=1)
    max_delivery_attempts: int = Field(default=3, alias="max-delivery-attempts", ge=1)
    poll_interval: float = Field(default=1.0, alias="poll-interval", gt=0)
    sweep_interval: float = Field(default=30, alias="sweep-interval", gt=0)

    @model_validator(mode="after")
    def heartbeat_within_lease(self):
        if self.heartbeat_seconds >= self.lease_seconds:
            raise ValueError("heartbeat-seconds must be shorter than lease-seconds")
        return self

    @property
    def lease_duration(self) -> timedelta:
        return timedelta(seconds=self.lease_seconds)


DEFAULT_CONFIG = LeaseConfig().model_dump(by_alias=True)


def load_config(path: str = None) -> LeaseConfig:
    path = path or CONFIG_PATH
    if not os.path.exists(path):
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, 'w') as f:
            json.dump(DEFAULT_CONFIG, f, indent=2)
    try:
        with open(path, 'r') as f:
            return LeaseConfig.model_validate(json.load(f))
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e


def save_config(config: LeaseConfig, path: str = None):
    path = path or CONFIG_PATH
    with open(path, 'w') as f:
        json.dump(config.model_dump(by_alias=True), f, indent=2)


def set_config_value(key: str, value: str, path: str = None) -> LeaseConfig:
    """Set one hyphenated key from its string form and persist the result"""
    if key not in DEFAULT_CONFIG:
        raise ConfigError(f"Unknown configuration key '{key}'")
    current = load_config(path).model_dump(by_alias=True)
    current[key] = value
    try:
        config = LeaseConfig.model_validate(current)
    except ValidationError as e:
        raise ConfigError(f"Invalid value for '{key}': {e}") from e
    save_config(config, path)
    return config

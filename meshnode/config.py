# Copyright 2024 Apache TacticalMesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Configuration module for meshnode.

Handles loading and validation of node configuration from YAML files.
Out-of-range numeric options are clamped to safe values with a warning
rather than rejected, so a bad value never keeps a node from starting.
"""

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationInfo, field_validator

logger = logging.getLogger(__name__)


def _at_least(name: str, value, minimum):
    if value < minimum:
        logger.warning(f"{name}={value} is below {minimum}, clamping")
        return minimum
    return value


def _between(name: str, value, low, high):
    if value < low or value > high:
        clamped = max(low, min(high, value))
        logger.warning(f"{name}={value} is outside [{low}, {high}], clamping to {clamped}")
        return clamped
    return value


class CoreConfig(BaseModel):
    """Relay core tuning options."""
    default_ttl: int = Field(default=3, description="Hop budget for originated messages")
    blacklist_threshold: float = Field(default=0.10, description="Score below which peers are never routed through")
    max_paths: int = Field(default=3, description="Parallel paths per directed send")
    max_concurrent_sends: int = Field(default=5, description="In-flight sends per node")
    queue_capacity: int = Field(default=1000, description="Dispatcher queue capacity")
    max_retries: int = Field(default=3, description="Send retries before an item is dropped")
    churn_threshold: float = Field(default=0.20, description="Churn rate that triggers aggressive healing")
    health_check_interval_seconds: float = Field(default=10.0)
    witness_threshold: int = Field(default=3, description="Witnesses needed for a durable ledger entry")
    processed_capacity: int = Field(default=1000, description="Size of the processed-message set")
    route_cache_ttl_seconds: float = Field(default=60.0)
    slow_latency_ms: float = Field(default=500.0)
    slow_score_floor: float = Field(default=0.10)

    @field_validator('default_ttl', 'max_paths', 'max_concurrent_sends', 'queue_capacity',
                     'witness_threshold', 'processed_capacity')
    @classmethod
    def validate_positive_count(cls, v, info: ValidationInfo):
        return _at_least(info.field_name, v, 1)

    @field_validator('max_retries')
    @classmethod
    def validate_retries(cls, v):
        return _at_least('max_retries', v, 0)

    @field_validator('blacklist_threshold', 'churn_threshold', 'slow_score_floor')
    @classmethod
    def validate_fraction(cls, v, info: ValidationInfo):
        return _between(info.field_name, v, 0.0, 1.0)

    @field_validator('health_check_interval_seconds')
    @classmethod
    def validate_interval(cls, v):
        return _at_least('health_check_interval_seconds', v, 0.1)

    @field_validator('route_cache_ttl_seconds')
    @classmethod
    def validate_route_cache_ttl(cls, v):
        return _at_least('route_cache_ttl_seconds', v, 1.0)

    @field_validator('slow_latency_ms')
    @classmethod
    def validate_slow_latency(cls, v):
        return _at_least('slow_latency_ms', v, 0.0)


class ReputationConfig(BaseModel):
    """Reputation engine options."""
    decay_factor: float = Field(default=0.4, description="Blend factor alpha per recalculation")
    latency_ceiling_ms: float = Field(default=1000.0, description="Latency scored as 0")
    weights: Dict[str, float] = Field(
        default={
            "relay_success": 0.30,
            "latency": 0.15,
            "availability": 0.20,
            "forgery_attempt": 0.20,
            "sybil_signal": 0.15,
        },
        description="Metric weights (rescaled to sum to 1)"
    )

    @field_validator('decay_factor')
    @classmethod
    def validate_decay_factor(cls, v):
        return _between('decay_factor', v, 0.01, 1.0)

    @field_validator('latency_ceiling_ms')
    @classmethod
    def validate_latency_ceiling(cls, v):
        return _at_least('latency_ceiling_ms', v, 1.0)

    @field_validator('weights')
    @classmethod
    def validate_weights(cls, v):
        valid = {"relay_success", "latency", "availability", "forgery_attempt", "sybil_signal"}
        unknown = set(v) - valid
        if unknown:
            logger.warning(f"Ignoring unknown reputation weights: {sorted(unknown)}")
        return {k: max(0.0, w) for k, w in v.items() if k in valid}


class PeerConfig(BaseModel):
    """Configuration for a static UDP peer."""
    node_id: str = Field(..., description="Peer node identifier")
    address: str = Field(..., description="Peer IP address or hostname")
    port: int = Field(default=7777, description="Peer mesh port")


class TransportConfig(BaseModel):
    """UDP transport configuration."""
    listen_port: int = Field(default=7777, ge=1024, le=65535, description="UDP port for mesh")
    heartbeat_interval_seconds: float = Field(default=10.0, ge=1.0, le=60.0)
    peer_timeout_seconds: float = Field(default=30.0, ge=5.0, le=300.0)
    peers: List[PeerConfig] = Field(default=[], description="Static peer list")


class NodeConfig(BaseModel):
    """Node configuration model."""

    # Node identification
    node_id: str = Field(..., min_length=1, max_length=100, description="Unique node identifier")

    # Logging
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = Field(None, description="Log file path")

    core: CoreConfig = Field(default_factory=CoreConfig)
    reputation: ReputationConfig = Field(default_factory=ReputationConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'log_level must be one of {valid_levels}')
        return v.upper()


def load_config(config_path: str) -> NodeConfig:
    """
    Load node configuration from a YAML file.

    Args:
        config_path: Path to the configuration file

    Returns:
        Validated NodeConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If configuration is invalid
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path, 'r') as f:
        raw_config = yaml.safe_load(f) or {}

    # Support environment variable substitution
    raw_config = _substitute_env_vars(raw_config)

    return NodeConfig(**raw_config)


def _substitute_env_vars(obj):
    """Recursively substitute environment variables in config values."""
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        # Support ${VAR} and ${VAR:-default} syntax
        if obj.startswith('${') and obj.endswith('}'):
            var_spec = obj[2:-1]
            if ':-' in var_spec:
                var_name, default = var_spec.split(':-', 1)
                return os.environ.get(var_name, default)
            else:
                return os.environ.get(var_spec, obj)
        return obj
    else:
        return obj


def create_default_config(config_path: str, node_id: str, listen_port: int = 7777) -> Path:
    """
    Create a default configuration file.

    Args:
        config_path: Path to write the configuration
        node_id: Unique node identifier
        listen_port: UDP port for the mesh transport
    """
    default_config = {
        'node_id': node_id,
        'log_level': 'INFO',
        'log_file': None,
        'core': CoreConfig().model_dump(),
        'reputation': ReputationConfig().model_dump(),
        'transport': {
            'listen_port': listen_port,
            'heartbeat_interval_seconds': 10.0,
            'peer_timeout_seconds': 30.0,
            'peers': [],
        },
    }

    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, 'w') as f:
        yaml.dump(default_config, f, default_flow_style=False, sort_keys=False)

    return path

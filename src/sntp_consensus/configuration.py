from __future__ import annotations
from dataclasses import asdict, dataclass, fields
from logging.config import dictConfig
from pathlib import Path
from typing import Dict, Mapping, Optional, Union
import logging
import os

from dotenv import load_dotenv

FILEPATH_CONFIG_DEFAULT = "config/config.toml"
FILEPATH_SECRETS_DEFAULT = ".env"
FILEPATH_LOGGING_CONFIG_DEFAULT = "config/logging.yaml"
PORT_PROMETHEUS_DEFAULT = 8000


class UnpackMixin(Mapping):
    """A mixin class to unpack dataclass attributes as a mapping."""

    def __iter__(self):
        return iter(asdict(self).keys())

    def __len__(self):
        return len(asdict(self))

    def __getitem__(self, key):
        if key not in asdict(self):
            raise KeyError(f"Key {key} not found in {self.__class__.__name__}")
        return getattr(self, key)


@dataclass(frozen=True)
class SntpConfig(UnpackMixin):
    """Thresholds and timing for a single SNTP query."""

    root_delay_max: float = 100.0  # milliseconds
    root_dispersion_max: float = 100.0  # milliseconds
    server_response_delay_max: int = 750  # milliseconds
    timeout_millis: int = 30_000
    randomize_transmit_fraction: bool = True

    def validate(self):
        if self.timeout_millis <= 0:
            raise ValueError("timeout_millis must be greater than 0")
        if self.server_response_delay_max <= 0:
            raise ValueError("server_response_delay_max must be greater than 0")
        if self.root_delay_max < 0 or self.root_dispersion_max < 0:
            raise ValueError("root delay and dispersion limits must not be negative")
        return self


@dataclass(frozen=True)
class PollConfig(UnpackMixin):
    """Redundancy settings for one poll round."""

    repeat_count: int = 5  # queries per address
    retry_limit: int = 50  # retries of a single query on network errors
    max_addresses_considered: int = 5
    max_concurrent_queries_per_address: int = 5
    max_workers: Optional[int] = None  # address pool size, None = one per address

    def validate(self):
        if self.repeat_count < 1:
            raise ValueError("repeat_count must be at least 1")
        if self.retry_limit < 0:
            raise ValueError("retry_limit must be greater than or equal to 0")
        if self.max_addresses_considered < 1:
            raise ValueError("max_addresses_considered must be at least 1")
        if self.max_concurrent_queries_per_address < 1:
            raise ValueError("max_concurrent_queries_per_address must be at least 1")
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        return self


@dataclass(frozen=True)
class ReachabilityConfig(UnpackMixin):
    """TCP pre-filtering of resolved addresses."""

    enabled: bool = True
    port: int = 80
    timeout_millis: int = 5_000


@dataclass
class MQTTBrokerConfig(UnpackMixin):
    """Configuration for connecting to an MQTT broker."""

    username: str
    password: str
    keepalive: int
    hostname: str
    port: int
    timeout: int
    reconnect_attempts: int


@dataclass
class MQTTSinkConfig(UnpackMixin):
    """Publishing of trusted samples to an MQTT broker."""

    enabled: bool = False
    topic: str = "sntp/trusted_sample"
    qos: int = 1
    retain: bool = True
    client_id: Optional[str] = None


def load_config(filepath: Union[str, Path]) -> dict:
    if isinstance(filepath, str):
        filepath = Path(filepath)

    if not Path(filepath).exists():
        raise FileNotFoundError(f"File not found: {filepath}")

    # if extension is .json
    if filepath.suffix == ".json":
        import json

        with open(filepath, "r") as file:
            return json.load(file)

    # if extension is .yaml
    if filepath.suffix in (".yaml", ".yml"):
        import yaml

        with open(filepath, "r") as file:
            return yaml.safe_load(file)

    # if extension is .toml
    if filepath.suffix == ".toml":
        try:
            import tomllib
        except ImportError:
            import tomli as tomllib

        with open(filepath, "rb") as file:
            return tomllib.load(file)

    raise ValueError(f"Unsupported configuration file type: {filepath.suffix}")


def merge_dicts_recursive(dict1, dict2):
    """
    Recursively merge two dictionaries. dict2 takes precedence over dict1.

    Args:
    - dict1: The first dictionary.
    - dict2: The second dictionary.

    Returns:
    - Merged dictionary.
    """
    merged_dict = dict1.copy()

    for key, value in dict2.items():
        if (
            key in merged_dict
            and isinstance(merged_dict[key], dict)
            and isinstance(value, dict)
        ):
            merged_dict[key] = merge_dicts_recursive(merged_dict[key], value)
        else:
            merged_dict[key] = value

    return merged_dict


def build_config(config: Union[str, Path, dict] = None) -> dict:
    from sntp_consensus.config_default import config_defaults

    if config is None:
        config = FILEPATH_CONFIG_DEFAULT

    if isinstance(config, dict):
        config_local = config
    else:
        config_local = load_config(config)
    # Merge the two configurations, with the local configuration taking precedence
    return merge_dicts_recursive(config_defaults, config_local)


def load_secrets(filepath: Union[str, Path] = None, secrets: list[str] = None) -> dict:
    filepath = filepath or FILEPATH_SECRETS_DEFAULT
    if isinstance(filepath, str):
        filepath = Path(filepath)

    if not Path(filepath).exists():
        raise FileNotFoundError(f"File not found: {filepath}")

    load_dotenv(filepath)

    if secrets is None:
        secrets = []

    for secret in secrets:
        if secret not in os.environ:
            raise KeyError(f"Secret not found: {secret}")

    secrets = {secret: os.getenv(secret) for secret in secrets}

    return secrets


def start_prometheus_server(port=None) -> None:
    from prometheus_client import start_http_server

    port = port or PORT_PROMETHEUS_DEFAULT

    start_http_server(port)


def initialize_logging(logging_config: Union[Dict, str] = None) -> logging.Logger:
    """
    Initialize the logger.

    Args:
        logging_config: The logging configuration dictionary or file path.

    Returns:
        A logger instance.
    """
    logging_config = logging_config or FILEPATH_LOGGING_CONFIG_DEFAULT
    if not isinstance(logging_config, dict):
        logging_config = load_config(logging_config)
        # Create logs directory if it doesn't exist
        Path.mkdir(Path("logs"), exist_ok=True)
    dictConfig(logging_config)
    return logging.getLogger("sntp_consensus")


def _dataclass_from_dict(cls, values: Optional[dict]):
    # Unknown keys are ignored
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in (values or {}).items() if k in names})


def initialize_config(
    config: Union[str, Path, dict] = None,
    secrets: Optional[Union[str, Path]] = None,
) -> Dict:
    """
    Initialize the configuration.

    Args:
        config: The configuration file path or dictionary. Merged over the defaults.
        secrets: The secrets file path. MQTT_USERNAME and MQTT_PASSWORD are read
            from it when provided.

    Returns:
        A dictionary of keyword arguments for SntpNode.
    """
    config = build_config(config)

    if secrets is not None:
        load_secrets(secrets)

    sntp = config["sntp"]
    sntp_config = _dataclass_from_dict(SntpConfig, sntp.get("query")).validate()
    poll_config = _dataclass_from_dict(PollConfig, sntp.get("poll")).validate()
    reachability_config = _dataclass_from_dict(
        ReachabilityConfig, sntp.get("reachability")
    )
    sink_config = _dataclass_from_dict(MQTTSinkConfig, sntp.get("mqtt_sink"))

    broker = config["mqtt"]["broker"]
    broker_config = MQTTBrokerConfig(
        username=os.getenv("MQTT_USERNAME", broker.get("username", "mqtt")),
        password=os.getenv("MQTT_PASSWORD", broker.get("password", "")),
        hostname=broker.get("hostname", "localhost"),
        port=broker.get("port", 1883),
        keepalive=broker.get("keepalive", 60),
        timeout=broker.get("timeout", 5),
        reconnect_attempts=broker.get("reconnect_attempts", 10),
    )

    node_network = config.get("node_network", {})
    if node_network.get("enable_prometheus_server"):
        start_prometheus_server(node_network.get("prometheus_port"))

    return {
        "name": sntp.get("name"),
        "ntp_pool": sntp["ntp_pool"],
        "sntp_config": sntp_config,
        "poll_config": poll_config,
        "reachability_config": reachability_config,
        "mqtt_sink_config": sink_config,
        "broker_config": broker_config,
    }

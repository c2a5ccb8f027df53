"""
Configuration loading for the message logger.

Priority (highest to lowest):
1. Explicit overrides passed to load_config()
2. Environment variables (MESSAGELOG_* prefix)
3. _messagelog/config.{environment}.json (environment-specific overrides)
4. _messagelog/config.json (per-deployment)
5. Default values

The message logger is disabled when no MQTT server is configured.

Usage:
    >>> from messagelog.config import load_config
    >>> config = load_config(project_root=".", environment="production")
    >>> config.mqtt.enabled
    False
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import ConfigError

_logger = logging.getLogger("messagelog.config")

CONFIG_DIR = "_messagelog"

DEFAULTS: Dict[str, Dict[str, Any]] = {
  "network": {
    "net_id": "000000",
  },
  "mqtt": {
    "servers": [],
    "log_topic": "messagelog",
    "qos": 0,
    "client_id": "",
    "clean_session": True,
    "keep_alive_interval": 30,
    "username": "",
    "password": "",
    "ca_cert": "",
    "tls_cert": "",
    "tls_key": "",
    "connect_timeout": 10.0,
    "max_queued_messages": 1000,
  },
}

# Environment variable -> (section, key)
ENV_VAR_MAPPINGS: Dict[str, Tuple[str, str]] = {
  "MESSAGELOG_NET_ID": ("network", "net_id"),
  "MESSAGELOG_MQTT_SERVERS": ("mqtt", "servers"),
  "MESSAGELOG_MQTT_LOG_TOPIC": ("mqtt", "log_topic"),
  "MESSAGELOG_MQTT_QOS": ("mqtt", "qos"),
  "MESSAGELOG_MQTT_CLIENT_ID": ("mqtt", "client_id"),
  "MESSAGELOG_MQTT_CLEAN_SESSION": ("mqtt", "clean_session"),
  "MESSAGELOG_MQTT_KEEP_ALIVE_INTERVAL": ("mqtt", "keep_alive_interval"),
  "MESSAGELOG_MQTT_USERNAME": ("mqtt", "username"),
  "MESSAGELOG_MQTT_PASSWORD": ("mqtt", "password"),
  "MESSAGELOG_MQTT_CA_CERT": ("mqtt", "ca_cert"),
  "MESSAGELOG_MQTT_TLS_CERT": ("mqtt", "tls_cert"),
  "MESSAGELOG_MQTT_TLS_KEY": ("mqtt", "tls_key"),
  "MESSAGELOG_MQTT_CONNECT_TIMEOUT": ("mqtt", "connect_timeout"),
  "MESSAGELOG_MQTT_MAX_QUEUED_MESSAGES": ("mqtt", "max_queued_messages"),
}

_INT_KEYS = {"qos", "keep_alive_interval", "max_queued_messages"}
_FLOAT_KEYS = {"connect_timeout"}
_BOOL_KEYS = {"clean_session"}

_NET_ID_RE = re.compile(r"^[0-9a-fA-F]{6}$")


@dataclass(frozen=True)
class NetworkConfig:
  net_id: str = "000000"


@dataclass(frozen=True)
class MqttBackendConfig:
  """
  Settings of the MQTT delivery backend.

  TLS is used as soon as any of ca_cert, tls_cert or tls_key is set.
  """

  servers: Tuple[str, ...] = ()
  log_topic: str = "messagelog"
  qos: int = 0
  client_id: str = ""
  clean_session: bool = True
  keep_alive_interval: int = 30
  username: str = ""
  password: str = field(default="", repr=False)
  ca_cert: str = ""
  tls_cert: str = ""
  tls_key: str = ""
  connect_timeout: float = 10.0
  # Outgoing QoS 1/2 messages paho keeps while disconnected; 0 means unbounded.
  max_queued_messages: int = 1000

  @property
  def enabled(self) -> bool:
    return bool(self.servers)

  @property
  def tls_enabled(self) -> bool:
    return bool(self.ca_cert or self.tls_cert or self.tls_key)


@dataclass(frozen=True)
class MessageLogConfig:
  network: NetworkConfig = field(default_factory=NetworkConfig)
  mqtt: MqttBackendConfig = field(default_factory=MqttBackendConfig)

  @classmethod
  def from_dict(cls, raw: Dict[str, Any]) -> "MessageLogConfig":
    """
    Build a validated configuration from a (possibly partial) dict.

    Raises ConfigError listing every invalid field.
    """
    merged = _merge_configs(_get_default(), raw)
    _validate(merged)
    mqtt = dict(merged["mqtt"])
    mqtt["servers"] = tuple(mqtt["servers"])
    known = set(DEFAULTS["mqtt"])
    return cls(
      network=NetworkConfig(net_id=merged["network"]["net_id"].lower()),
      mqtt=MqttBackendConfig(**{k: v for k, v in mqtt.items() if k in known}),
    )

  def as_dict(self, mask_secrets: bool = True) -> Dict[str, Any]:
    mqtt = {name: getattr(self.mqtt, name) for name in DEFAULTS["mqtt"]}
    mqtt["servers"] = list(self.mqtt.servers)
    if mask_secrets and mqtt["password"]:
      mqtt["password"] = "***"
    return {"network": {"net_id": self.network.net_id}, "mqtt": mqtt}


def _get_default() -> Dict[str, Any]:
  return json.loads(json.dumps(DEFAULTS))  # Deep copy


def _merge_configs(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
  """
  Deep merge overrides into base config.
  """
  result = json.loads(json.dumps(base))  # Deep copy

  for key, value in overrides.items():
    if key in result and isinstance(result[key], dict) and isinstance(value, dict):
      result[key] = _merge_configs(result[key], value)
    else:
      result[key] = value

  return result


def _validate(config: Dict[str, Any]) -> None:
  errors: List[str] = []

  for section in ("network", "mqtt"):
    if not isinstance(config.get(section), dict):
      errors.append(f"Invalid section: {section} must be an object")
  if errors:
    raise ConfigError("Configuration validation failed:\n" + "\n".join(errors))

  net_id = config["network"].get("net_id")
  if not isinstance(net_id, str) or not _NET_ID_RE.match(net_id):
    errors.append(f"Invalid network.net_id: {net_id!r}. Must be 6 hex digits")

  mqtt = config["mqtt"]
  servers = mqtt.get("servers")
  if not isinstance(servers, (list, tuple)) or not all(isinstance(s, str) and s for s in servers):
    errors.append("Invalid mqtt.servers: expected a list of broker URIs")

  qos = mqtt.get("qos")
  if isinstance(qos, bool) or not isinstance(qos, int) or qos not in (0, 1, 2):
    errors.append(f"Invalid mqtt.qos: {qos!r}. Must be one of: 0, 1, 2")

  keep_alive = mqtt.get("keep_alive_interval")
  if isinstance(keep_alive, bool) or not isinstance(keep_alive, int) or keep_alive <= 0:
    errors.append(f"Invalid mqtt.keep_alive_interval: {keep_alive!r}. Must be a positive integer")

  max_queued = mqtt.get("max_queued_messages")
  if isinstance(max_queued, bool) or not isinstance(max_queued, int) or max_queued < 0:
    errors.append(f"Invalid mqtt.max_queued_messages: {max_queued!r}. Must be a non-negative integer")

  timeout = mqtt.get("connect_timeout")
  if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
    errors.append(f"Invalid mqtt.connect_timeout: {timeout!r}. Must be a positive number")

  if not isinstance(mqtt.get("clean_session"), bool):
    errors.append("Invalid mqtt.clean_session: must be boolean")

  for key in ("log_topic", "client_id", "username", "password", "ca_cert", "tls_cert", "tls_key"):
    if not isinstance(mqtt.get(key), str):
      errors.append(f"Invalid type for mqtt.{key}: expected str, got {type(mqtt.get(key)).__name__}")

  if not mqtt.get("log_topic"):
    errors.append("Missing required field: mqtt.log_topic")

  if errors:
    raise ConfigError("Configuration validation failed:\n" + "\n".join(errors))


def _load_json_file(filepath: Path) -> Dict[str, Any]:
  try:
    with open(filepath, "r") as f:
      return json.load(f)
  except json.JSONDecodeError as e:
    raise ConfigError(f"Invalid JSON in {filepath}: {e}")
  except OSError as e:
    raise ConfigError(f"Error reading {filepath}: {e}")


def _convert_env_value(env_var: str, key: str, value: str) -> Any:
  if key == "servers":
    return [part.strip() for part in value.split(",") if part.strip()]
  if key in _BOOL_KEYS:
    return value.strip().lower() in ("true", "1", "yes", "on")
  if key in _INT_KEYS:
    try:
      return int(value)
    except ValueError:
      raise ConfigError(f"Invalid value for {env_var}: must be an integer")
  if key in _FLOAT_KEYS:
    try:
      return float(value)
    except ValueError:
      raise ConfigError(f"Invalid value for {env_var}: must be a number")
  return value


def _apply_env_var_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
  """
  Apply MESSAGELOG_* environment variables on top of config.

  Examples:
    - MESSAGELOG_MQTT_SERVERS=tcp://a:1883,tcp://b:1883 -> mqtt.servers
    - MESSAGELOG_NET_ID=600002 -> network.net_id
  """
  result = json.loads(json.dumps(config))  # Deep copy

  for env_var, (section, key) in ENV_VAR_MAPPINGS.items():
    if env_var in os.environ:
      result.setdefault(section, {})[key] = _convert_env_value(env_var, key, os.environ[env_var])

  return result


def load_config(
  project_root: str = ".",
  environment: Optional[str] = None,
  **overrides: Dict[str, Any],
) -> MessageLogConfig:
  """
  Load the message logger configuration with hierarchical merging.

  Args:
    project_root: Directory holding the _messagelog/ config folder
    environment: Environment name (e.g., 'production'). Defaults to MESSAGELOG_ENV.
    overrides: Section dicts (network=..., mqtt=...) that win over every other source

  Returns:
    Validated MessageLogConfig

  Raises:
    ConfigError: If a config file is unreadable or the merged result is invalid
  """
  config_dir = Path(project_root) / CONFIG_DIR
  base_config_path = config_dir / "config.json"

  config = _get_default()

  if environment is None:
    environment = os.environ.get("MESSAGELOG_ENV")

  if base_config_path.exists():
    config = _merge_configs(config, _load_json_file(base_config_path))

  if environment:
    env_config_path = config_dir / f"config.{environment}.json"
    if env_config_path.exists():
      config = _merge_configs(config, _load_json_file(env_config_path))

  config = _apply_env_var_overrides(config)
  config = _merge_configs(config, overrides)

  result = MessageLogConfig.from_dict(config)
  _logger.debug(
    "Loaded message logger config: servers=%s topic=%s qos=%s",
    list(result.mqtt.servers),
    result.mqtt.log_topic,
    result.mqtt.qos,
  )
  return result

from __future__ import annotations

import logging
import secrets
import ssl
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional
from urllib.parse import urlparse

import paho.mqtt.client as mqtt

from ..config import MqttBackendConfig
from ..errors import BackendConnectionError, PublishError
from ..models import LogEntry
from . import MessageLogBackend

_logger = logging.getLogger("messagelog.backend.mqtt")

# Automatic reconnect window, in seconds.
RECONNECT_MIN_DELAY = 1
RECONNECT_MAX_DELAY = 30

# scheme -> (paho transport, default port, TLS)
_SCHEMES = {
  "tcp": ("tcp", 1883, False),
  "mqtt": ("tcp", 1883, False),
  "ssl": ("tcp", 8883, True),
  "tls": ("tcp", 8883, True),
  "mqtts": ("tcp", 8883, True),
  "ws": ("websockets", 80, False),
  "wss": ("websockets", 443, True),
}

ClientFactory = Callable[..., Any]


@dataclass(frozen=True)
class BrokerAddress:
  host: str
  port: int
  transport: str = "tcp"
  tls: bool = False
  path: str = ""

  def __str__(self) -> str:
    return f"{self.host}:{self.port}"


def parse_server_uri(uri: str) -> BrokerAddress:
  """
  Parse a broker URI such as ``tcp://localhost:1883`` or ``ssl://broker:8883``.

  A bare ``host:port`` is treated as tcp.
  """
  if "://" not in uri:
    uri = f"tcp://{uri}"
  parsed = urlparse(uri)
  scheme = parsed.scheme.lower()
  if scheme not in _SCHEMES:
    raise BackendConnectionError(
      f"Unsupported MQTT server scheme '{scheme}' in '{uri}'. "
      f"Expected one of: {', '.join(sorted(_SCHEMES))}",
      server=uri,
    )
  try:
    port = parsed.port
  except ValueError as exc:
    raise BackendConnectionError(f"Invalid port in MQTT server '{uri}': {exc}", server=uri) from exc
  if not parsed.hostname:
    raise BackendConnectionError(f"Missing host in MQTT server '{uri}'", server=uri)

  transport, default_port, tls = _SCHEMES[scheme]
  return BrokerAddress(
    host=parsed.hostname,
    port=port or default_port,
    transport=transport,
    tls=tls,
    path=parsed.path or "",
  )


def generate_client_id() -> str:
  """Random 64-bit hex client id; not persisted across restarts."""
  return format(secrets.randbits(64), "x")


def _default_client_factory(client_id: str, clean_session: bool, transport: str) -> mqtt.Client:
  return mqtt.Client(
    callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
    client_id=client_id,
    clean_session=clean_session,
    transport=transport,
  )


def _close(client: Any) -> None:
  """Stop the network loop, then send DISCONNECT and close the socket."""
  client.loop_stop()
  client.disconnect()


def _is_failure(reason_code: Any) -> bool:
  if isinstance(reason_code, int):
    return reason_code != 0
  return bool(getattr(reason_code, "is_failure", False))


class MqttBackend(MessageLogBackend):
  """
  Publishes audit records as JSON to a single MQTT topic.

  Use MqttBackend.connect(config) to build one; the constructor only wraps an
  already connected client. Reconnection after a lost connection is left to
  the paho network loop and is only logged here.
  """

  def __init__(self, client: Any, topic: str, qos: int, client_id: str = "") -> None:
    self._client = client
    self.topic = topic
    self.qos = qos
    self.client_id = client_id

  @classmethod
  def connect(
    cls,
    config: MqttBackendConfig,
    client_factory: Optional[ClientFactory] = None,
  ) -> "MqttBackend":
    """
    Connect to the first reachable broker in config.servers.

    Raises BackendConnectionError when no server is configured, a URI or the
    TLS material is invalid, or every broker refuses the connection.
    """
    if not config.servers:
      raise BackendConnectionError("No MQTT server configured for the message logger")

    factory = client_factory or _default_client_factory
    client_id = config.client_id or generate_client_id()
    addresses = [parse_server_uri(uri) for uri in config.servers]

    errors: List[BackendConnectionError] = []
    for address in addresses:
      _logger.info(
        "Connecting to MQTT broker server=%s clean_session=%s client_id=%s",
        address,
        config.clean_session,
        client_id,
      )
      try:
        client = cls._open(factory, config, client_id, address)
      except BackendConnectionError as exc:
        _logger.warning("MQTT broker %s unavailable: %s", address, exc)
        errors.append(exc)
        continue
      return cls(client=client, topic=config.log_topic, qos=config.qos, client_id=client_id)

    raise errors[-1]

  @staticmethod
  def _open(
    factory: ClientFactory,
    config: MqttBackendConfig,
    client_id: str,
    address: BrokerAddress,
  ) -> Any:
    client = factory(
      client_id=client_id,
      clean_session=config.clean_session,
      transport=address.transport,
    )

    connected = threading.Event()
    outcome: dict = {}

    def on_connect(_client: Any, _userdata: Any, _flags: Any, reason_code: Any, _properties: Any = None) -> None:
      if _is_failure(reason_code):
        _logger.error("MQTT connection to messagelog backend refused: %s", reason_code)
      else:
        _logger.info("MQTT connection to messagelog backend.")
      outcome["reason_code"] = reason_code
      connected.set()

    def on_disconnect(_client: Any, _userdata: Any, _flags: Any, reason_code: Any, _properties: Any = None) -> None:
      if _is_failure(reason_code):
        _logger.error("MQTT connection to messagelog backend lost: %s", reason_code)
      else:
        _logger.info("MQTT connection to messagelog backend closed")

    client.on_connect = on_connect
    client.on_disconnect = on_disconnect
    client.reconnect_delay_set(min_delay=RECONNECT_MIN_DELAY, max_delay=RECONNECT_MAX_DELAY)
    client.max_queued_messages_set(config.max_queued_messages)

    if config.username:
      client.username_pw_set(config.username, config.password or None)

    if config.tls_enabled or address.tls:
      _logger.info(
        "Configuring connection with TLS certificate ca_cert=%s tls_cert=%s tls_key=%s",
        config.ca_cert,
        config.tls_cert,
        config.tls_key,
      )
      try:
        client.tls_set(
          ca_certs=config.ca_cert or None,
          certfile=config.tls_cert or None,
          keyfile=config.tls_key or None,
        )
      except (OSError, ValueError, ssl.SSLError) as exc:
        raise BackendConnectionError(
          f"Failed to load TLS material for {address}: {exc}", server=str(address)
        ) from exc

    if address.transport == "websockets" and address.path:
      client.ws_set_options(path=address.path)

    try:
      client.connect(address.host, address.port, keepalive=config.keep_alive_interval)
    except (OSError, ValueError) as exc:
      raise BackendConnectionError(f"Connect to MQTT broker {address}: {exc}", server=str(address)) from exc

    client.loop_start()
    if not connected.wait(config.connect_timeout):
      _close(client)
      raise BackendConnectionError(
        f"No answer from MQTT broker {address} within {config.connect_timeout}s",
        server=str(address),
      )

    reason_code = outcome.get("reason_code")
    if _is_failure(reason_code):
      _close(client)
      raise BackendConnectionError(
        f"MQTT broker {address} refused the connection: {reason_code}", server=str(address)
      )

    return client

  def publish(self, entry: LogEntry) -> None:
    try:
      payload = entry.to_json()
    except (TypeError, ValueError) as exc:
      raise PublishError(f"Failed to serialize log entry {entry.ctx_id}: {exc}") from exc

    _logger.debug("Sending log message topic=%s ctx_id=%s", self.topic, entry.ctx_id)
    info = self._client.publish(self.topic, payload, qos=self.qos)
    if info.rc == mqtt.MQTT_ERR_NO_CONN and self.qos > 0:
      # paho keeps QoS 1/2 messages and sends them once reconnected.
      _logger.warning(
        "MQTT broker not connected, log message queued topic=%s ctx_id=%s", self.topic, entry.ctx_id
      )
      return
    if info.rc != mqtt.MQTT_ERR_SUCCESS:
      raise PublishError(
        f"Publish to '{self.topic}' failed: {mqtt.error_string(info.rc)}",
        return_code=info.rc,
      )
    _logger.debug("Log message sent ctx_id=%s", entry.ctx_id)

  def close(self) -> None:
    _close(self._client)

from __future__ import annotations

import os
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest


class FakeFrame:
  """Stands in for a decoded LoRaWAN frame from the codec."""

  def __init__(self, raw: bytes, doc: Optional[Dict[str, Any]] = None) -> None:
    self.raw = raw
    self.doc = doc or {"raw": raw.hex()}

  def to_bytes(self) -> bytes:
    return self.raw

  def to_dict(self) -> Dict[str, Any]:
    return self.doc


class BrokenFrame:
  def to_bytes(self) -> bytes:
    raise ValueError("FPort 0 with FOpts set")

  def to_dict(self) -> Dict[str, Any]:
    return {}


class FakeMqttClient:
  """
  In-memory replacement for paho.mqtt.client.Client.

  CONNACK is delivered from loop_start(), as paho does from its network thread.
  """

  def __init__(self, factory: "FakeClientFactory", client_id: str, clean_session: bool, transport: str) -> None:
    self.factory = factory
    self.client_id = client_id
    self.clean_session = clean_session
    self.transport = transport
    self.on_connect = None
    self.on_disconnect = None
    self.reconnect_delay = None
    self.max_queued = None
    self.credentials = None
    self.tls = None
    self.ws_options = None
    self.connected_to = None
    self.loop_started = False
    self.loop_stopped = False
    self.disconnected = False
    self.published: List[tuple] = []

  def reconnect_delay_set(self, min_delay: int = 1, max_delay: int = 120) -> None:
    self.reconnect_delay = (min_delay, max_delay)

  def max_queued_messages_set(self, queue_size: int) -> None:
    self.max_queued = queue_size

  def username_pw_set(self, username: str, password: Optional[str] = None) -> None:
    self.credentials = (username, password)

  def tls_set(self, ca_certs=None, certfile=None, keyfile=None) -> None:
    if self.factory.tls_error is not None:
      raise self.factory.tls_error
    self.tls = {"ca_certs": ca_certs, "certfile": certfile, "keyfile": keyfile}

  def ws_set_options(self, path: str = "/mqtt", headers=None) -> None:
    self.ws_options = {"path": path}

  def connect(self, host: str, port: int = 1883, keepalive: int = 60) -> None:
    if host in self.factory.refused_hosts:
      raise ConnectionRefusedError(f"[Errno 111] Connection refused: {host}")
    self.connected_to = (host, port, keepalive)

  def loop_start(self) -> None:
    self.loop_started = True
    if self.factory.connack is not None and self.on_connect is not None:
      self.on_connect(self, None, {}, self.factory.connack, None)

  def loop_stop(self) -> None:
    self.loop_stopped = True

  def disconnect(self) -> None:
    self.disconnected = True

  def publish(self, topic: str, payload: Any, qos: int = 0) -> SimpleNamespace:
    self.published.append((topic, payload, qos))
    return SimpleNamespace(rc=self.factory.publish_rc, mid=len(self.published))


class FakeClientFactory:
  def __init__(self) -> None:
    self.clients: List[FakeMqttClient] = []
    self.refused_hosts: set = set()
    self.connack: Optional[int] = 0
    self.publish_rc = 0
    self.tls_error: Optional[Exception] = None

  def __call__(self, client_id: str, clean_session: bool, transport: str) -> FakeMqttClient:
    client = FakeMqttClient(self, client_id, clean_session, transport)
    self.clients.append(client)
    return client

  @property
  def last(self) -> FakeMqttClient:
    return self.clients[-1]


@pytest.fixture
def client_factory() -> FakeClientFactory:
  return FakeClientFactory()


@pytest.fixture(autouse=True)
def _clean_messagelog_env(monkeypatch):
  for name in list(os.environ):
    if name.startswith("MESSAGELOG_"):
      monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def _reset_process_dispatcher(monkeypatch):
  from messagelog import dispatcher as dispatcher_mod

  monkeypatch.setattr(dispatcher_mod, "_dispatcher", None)

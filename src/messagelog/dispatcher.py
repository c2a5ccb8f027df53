from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from .backend import MessageLogBackend
from .backend.mqtt import ClientFactory, MqttBackend
from .config import MessageLogConfig
from .errors import DispatcherStateError, PublishError
from .models import LogEntry

_logger = logging.getLogger("messagelog.dispatcher")


class ReadWriteLock:
  """
  Many concurrent readers or a single writer.

  A writer waits for in-flight readers to drain; readers wait while a writer
  holds the lock.
  """

  def __init__(self) -> None:
    self._cond = threading.Condition(threading.Lock())
    self._readers = 0
    self._writing = False

  @contextmanager
  def read(self) -> Iterator[None]:
    with self._cond:
      while self._writing:
        self._cond.wait()
      self._readers += 1
    try:
      yield
    finally:
      with self._cond:
        self._readers -= 1
        if self._readers == 0:
          self._cond.notify_all()

  @contextmanager
  def write(self) -> Iterator[None]:
    with self._cond:
      while self._writing or self._readers:
        self._cond.wait()
      self._writing = True
    try:
      yield
    finally:
      with self._cond:
        self._writing = False
        self._cond.notify_all()


class Dispatcher:
  """
  Entry point network-server handlers use to emit audit records.

  A dispatcher starts unconfigured, where every send() is a traced no-op, and
  can be given exactly one backend. send() never raises: delivery is
  at-most-once and failures only show up in the log.
  """

  def __init__(self, backend: Optional[MessageLogBackend] = None) -> None:
    self._lock = ReadWriteLock()
    self._backend = backend

  @property
  def configured(self) -> bool:
    with self._lock.read():
      return self._backend is not None

  def configure(self, backend: MessageLogBackend) -> None:
    with self._lock.write():
      if self._backend is not None:
        raise DispatcherStateError("Message logger backend is already configured")
      self._backend = backend

  def send(self, entry: LogEntry) -> None:
    with self._lock.read():
      backend = self._backend
      if backend is None:
        _logger.debug("Messagelog not configured, dropping ctx_id=%s", entry.ctx_id)
        return

      if entry.publish_at is None:
        entry = entry.model_copy(update={"publish_at": datetime.now(timezone.utc)})

      try:
        backend.publish(entry)
      except PublishError as exc:
        _logger.error("Messagelog failed to publish ctx_id=%s: %s", entry.ctx_id, exc)
      except Exception:
        _logger.exception("Messagelog backend error, dropping ctx_id=%s", entry.ctx_id)

  def shutdown(self) -> None:
    """Close the backend's transport. The dispatcher stays configured."""
    with self._lock.write():
      backend = self._backend
    if backend is not None:
      backend.close()


_dispatcher: Optional[Dispatcher] = None


def setup(
  config: MessageLogConfig,
  client_factory: Optional[ClientFactory] = None,
) -> Dispatcher:
  """
  Create the process dispatcher from configuration.

  Without MQTT servers the dispatcher stays unconfigured. Backend connection
  errors propagate: they are fatal to start-up.
  """
  global _dispatcher
  if _dispatcher is not None and _dispatcher.configured:
    raise DispatcherStateError("Message logger is already set up")

  dispatcher = Dispatcher()
  if not config.mqtt.enabled:
    _logger.info("Message logger disabled.")
  else:
    backend = MqttBackend.connect(config.mqtt, client_factory=client_factory)
    dispatcher.configure(backend)
    _logger.info("Message logger publishing to topic=%s", config.mqtt.log_topic)

  _dispatcher = dispatcher
  return dispatcher


def get_dispatcher() -> Dispatcher:
  """
  Return the process dispatcher, an unconfigured one if setup() never ran.

  In tests this can be monkeypatched to inject a fake backend.
  """
  global _dispatcher
  if _dispatcher is None:
    _dispatcher = Dispatcher()
  return _dispatcher


def send(entry: LogEntry) -> None:
  """Send the log entry through the process dispatcher. Always succeeds."""
  get_dispatcher().send(entry)


def shutdown() -> None:
  if _dispatcher is not None:
    _dispatcher.shutdown()

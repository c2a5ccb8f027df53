import logging
import threading
import time

import pytest

from messagelog import LogEntryBuilder
from messagelog import dispatcher as dispatcher_mod
from messagelog.backend import MessageLogBackend
from messagelog.config import MessageLogConfig
from messagelog.dispatcher import Dispatcher, ReadWriteLock
from messagelog.errors import BackendConnectionError, DispatcherStateError, PublishError


class RecordingBackend(MessageLogBackend):
  def __init__(self, error=None):
    self.entries = []
    self.error = error
    self.closed = False

  def publish(self, entry):
    if self.error is not None:
      raise self.error
    self.entries.append(entry)

  def close(self):
    self.closed = True


def _entry():
  return LogEntryBuilder().source_id("600002").destination_id("0016c001ff10a235").build()


def test_unconfigured_send_is_a_noop(caplog):
  dispatcher = Dispatcher()
  entry = _entry()

  with caplog.at_level(logging.DEBUG, logger="messagelog.dispatcher"):
    dispatcher.send(entry)

  assert dispatcher.configured is False
  assert f"dropping ctx_id={entry.ctx_id}" in caplog.text


def test_send_stamps_publish_time_on_a_copy():
  backend = RecordingBackend()
  dispatcher = Dispatcher(backend)
  entry = _entry()

  dispatcher.send(entry)

  [published] = backend.entries
  assert published.publish_at is not None
  assert published.publish_at >= entry.created_at
  assert published.ctx_id == entry.ctx_id
  assert entry.publish_at is None


@pytest.mark.parametrize(
  "error,message",
  [
    (PublishError("Publish to 'messagelog' failed: no connection"), "Messagelog failed to publish"),
    (RuntimeError("socket closed"), "Messagelog backend error"),
  ],
)
def test_send_never_raises(caplog, error, message):
  dispatcher = Dispatcher(RecordingBackend(error=error))
  entry = _entry()

  with caplog.at_level(logging.ERROR, logger="messagelog.dispatcher"):
    dispatcher.send(entry)

  assert message in caplog.text
  assert str(entry.ctx_id) in caplog.text


def test_configure_only_once():
  dispatcher = Dispatcher()
  dispatcher.configure(RecordingBackend())

  with pytest.raises(DispatcherStateError):
    dispatcher.configure(RecordingBackend())


def test_shutdown_closes_backend():
  backend = RecordingBackend()
  dispatcher = Dispatcher(backend)

  dispatcher.shutdown()

  assert backend.closed is True
  assert dispatcher.configured is True


def test_concurrent_senders_keep_per_thread_order():
  backend = RecordingBackend()
  dispatcher = Dispatcher(backend)
  entries = {n: [_entry() for _ in range(50)] for n in range(4)}

  def worker(n):
    for entry in entries[n]:
      dispatcher.send(entry)

  threads = [threading.Thread(target=worker, args=(n,)) for n in entries]
  for t in threads:
    t.start()
  for t in threads:
    t.join()

  published = [entry.ctx_id for entry in backend.entries]
  assert len(published) == 200
  for own in entries.values():
    ids = [entry.ctx_id for entry in own]
    assert [ctx for ctx in published if ctx in set(ids)] == ids


def test_writer_waits_for_readers():
  lock = ReadWriteLock()
  events = []
  reader_in = threading.Event()

  def reader():
    with lock.read():
      reader_in.set()
      time.sleep(0.05)
      events.append("read-done")

  def writer():
    reader_in.wait()
    with lock.write():
      events.append("write")

  threads = [threading.Thread(target=reader), threading.Thread(target=writer)]
  for t in threads:
    t.start()
  for t in threads:
    t.join()

  assert events == ["read-done", "write"]


def test_setup_without_servers_is_disabled(caplog):
  with caplog.at_level(logging.INFO, logger="messagelog.dispatcher"):
    dispatcher = dispatcher_mod.setup(MessageLogConfig())

  assert "Message logger disabled." in caplog.text
  assert dispatcher.configured is False
  assert dispatcher_mod.get_dispatcher() is dispatcher


def test_setup_publishes_through_module_send(client_factory):
  config = MessageLogConfig.from_dict(
    {"mqtt": {"servers": ["tcp://broker:1883"], "log_topic": "lora/messagelog"}}
  )

  dispatcher_mod.setup(config, client_factory=client_factory)
  dispatcher_mod.send(_entry())

  [(topic, payload, qos)] = client_factory.last.published
  assert topic == "lora/messagelog"
  assert '"PublishAt"' in payload
  assert qos == 0


def test_setup_twice_is_rejected(client_factory):
  config = MessageLogConfig.from_dict({"mqtt": {"servers": ["tcp://broker:1883"]}})
  dispatcher_mod.setup(config, client_factory=client_factory)

  with pytest.raises(DispatcherStateError):
    dispatcher_mod.setup(config, client_factory=client_factory)


def test_setup_connection_failure_propagates(client_factory):
  client_factory.refused_hosts.add("broker")
  config = MessageLogConfig.from_dict({"mqtt": {"servers": ["tcp://broker:1883"]}})

  with pytest.raises(BackendConnectionError):
    dispatcher_mod.setup(config, client_factory=client_factory)

  assert dispatcher_mod.get_dispatcher().configured is False


def test_module_send_without_setup():
  dispatcher_mod.send(_entry())

  assert dispatcher_mod.get_dispatcher().configured is False


def test_module_shutdown(client_factory):
  config = MessageLogConfig.from_dict({"mqtt": {"servers": ["tcp://broker:1883"]}})
  dispatcher_mod.setup(config, client_factory=client_factory)

  dispatcher_mod.shutdown()

  assert client_factory.last.disconnected is True

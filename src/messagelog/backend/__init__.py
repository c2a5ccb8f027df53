from __future__ import annotations

from ..models import LogEntry


class MessageLogBackend:
  """
  Delivery endpoint for audit records.

  A backend is created once at start-up and shared by every caller of the
  dispatcher, so publish() must be safe to call from several threads.
  """

  def publish(self, entry: LogEntry) -> None:  # pragma: no cover - interface
    """
    Serialize and hand one record to the transport.

    Raises PublishError when the record could not be serialized or the
    transport refused it. Must not modify the record.
    """
    raise NotImplementedError

  def close(self) -> None:
    """Release transport resources. The default backend holds none."""


__all__ = ["MessageLogBackend"]

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional, Union

from .models import Endpoint, FrameStatus, LogEntry

_NET_ID_RE = re.compile(r"^[0-9a-fA-F]{6}$")


def _utcnow() -> datetime:
  return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LogEntryBuilder:
  """
  Chainable construction of a LogEntry.

  The creation time is taken when the builder is created. Every setter
  returns a new builder, so a half-configured record is never shared:

    entry = (
      LogEntryBuilder()
      .log_source(Endpoint.LOCAL)
      .source_id(str(net_id))
      .log_destination(Endpoint.GATEWAY)
      .destination_id(gateway_id)
      .build()
    )
  """

  created_at: datetime = field(default_factory=_utcnow)
  source: Endpoint = Endpoint.LOCAL
  source_ident: str = ""
  destination: Endpoint = Endpoint.LOCAL
  destination_ident: str = ""
  status: Optional[FrameStatus] = None
  addr: Optional[Union[str, bytes]] = None
  eui: Optional[Union[str, bytes]] = None
  known: bool = False

  def log_source(self, endpoint: Endpoint) -> "LogEntryBuilder":
    return replace(self, source=Endpoint(endpoint))

  def source_id(self, value: object) -> "LogEntryBuilder":
    return replace(self, source_ident=str(value))

  def log_destination(self, endpoint: Endpoint) -> "LogEntryBuilder":
    return replace(self, destination=Endpoint(endpoint))

  def destination_id(self, value: object) -> "LogEntryBuilder":
    return replace(self, destination_ident=str(value))

  def our_destination_id(self, net_id: str) -> "LogEntryBuilder":
    """
    Use this network server's own NetID as the destination identity.

    The NetID comes from the caller (normally ``config.network.net_id``).
    """
    net_id = str(net_id).strip()
    if not _NET_ID_RE.match(net_id):
      raise ValueError(f"NetID must be 6 hex digits, got {net_id!r}")
    return replace(self, destination_ident=net_id.lower())

  def frame_status(self, status: FrameStatus) -> "LogEntryBuilder":
    return replace(self, status=status)

  def dev_addr(self, value: Union[str, bytes]) -> "LogEntryBuilder":
    return replace(self, addr=value)

  def dev_eui(self, value: Union[str, bytes]) -> "LogEntryBuilder":
    return replace(self, eui=value)

  def known_device(self, value: bool = True) -> "LogEntryBuilder":
    return replace(self, known=bool(value))

  def build(self) -> LogEntry:
    """
    Finalize into a LogEntry whose event-specific fields are all empty.
    """
    values = {
      "created_at": self.created_at,
      "log_source": self.source,
      "source_id": self.source_ident,
      "log_destination": self.destination,
      "destination_id": self.destination_ident,
      "known_device": self.known,
    }
    if self.status is not None:
      values["frame_status"] = self.status.model_copy()
    if self.addr is not None:
      values["dev_addr"] = self.addr
    if self.eui is not None:
      values["dev_eui"] = self.eui
    return LogEntry(**values)

"""Exceptions raised by the message logger."""

from __future__ import annotations


class MessageLogError(Exception):
  """Base exception for message logger failures."""


class ConfigError(MessageLogError, ValueError):
  """Raised when the message logger configuration is invalid."""


class BackendConnectionError(MessageLogError):
  """
  Raised when the delivery backend cannot be set up.

  This covers bad broker URIs, TLS material that fails to load, and a broker
  that refuses or never answers the initial handshake. It is fatal to start-up.
  """

  def __init__(self, message: str, server: str | None = None):
    super().__init__(message)
    self.server = server


class PublishError(MessageLogError):
  """Raised when a record could not be serialized or handed to the transport."""

  def __init__(self, message: str, return_code: int | None = None):
    super().__init__(message)
    self.return_code = return_code


class RecordStateError(MessageLogError):
  """Raised when a record would break its own invariants."""


class DispatcherStateError(MessageLogError):
  """Raised when the dispatcher is configured a second time."""

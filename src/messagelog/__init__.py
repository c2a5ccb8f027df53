"""
messagelog

Audit logging for a LoRaWAN network server: normalized records of every
frame exchange, time-on-air accounting, and best-effort delivery of the
records to an MQTT topic.
"""

from .airtime import packet_to_time_on_air, time_on_air
from .builder import LogEntryBuilder
from .config import MessageLogConfig, load_config
from .dispatcher import Dispatcher, send, setup
from .models import (
  DownlinkTxInfo,
  Endpoint,
  FrameStatus,
  FrameStatusResult,
  HomeNSTransaction,
  JoinTransaction,
  LogEntry,
  LoraModulationInfo,
  PRStartTransaction,
  RoamingMetaData,
  RxPacket,
  TxPacket,
  XmitDataTransaction,
)

__all__ = [
  "Dispatcher",
  "DownlinkTxInfo",
  "Endpoint",
  "FrameStatus",
  "FrameStatusResult",
  "HomeNSTransaction",
  "JoinTransaction",
  "LogEntry",
  "LogEntryBuilder",
  "LoraModulationInfo",
  "MessageLogConfig",
  "PRStartTransaction",
  "RoamingMetaData",
  "RxPacket",
  "TxPacket",
  "XmitDataTransaction",
  "load_config",
  "packet_to_time_on_air",
  "send",
  "setup",
  "time_on_air",
]

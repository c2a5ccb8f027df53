from __future__ import annotations

import base64
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, FrozenSet, List, Literal, Optional, Union

from pydantic import (
  BaseModel,
  BeforeValidator,
  ConfigDict,
  Field,
  PlainSerializer,
  SerializationInfo,
  SerializerFunctionWrapHandler,
  field_serializer,
  field_validator,
  model_serializer,
  model_validator,
)

from .airtime import packet_to_time_on_air
from .errors import RecordStateError


def dump_opaque(value: Any) -> Any:
  """
  Serialize a value owned by an external collaborator.

  Frames, gateway reports and roaming payloads are passed through as-is:
  pydantic models are dumped with their own aliases, objects exposing
  ``to_dict()`` are asked for their mapping, and raw bytes become hex.
  """
  if value is None:
    return None
  if isinstance(value, BaseModel):
    return value.model_dump(mode="json", by_alias=True)
  if isinstance(value, (bytes, bytearray)):
    return bytes(value).hex()
  to_dict = getattr(value, "to_dict", None)
  if callable(to_dict):
    return to_dict()
  if isinstance(value, dict):
    return {str(k): dump_opaque(v) for k, v in value.items()}
  if isinstance(value, (list, tuple)):
    return [dump_opaque(v) for v in value]
  return value


Opaque = Annotated[Any, PlainSerializer(dump_opaque)]


def _hex_id(value: Any, size: int, name: str) -> str:
  if isinstance(value, (bytes, bytearray)):
    raw = bytes(value)
  elif isinstance(value, str):
    try:
      raw = bytes.fromhex(value.strip())
    except ValueError:
      raise ValueError(f"{name} must be hex encoded, got {value!r}")
  else:
    raise ValueError(f"{name} must be bytes or a hex string, got {type(value).__name__}")

  if len(raw) != size:
    raise ValueError(f"{name} must be {size} bytes, got {len(raw)}")
  return raw.hex()


def _dev_addr(value: Any) -> str:
  return _hex_id(value, 4, "DevAddr")


def _eui64(value: Any) -> str:
  return _hex_id(value, 8, "EUI64")


DevAddr = Annotated[str, BeforeValidator(_dev_addr)]
EUI64 = Annotated[str, BeforeValidator(_eui64)]


def _is_empty(value: Any) -> bool:
  if value is None:
    return True
  if isinstance(value, (list, tuple, dict)):
    return len(value) == 0
  return False


class WireModel(BaseModel):
  """
  Base for every structure that ends up on the audit stream.

  Fields named in ``OMIT_IF_EMPTY`` are dropped from the serialized document
  when they are None or an empty collection, so consumers can tell "no data"
  apart from an empty list. Nothing is ever emitted as null for them.
  """

  model_config = ConfigDict(populate_by_name=True)

  OMIT_IF_EMPTY: ClassVar[FrozenSet[str]] = frozenset()

  @model_serializer(mode="wrap")
  def _serialize_sparse(
    self, handler: SerializerFunctionWrapHandler, info: SerializationInfo
  ) -> Dict[str, Any]:
    data = handler(self)
    for name in self.OMIT_IF_EMPTY:
      key = self._wire_key(name) if info.by_alias else name
      if key in data and _is_empty(data[key]):
        del data[key]
    self._extend_wire(data, info)
    return data

  def _extend_wire(self, data: Dict[str, Any], info: SerializationInfo) -> None:
    """Hook for models that add keys not backed by a single field."""

  @classmethod
  def _wire_key(cls, name: str) -> str:
    field = cls.model_fields[name]
    return field.alias or name


class Endpoint(str, Enum):
  """Logical role of a record's source or destination."""

  GATEWAY = "GATEWAY"
  LOCAL = "LOCAL"
  ROAMING = "ROAMING"
  JOINSERVER = "JOINSERVER"


class FrameStatusResult(str, Enum):
  OK = "OK"
  NOK = "NOK"
  WARN = "WARN"


class FrameStatus(WireModel):
  """
  Outcome of the logged exchange.

  Defaults to NOK so a record that was never completed cannot read as success.
  """

  result: FrameStatusResult = Field(default=FrameStatusResult.NOK, alias="Result")
  error_desc: str = Field(default="", alias="ErrorDesc")

  @classmethod
  def ok(cls, error_desc: str = "") -> "FrameStatus":
    return cls(result=FrameStatusResult.OK, error_desc=error_desc)

  @classmethod
  def nok(cls, error_desc: str = "") -> "FrameStatus":
    return cls(result=FrameStatusResult.NOK, error_desc=error_desc)

  @classmethod
  def warn(cls, error_desc: str = "") -> "FrameStatus":
    return cls(result=FrameStatusResult.WARN, error_desc=error_desc)


class LoraModulationInfo(BaseModel):
  """
  LoRa modulation parameters of a transmission.
  """

  bandwidth: int = Field(..., description="Channel bandwidth in kHz")
  spreading_factor: int = Field(..., ge=6, le=12)
  code_rate: str = "4/5"
  polarization_inversion: bool = False


class DownlinkTxInfo(WireModel):
  """
  Radio parameters a downlink was (or will be) transmitted with.
  """

  OMIT_IF_EMPTY: ClassVar[FrozenSet[str]] = frozenset({"modulation"})

  frequency: int
  power: int
  context: bytes = b""
  modulation: Optional[LoraModulationInfo] = Field(default=None, alias="ModulationInfo")
  timing: Dict[str, Any] = Field(
    default_factory=lambda: {"ImmediatelyTimingInfo": {}},
    alias="TimingInfo",
  )

  @field_validator("context", mode="before")
  @classmethod
  def _decode_context(cls, value: Any) -> Any:
    if isinstance(value, str):
      return base64.b64decode(value)
    return value

  @field_validator("modulation", mode="before")
  @classmethod
  def _unwrap_modulation(cls, value: Any) -> Any:
    if isinstance(value, dict) and "LoraModulationInfo" in value:
      return value["LoraModulationInfo"]
    return value

  @field_serializer("context")
  def _encode_context(self, value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")

  @field_serializer("modulation")
  def _wrap_modulation(self, value: Optional[LoraModulationInfo]) -> Optional[Dict[str, Any]]:
    if value is None:
      return None
    return {"LoraModulationInfo": value.model_dump(mode="json")}


class RoamingMetaData(WireModel):
  """Roaming envelope that accompanies frames exchanged with a partner network."""

  base_payload: Opaque = Field(default=None, alias="BasePayload")
  ul_meta_data: Opaque = Field(default=None, alias="ULMetaData")


class RxPacket(WireModel):
  """
  Summary of one received uplink.
  """

  OMIT_IF_EMPTY: ClassVar[FrozenSet[str]] = frozenset(
    {"tx_info", "rx_info_set", "gateway_is_private", "gateway_service_profile", "roaming_meta_data"}
  )

  dr: int = Field(..., alias="DR")
  tx_info: Opaque = Field(default=None, alias="TXInfo")
  rx_info_set: List[Opaque] = Field(default_factory=list, alias="RXInfoSet")
  gateway_is_private: Dict[EUI64, bool] = Field(default_factory=dict, alias="GatewayIsPrivate")
  # Owning tenant per gateway.
  gateway_service_profile: Dict[EUI64, uuid.UUID] = Field(
    default_factory=dict, alias="GatewayServiceProfile"
  )
  roaming_meta_data: Optional[RoamingMetaData] = Field(default=None, alias="RoamingMetaData")


class TxPacket(WireModel):
  """
  Summary of one transmitted or acknowledged downlink.
  """

  OMIT_IF_EMPTY: ClassVar[FrozenSet[str]] = frozenset({"downlink_tx_info"})

  phy_payload: Opaque = Field(..., alias="PHYPayload")
  downlink_tx_info: Optional[DownlinkTxInfo] = Field(default=None, alias="DownlinkTXInfo")
  time_on_air: float = Field(default=0.0, alias="TimeOnAir")

  @classmethod
  def from_frame(cls, phy_payload: Any, tx_info: Optional[DownlinkTxInfo] = None) -> "TxPacket":
    """
    Build a packet summary and stamp its time on air from the tx-info's
    LoRa modulation. Without modulation info the time on air stays 0.0.
    """
    toa = 0.0
    if tx_info is not None and tx_info.modulation is not None:
      toa = packet_to_time_on_air(phy_payload, tx_info.modulation)
    return cls(phy_payload=phy_payload, downlink_tx_info=tx_info, time_on_air=toa)


class _Transaction(BaseModel):
  """
  A request/answer pair of one backend-interface exchange.

  Either side may be missing (the answer is often logged on its own record),
  but not both.
  """

  REQUEST_KEY: ClassVar[str] = ""
  ANSWER_KEY: ClassVar[str] = ""

  request: Opaque = None
  answer: Opaque = None

  @model_validator(mode="after")
  def _require_payload(self) -> "_Transaction":
    if self.request is None and self.answer is None:
      raise ValueError(
        f"{type(self).__name__} needs a request or an answer payload"
      )
    return self

  def wire_items(self) -> Dict[str, Any]:
    items: Dict[str, Any] = {}
    if self.request is not None:
      items[self.REQUEST_KEY] = dump_opaque(self.request)
    if self.answer is not None:
      items[self.ANSWER_KEY] = dump_opaque(self.answer)
    return items


class JoinTransaction(_Transaction):
  REQUEST_KEY: ClassVar[str] = "JoinReq"
  ANSWER_KEY: ClassVar[str] = "JoinAns"

  kind: Literal["join"] = "join"


class PRStartTransaction(_Transaction):
  REQUEST_KEY: ClassVar[str] = "PRStartReq"
  ANSWER_KEY: ClassVar[str] = "PRStartAns"

  kind: Literal["pr_start"] = "pr_start"


class HomeNSTransaction(_Transaction):
  REQUEST_KEY: ClassVar[str] = "HomeNSReq"
  ANSWER_KEY: ClassVar[str] = "HomeNSAns"

  kind: Literal["home_ns"] = "home_ns"


class XmitDataTransaction(_Transaction):
  REQUEST_KEY: ClassVar[str] = "XmitDataReq"
  ANSWER_KEY: ClassVar[str] = "XmitDataAns"

  kind: Literal["xmit_data"] = "xmit_data"


TRANSACTION_TYPES = (JoinTransaction, PRStartTransaction, HomeNSTransaction, XmitDataTransaction)

Transaction = Annotated[
  Union[JoinTransaction, PRStartTransaction, HomeNSTransaction, XmitDataTransaction],
  Field(discriminator="kind"),
]


def _utcnow() -> datetime:
  return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
  """
  RFC 3339 text in UTC with a Z suffix.

  The fraction is printed with as many digits as it needs: none, 3 or 6.
  """
  value = value.astimezone(timezone.utc)
  if value.microsecond == 0:
    timespec = "seconds"
  elif value.microsecond % 1000 == 0:
    timespec = "milliseconds"
  else:
    timespec = "microseconds"
  return value.replace(tzinfo=None).isoformat(timespec=timespec) + "Z"


class LogEntry(WireModel):
  """
  One normalized audit record of a frame exchange.

  Records are obtained from ``LogEntryBuilder.build()``; the caller then
  attaches the event payload (packets and at most one transaction) before
  handing the record to the dispatcher. On the wire the transaction is
  flattened into its request/answer keys (``JoinReq``, ``PRStartAns``, ...).
  """

  OMIT_IF_EMPTY: ClassVar[FrozenSet[str]] = frozenset(
    {"publish_at", "rx_packet", "tx_packet", "tx_ack"}
  )

  ctx_id: uuid.UUID = Field(default_factory=uuid.uuid4, alias="CtxID")
  publish_at: Optional[datetime] = Field(default=None, alias="PublishAt")
  created_at: datetime = Field(default_factory=_utcnow, alias="CreatedAt")
  log_source: Endpoint = Field(default=Endpoint.LOCAL, alias="LogSource")
  source_id: str = Field(default="", alias="SourceID")
  log_destination: Endpoint = Field(default=Endpoint.LOCAL, alias="LogDestination")
  destination_id: str = Field(default="", alias="DestinationID")
  frame_status: FrameStatus = Field(default_factory=FrameStatus, alias="FrameStatus")
  time_on_air: float = Field(default=0.0, alias="TimeOnAir")
  dev_addr: DevAddr = Field(default="00000000", alias="DevAddr")
  dev_eui: EUI64 = Field(default="0000000000000000", alias="DevEUI")
  known_device: bool = Field(default=False, alias="KnownDevice")
  rx_packet: Optional[RxPacket] = Field(default=None, alias="RXPacket")
  tx_packet: List[TxPacket] = Field(default_factory=list, alias="TXPacket")
  tx_ack: Optional[TxPacket] = Field(default=None, alias="TXAck")
  transaction: Optional[Transaction] = Field(default=None, exclude=True)

  @model_validator(mode="before")
  @classmethod
  def _collect_transaction(cls, data: Any) -> Any:
    if not isinstance(data, dict):
      return data

    found = [t for t in TRANSACTION_TYPES if t.REQUEST_KEY in data or t.ANSWER_KEY in data]
    if not found:
      return data
    if len(found) > 1:
      names = ", ".join(t.__name__ for t in found)
      raise ValueError(f"a record carries at most one transaction, got {names}")

    kind = found[0]
    data = dict(data)
    data["transaction"] = kind(
      request=data.pop(kind.REQUEST_KEY, None),
      answer=data.pop(kind.ANSWER_KEY, None),
    )
    return data

  @field_validator("publish_at", "created_at")
  @classmethod
  def _require_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
      return value.replace(tzinfo=timezone.utc)
    return value

  @field_serializer("publish_at", "created_at")
  def _format_timestamp(self, value: Optional[datetime]) -> Optional[str]:
    if value is None:
      return None
    return format_timestamp(value)

  def _extend_wire(self, data: Dict[str, Any], info: SerializationInfo) -> None:
    if self.transaction is None:
      return
    if info.by_alias:
      data.update(self.transaction.wire_items())
    else:
      data["transaction"] = self.transaction.model_dump(mode="json")

  def add_tx_packet(self, packet: TxPacket) -> None:
    self.tx_packet.append(packet)

  def attach_transaction(self, transaction: _Transaction) -> None:
    """
    Attach the record's single protocol transaction.

    Raises RecordStateError when the record already carries one.
    """
    if self.transaction is not None:
      raise RecordStateError(
        f"record {self.ctx_id} already carries a {type(self.transaction).__name__}"
      )
    self.transaction = transaction

  def fill_time_on_air(self) -> float:
    """
    Set the overall time on air from the transmitted packets and return it.
    """
    total = sum(p.time_on_air for p in self.tx_packet)
    if self.tx_ack is not None:
      total += self.tx_ack.time_on_air
    self.time_on_air = total
    return total

  def to_wire(self) -> Dict[str, Any]:
    return self.model_dump(mode="json", by_alias=True)

  def to_json(self) -> str:
    return self.model_dump_json(by_alias=True)

  @classmethod
  def from_wire(cls, data: Union[str, bytes, Dict[str, Any]]) -> "LogEntry":
    """Parse a record as published on the audit stream."""
    if isinstance(data, (str, bytes)):
      return cls.model_validate_json(data)
    return cls.model_validate(data)

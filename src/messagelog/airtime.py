from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
  from .models import LoraModulationInfo

_logger = logging.getLogger("messagelog.airtime")

# Programmed preamble length; the radio adds 4.25 sync symbols on top.
PREAMBLE_SYMBOLS = 8

# Coding rate 4/5 adds one redundancy bit per four, i.e. 5 symbols per block.
_CODING_SYMBOLS = 5


def low_data_rate_optimize(bandwidth_khz: int, spreading_factor: int) -> int:
  """
  Return the low data rate optimization flag (DE) for a channel.

  Only 125 kHz channels at SF11 and SF12 enable it.
  """
  if bandwidth_khz == 125 and spreading_factor >= 11:
    return 1
  return 0


def time_on_air(
  payload: Union[bytes, bytearray, int],
  bandwidth_khz: int,
  spreading_factor: int,
) -> float:
  """
  Compute the time on air, in seconds, of an encoded PHY payload.

  Only the payload length matters; an int is accepted as the length directly.
  Explicit header and CRC are assumed, as for every LoRaWAN uplink and downlink.
  """
  msg_len = payload if isinstance(payload, int) else len(payload)
  sf = spreading_factor
  de = low_data_rate_optimize(bandwidth_khz, sf)

  t_sym = 2.0**sf / (1000.0 * bandwidth_khz)
  t_preamble = (PREAMBLE_SYMBOLS + 4.25) * t_sym

  payload_sym = math.ceil((8.0 * msg_len - 4.0 * sf + 44.0) / (4.0 * (sf - 2.0 * de)))
  payload_sym_nb = 8 + max(0, payload_sym * _CODING_SYMBOLS)

  return t_preamble + payload_sym_nb * t_sym


def packet_to_time_on_air(frame: Any, modulation: LoraModulationInfo) -> float:
  """
  Encode a frame and compute its time on air for the given LoRa modulation.

  Encoding failures are logged and reported as 0.0 so audit logging never
  aborts the caller.
  """
  try:
    phy = frame if isinstance(frame, (bytes, bytearray)) else frame.to_bytes()
  except Exception as exc:
    _logger.error("PHY payload marshal error: %s", exc)
    return 0.0

  return time_on_air(phy, modulation.bandwidth, modulation.spreading_factor)

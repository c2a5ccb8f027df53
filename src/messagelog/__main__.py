from __future__ import annotations

import argparse
import json
import sys
from typing import NoReturn

from .airtime import low_data_rate_optimize, time_on_air
from .config import load_config
from .errors import ConfigError


def main(argv: list[str] | None = None) -> NoReturn:
  argv = list(sys.argv[1:] if argv is None else argv)

  if not argv or argv[0] not in {"airtime", "config"}:
    print("Usage: python -m messagelog {airtime|config}", file=sys.stderr)
    print("  airtime       - Compute the time on air of a LoRa frame", file=sys.stderr)
    print("  config        - Show the resolved message logger configuration", file=sys.stderr)
    sys.exit(1)

  if argv[0] == "airtime":
    _run_airtime(argv[1:])
  elif argv[0] == "config":
    _run_config(argv[1:])


def _run_airtime(args: list[str]) -> NoReturn:
  parser = argparse.ArgumentParser(
    prog="messagelog airtime",
    description="Compute the time on air of an encoded PHY payload",
  )
  group = parser.add_mutually_exclusive_group(required=True)
  group.add_argument("--size", type=int, help="PHY payload length in bytes")
  group.add_argument("--hex", dest="hex_payload", help="Encoded PHY payload as hex")
  parser.add_argument("--bandwidth", type=int, default=125, help="Bandwidth in kHz (default: 125)")
  parser.add_argument("--sf", type=int, default=12, choices=range(6, 13), help="Spreading factor (default: 12)")
  opts = parser.parse_args(args)

  if opts.hex_payload is not None:
    try:
      payload: bytes | int = bytes.fromhex(opts.hex_payload)
    except ValueError:
      print(f"Invalid hex payload: {opts.hex_payload}", file=sys.stderr)
      sys.exit(2)
  else:
    if opts.size < 0:
      print("--size must not be negative", file=sys.stderr)
      sys.exit(2)
    payload = opts.size

  seconds = time_on_air(payload, opts.bandwidth, opts.sf)
  de = low_data_rate_optimize(opts.bandwidth, opts.sf)
  print(f"Time on air: {seconds:.6f} s (SF{opts.sf}/{opts.bandwidth}kHz, LDRO={'on' if de else 'off'})")
  sys.exit(0)


def _run_config(args: list[str]) -> NoReturn:
  parser = argparse.ArgumentParser(
    prog="messagelog config",
    description="Show the message logger configuration after merging all sources",
  )
  parser.add_argument("--project-root", default=".", help="Directory holding _messagelog/ (default: .)")
  parser.add_argument("--environment", default=None, help="Environment name (default: MESSAGELOG_ENV)")
  opts = parser.parse_args(args)

  try:
    config = load_config(project_root=opts.project_root, environment=opts.environment)
  except ConfigError as exc:
    print(str(exc), file=sys.stderr)
    sys.exit(2)

  print(json.dumps(config.as_dict(), indent=2))
  if not config.mqtt.enabled:
    print("Message logger disabled: no MQTT server configured.", file=sys.stderr)
  sys.exit(0)


if __name__ == "__main__":
  main()

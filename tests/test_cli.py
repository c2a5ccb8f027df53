import json

import pytest

from messagelog.__main__ import main


def _run(argv):
  with pytest.raises(SystemExit) as excinfo:
    main(argv)
  return excinfo.value.code


def test_no_command_prints_usage(capsys):
  assert _run([]) == 1
  assert "Usage: python -m messagelog" in capsys.readouterr().err


def test_unknown_command(capsys):
  assert _run(["publish"]) == 1


def test_airtime_by_size(capsys):
  assert _run(["airtime", "--size", "21"]) == 0

  out = capsys.readouterr().out
  assert "Time on air: 1.482752 s" in out
  assert "SF12/125kHz, LDRO=on" in out


def test_airtime_by_hex(capsys):
  assert _run(["airtime", "--hex", "a0500704e0803e1d02c72febdf", "--sf", "7"]) == 0

  assert "Time on air: 0.046336 s (SF7/125kHz, LDRO=off)" in capsys.readouterr().out


def test_airtime_invalid_hex(capsys):
  assert _run(["airtime", "--hex", "zz"]) == 2
  assert "Invalid hex payload" in capsys.readouterr().err


def test_airtime_requires_payload(capsys):
  assert _run(["airtime"]) == 2


def test_config_prints_merged_configuration(tmp_path, monkeypatch, capsys):
  monkeypatch.setenv("MESSAGELOG_MQTT_SERVERS", "tcp://broker:1883")
  monkeypatch.setenv("MESSAGELOG_MQTT_PASSWORD", "secret")

  assert _run(["config", "--project-root", str(tmp_path)]) == 0

  captured = capsys.readouterr()
  doc = json.loads(captured.out)
  assert doc["mqtt"]["servers"] == ["tcp://broker:1883"]
  assert doc["mqtt"]["password"] == "***"
  assert "secret" not in captured.out
  assert "disabled" not in captured.err


def test_config_disabled_notice(tmp_path, capsys):
  assert _run(["config", "--project-root", str(tmp_path)]) == 0

  assert "Message logger disabled" in capsys.readouterr().err


def test_config_error_exit_code(tmp_path, monkeypatch, capsys):
  monkeypatch.setenv("MESSAGELOG_MQTT_QOS", "7")

  assert _run(["config", "--project-root", str(tmp_path)]) == 2
  assert "mqtt.qos" in capsys.readouterr().err

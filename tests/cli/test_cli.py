from __future__ import annotations

import json
import pathlib

import pytest

from navaid_monitor.cli import main as cli

pytestmark = pytest.mark.cli


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "configure_logging", lambda **kwargs: None)


def test_decode_reports_first_monitor_byte(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["decode", "5a 55 01 00 90 b8"]) == 0

    report = json.loads(capsys.readouterr().out)
    assert report["valid"] is True
    assert report["offset"] == 4
    assert report["path"] == "STANDBY"
    assert report["status"] == "ALARM"
    assert [candidate["offset"] for candidate in report["candidates"]] == [4, 5]


def test_decode_without_monitor_byte(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["decode", "00:01:ff"]) == 1

    report = json.loads(capsys.readouterr().out)
    assert report["valid"] is False
    assert report["error"] == "No valid monitor byte found in payload"


def test_decode_rejects_bad_hex() -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["decode", "zz"])
    assert excinfo.value.code == 2


def test_equipment_add_list_set_port_remove(
    tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]
) -> None:
    path = tmp_path / "equipment.json"
    base = ["--equipment", str(path), "equipment"]

    assert cli.main([*base, "add", "--name", "ILS Main", "--port", "4001"]) == 0
    assert capsys.readouterr().out.strip() == "ils-main"
    assert cli.main([*base, "add", "--name", "DME", "--ip", "10.0.0.7", "--port", "4002", "--disabled"]) == 0
    capsys.readouterr()

    assert cli.main([*base, "set-port", "ils-main", "4010"]) == 0
    saved = json.loads(path.read_text(encoding="utf-8"))["equipment"]
    assert {record["id"]: record["port"] for record in saved} == {"ils-main": 4010, "dme": 4002}
    assert saved[1]["enabled"] is False

    assert cli.main([*base, "list"]) == 0
    listing = capsys.readouterr().out
    assert "ils-main" in listing
    assert "disabled" in listing

    assert cli.main([*base, "remove", "dme"]) == 0
    saved = json.loads(path.read_text(encoding="utf-8"))["equipment"]
    assert [record["id"] for record in saved] == ["ils-main"]


def test_equipment_port_conflict_is_rejected(tmp_path: pathlib.Path) -> None:
    path = tmp_path / "equipment.json"
    base = ["--equipment", str(path), "equipment"]
    cli.main([*base, "add", "--name", "ILS Main", "--port", "4001"])
    cli.main([*base, "add", "--name", "DME North", "--port", "4002"])

    with pytest.raises(SystemExit) as excinfo:
        cli.main([*base, "set-port", "dme-north", "4001"])
    assert excinfo.value.code == 2


def test_command_is_required() -> None:
    with pytest.raises(SystemExit):
        cli.main([])


@pytest.mark.parametrize(
    "args",
    [
        ["add", "--name", "ILS Main", "--port", "4005"],
        ["add", "--name", "VOR", "--port", "4001"],
        ["add", "--name", "VOR", "--ip", "300.0.0.1", "--port", "4006"],
        ["set-port", "ils-main", "80"],
        ["set-port", "ghost", "4007"],
        ["remove", "ghost"],
    ],
    ids=["duplicate-id", "port-taken", "bad-ip", "port-out-of-range", "unknown-set-port", "unknown-remove"],
)
def test_equipment_edits_share_admin_checks(tmp_path: pathlib.Path, args: list[str]) -> None:
    path = tmp_path / "equipment.json"
    base = ["--equipment", str(path), "equipment"]
    cli.main([*base, "add", "--name", "ILS Main", "--port", "4001"])
    before = path.read_text(encoding="utf-8")

    with pytest.raises(SystemExit) as excinfo:
        cli.main([*base, *args])

    assert excinfo.value.code == 2
    assert path.read_text(encoding="utf-8") == before


def test_decode_help_example_is_a_valid_payload(capsys: pytest.CaptureFixture[str]) -> None:
    decode = cli.build_parser()._subparsers._group_actions[0].choices["decode"]
    (payload_action,) = [action for action in decode._actions if action.dest == "payload"]
    example = payload_action.help.split("'")[1]

    assert example == "5a 55 01 00 a0"
    assert cli.main(["decode", example]) == 0
    assert json.loads(capsys.readouterr().out)["byte"] == "0xa0"

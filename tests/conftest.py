from __future__ import annotations

import datetime as dt
import json
import os
import pathlib
import socket
from typing import Callable

import pytest


@pytest.fixture()
def repo_root() -> pathlib.Path:
    return pathlib.Path(__file__).resolve().parents[1]


@pytest.fixture()
def free_udp_port() -> Callable[[], int]:
    """Factory returning a UDP port that was free on loopback a moment ago."""

    def _pick() -> int:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as scratch:
            scratch.bind(("127.0.0.1", 0))
            return scratch.getsockname()[1]

    return _pick


@pytest.fixture()
def equipment_file(tmp_path: pathlib.Path) -> Callable[[list[dict]], pathlib.Path]:
    def _write(records: list[dict]) -> pathlib.Path:
        path = tmp_path / "equipment.json"
        path.write_text(
            json.dumps({"server": {"wsPort": 3000}, "equipment": records}, indent=2),
            encoding="utf-8",
        )
        return path

    return _write


def pytest_configure(config: pytest.Config) -> None:
    repo = pathlib.Path(__file__).resolve().parents[1]
    results_dir = repo / "test-results"
    results_dir.mkdir(parents=True, exist_ok=True)

    tag = os.environ.get("PYTEST_REPORT_TAG")
    if tag:
        safe_tag = "".join(ch for ch in tag if ch.isalnum() or ch in ("-", "_"))
        timestamp = safe_tag or dt.datetime.now().strftime("%Y%m%d-%H%M%S")
    else:
        timestamp = dt.datetime.now().strftime("%Y%m%d-%H%M%S")

    config.option.xmlpath = str(results_dir / f"pytest-{timestamp}.xml")
    if hasattr(config.option, "htmlpath"):
        config.option.htmlpath = str(results_dir / f"pytest-{timestamp}.html")
        config.option.self_contained_html = True

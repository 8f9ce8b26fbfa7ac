from __future__ import annotations

import pytest

from navaid_monitor.domain.models import EquipmentDescriptor
from navaid_monitor.services.identification import SourceVerdict, identify_source, is_loopback

pytestmark = pytest.mark.identification

_PINNED = EquipmentDescriptor(id="ils", name="ILS", expected_source_ip="10.0.0.5", listen_port=4001)
_ANY = EquipmentDescriptor(id="dme", name="DME", expected_source_ip="any", listen_port=4002)


def test_no_descriptor_is_unknown() -> None:
    result = identify_source(None, "10.0.0.5")
    assert result.verdict is SourceVerdict.UNKNOWN
    assert not result.accepted


def test_expected_address_matches() -> None:
    result = identify_source(_PINNED, "10.0.0.5")
    assert result.verdict is SourceVerdict.MATCH
    assert result.accepted
    assert not result.warn


def test_ipv4_mapped_address_matches() -> None:
    assert identify_source(_PINNED, "::ffff:10.0.0.5").verdict is SourceVerdict.MATCH


def test_any_source_accepts_everything() -> None:
    result = identify_source(_ANY, "192.168.7.7")
    assert result.verdict is SourceVerdict.ANY
    assert result.descriptor is _ANY


@pytest.mark.parametrize("address", ["127.0.0.1", "127.5.5.5", "::1", "::ffff:127.0.0.1"])
def test_loopback_skips_the_check(address: str) -> None:
    result = identify_source(_PINNED, address)
    assert result.verdict is SourceVerdict.LOOPBACK
    assert result.accepted


def test_mismatch_is_accepted_with_warning() -> None:
    result = identify_source(_PINNED, "10.0.0.99")
    assert result.verdict is SourceVerdict.MISMATCH
    assert result.accepted
    assert result.descriptor is _PINNED
    assert result.warn


def test_mismatch_is_quiet_when_unknown_sources_allowed() -> None:
    result = identify_source(_PINNED, "10.0.0.99", allow_unknown_sources=True)
    assert result.verdict is SourceVerdict.MISMATCH
    assert result.accepted
    assert not result.warn


@pytest.mark.parametrize(
    ("address", "expected"),
    [("127.0.0.1", True), ("10.0.0.1", False), ("::1", True), ("not-an-ip", False)],
)
def test_is_loopback(address: str, expected: bool) -> None:
    assert is_loopback(address) is expected

import ipaddress

import pytest

from taloscluster.provisioner.errors import (
    IPv6NotSupportedError,
    NegativeOffsetError,
    NetworkAddressError,
)
from taloscluster.utils.ipam import nth_address


def test_nth_address_adds_offset_to_base():
    assert nth_address("10.5.0.0/24", 0) == ipaddress.IPv4Address("10.5.0.0")
    assert nth_address("10.5.0.0/24", 1) == ipaddress.IPv4Address("10.5.0.1")
    assert nth_address("10.5.0.0/24", 2) == ipaddress.IPv4Address("10.5.0.2")


def test_nth_address_ignores_host_bits():
    assert nth_address("10.5.0.17/24", 3) == ipaddress.IPv4Address("10.5.0.3")


def test_nth_address_crosses_octet_boundary():
    assert nth_address("172.20.0.0/16", 256) == ipaddress.IPv4Address("172.20.1.0")


def test_nth_address_is_injective_within_prefix():
    addresses = {nth_address("192.168.7.0/26", offset) for offset in range(64)}
    assert len(addresses) == 64


def test_negative_offset_fails():
    with pytest.raises(NegativeOffsetError):
        nth_address("10.5.0.0/24", -1)


def test_ipv6_prefix_fails():
    with pytest.raises(IPv6NotSupportedError):
        nth_address("fd00::/64", 1)


def test_offset_outside_prefix_fails():
    with pytest.raises(NetworkAddressError):
        nth_address("10.5.0.0/30", 4)


def test_invalid_prefix_fails():
    with pytest.raises(NetworkAddressError):
        nth_address("not-a-network", 1)

"""
taloscluster/utils/ipam.py

Static address allocation inside a node network prefix.
"""

import ipaddress
from typing import Union

from taloscluster.provisioner.errors import (
    IPv6NotSupportedError,
    NegativeOffsetError,
    NetworkAddressError,
)


def nth_address(
    prefix: Union[str, ipaddress.IPv4Network], offset: int
) -> ipaddress.IPv4Address:
    """Return the network base address of `prefix` plus `offset`.

    The addition is done on the 32-bit integer form of the address, so the
    result is exactly `base + offset` (offset 1 is the conventional gateway).

    Args:
        prefix: An IPv4 network such as "10.5.0.0/24". Host bits are ignored.
        offset: Non-negative offset from the network base address.

    Returns:
        ipaddress.IPv4Address: The computed address.

    Raises:
        NegativeOffsetError: If `offset` is negative.
        IPv6NotSupportedError: If `prefix` is an IPv6 network.
        NetworkAddressError: If `prefix` cannot be parsed or the result falls
            outside the prefix.
    """
    if offset < 0:
        raise NegativeOffsetError(f"offset must be non-negative, got {offset}")

    try:
        network = ipaddress.ip_network(prefix, strict=False)
    except ValueError as exc:
        raise NetworkAddressError(f"invalid network prefix {prefix!r}: {exc}") from exc

    if network.version != 4:
        raise IPv6NotSupportedError(f"IPv6 prefix {network} is not supported")

    if offset >= network.num_addresses:
        raise NetworkAddressError(
            f"offset {offset} is outside of {network} ({network.num_addresses} addresses)"
        )

    return ipaddress.IPv4Address(int(network.network_address) + offset)

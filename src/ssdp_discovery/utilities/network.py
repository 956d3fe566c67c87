import socket
from typing import Iterable, NamedTuple

import psutil


def get_ipv4_addresses(interfaces: Iterable[str] | None = None) -> list[NamedTuple]:
    """
    Gets all the IPV4 addresses currently available on the given active interfaces.

    :param interfaces: Optional names of the interfaces to extract addresses from. If none are
        provided, all active interfaces will be used.
    :return: A list of address entries, as returned by :func:`psutil.net_if_addrs`.
    :raises KeyError: if one of the given interfaces does not exist.
    """
    active_ifs = {name for name, stats in psutil.net_if_stats().items() if stats.isup}
    all_addrs = psutil.net_if_addrs()

    if interfaces is None:
        interfaces = active_ifs
    else:
        interfaces = list(interfaces)
        for name in interfaces:
            if name not in all_addrs:
                raise KeyError(f"Unknown network interface: {name}")

    return [
        addr
        for name in interfaces
        if name in active_ifs
        for addr in all_addrs[name]
        if addr.family == socket.AddressFamily.AF_INET
    ]

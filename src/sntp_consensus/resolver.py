from __future__ import annotations
import logging
import socket
from typing import List

from sntp_consensus.codec import NTP_PORT
from sntp_consensus.exceptions import AddressResolutionError

logger = logging.getLogger(__name__)


def resolve_all(hostname: str, port: int = NTP_PORT) -> List[str]:
    """
    Resolve a host name (e.g. an NTP pool) to all of its addresses.

    :return: Unique addresses in the order the resolver returned them.
    :raises AddressResolutionError: if the name does not resolve.
    """
    try:
        infos = socket.getaddrinfo(hostname, port, type=socket.SOCK_DGRAM)
    except (socket.gaierror, UnicodeError) as e:
        raise AddressResolutionError(hostname, e) from e

    addresses = list(dict.fromkeys(info[4][0] for info in infos))
    if not addresses:
        raise AddressResolutionError(hostname)

    logger.debug(
        f"Resolved {hostname} to {len(addresses)} address(es)",
        extra={"hostname": hostname, "addresses": addresses},
    )
    return addresses


def is_reachable(address: str, port: int = 80, timeout_millis: int = 5_000) -> bool:
    """TCP connect probe. A failure only means the probe failed, not the NTP service."""
    try:
        with socket.create_connection((address, port), timeout=timeout_millis / 1000):
            return True
    except OSError as e:
        logger.debug(
            f"Address {address} unreachable on port {port}: {e}",
            extra={"address": address, "port": port},
        )
        return False

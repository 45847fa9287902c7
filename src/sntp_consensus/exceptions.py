from __future__ import annotations
import logging
from typing import Optional

import ntplib

logger = logging.getLogger(__name__)


class SntpError(ntplib.NTPException):
    """Base class for every error raised by sntp_consensus."""


class SntpTimeout(SntpError):
    """No reply datagram arrived within the configured timeout."""

    def __init__(self, address: str, timeout_millis: int):
        self.address = address
        self.timeout_millis = timeout_millis
        super().__init__(f"No response from {address} within {timeout_millis}ms")


class HostUnreachable(SntpError):
    """Socket level failure while talking to an NTP server."""

    def __init__(self, address: str, error: Exception):
        self.address = address
        self.error = error
        super().__init__(f"Network error while querying {address}: {error}")


class InvalidNtpResponse(SntpError):
    """
    A response was received but failed a validity check.

    :param reason: One of root_delay, root_dispersion, mode, stratum,
        unsynchronized, server_response_delay, stale_request, packet_size.
    :param actual: The offending value, when there is one.
    :param limit: The limit the value was checked against, when there is one.
    """

    def __init__(self, reason: str, actual=None, limit=None):
        self.reason = reason
        self.actual = actual
        self.limit = limit
        message = f"Invalid response from NTP server. {reason} violation"
        if actual is not None and limit is not None:
            message = f"{message}. {actual} [actual] > {limit} [expected]"
        elif actual is not None:
            message = f"{message}. Received {actual}"
        super().__init__(message)


class QueryCancelled(SntpError):
    """The query or poll round was cancelled before it produced a result."""


class AddressResolutionError(SntpError):
    """The NTP pool host name could not be resolved to any address."""

    def __init__(self, hostname: str, error: Optional[Exception] = None):
        self.hostname = hostname
        self.error = error
        message = f"Failed to resolve NTP host '{hostname}'"
        if error is not None:
            message = f"{message}: {error}"
        super().__init__(message)


class NoTrustedResponse(SntpError):
    """
    Raised when a poll round produced no valid sample from any address.
    """

    def __init__(self, message: str, last_error: Optional[Exception] = None):
        self.message = message
        self.last_error = last_error
        logger.error(self.message)
        super().__init__(self.message)

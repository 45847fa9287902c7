#!/usr/bin/env python
# -*- coding: utf-8 -*-
# ----------------------------------------------------------------------------
# Created By  : Matthew Davidson
# Created Date: 2023-01-23
# version ='1.0'
# ---------------------------------------------------------------------------
"""Single SNTP request/response exchange over UDP"""
# ---------------------------------------------------------------------------
from __future__ import annotations
import ipaddress
import logging
import socket
import threading
import time
from typing import Callable, Optional

from prometheus_client import Counter

from sntp_consensus.clock import SystemClock
from sntp_consensus.codec import NTP_PACKET_SIZE, NTP_PORT, build_request, parse_response
from sntp_consensus.configuration import SntpConfig
from sntp_consensus.exceptions import (
    HostUnreachable,
    QueryCancelled,
    SntpError,
    SntpTimeout,
)
from sntp_consensus.sample import NtpRequestContext, NtpSample, build_sample

logger = logging.getLogger(__name__)

# Longest a blocked receive goes without checking for cancellation (seconds)
CANCEL_POLL_INTERVAL = 0.1


def address_family(address: str) -> int:
    """Return AF_INET6 for IPv6 literals, AF_INET otherwise."""
    try:
        if ipaddress.ip_address(address).version == 6:
            return socket.AF_INET6
    except ValueError:
        pass
    return socket.AF_INET


class SntpClient:
    """
    Performs one SNTP exchange per call to query().

    Each query opens its own UDP socket and closes it on every exit path. There
    is no retry here; retrying is left to the PollOrchestrator.
    """

    queries_count = Counter(
        "sntp_queries_total",
        "Total number of SNTP queries, by outcome",
        labelnames=("outcome",),
    )

    def __init__(
        self,
        config: Optional[SntpConfig] = None,
        clock: Optional[SystemClock] = None,
        socket_factory: Optional[Callable[..., socket.socket]] = None,
        port: int = NTP_PORT,
    ):
        """
        :param config: Validation thresholds and default timeout.
        :param clock: Object providing wall_millis() and monotonic_millis().
        :param socket_factory: Called as socket_factory(family, type). Defaults to socket.socket.
        :param port: Destination UDP port.
        """
        self.config = config or SntpConfig()
        self.clock = clock or SystemClock()
        self.socket_factory = socket_factory or socket.socket
        self.port = port

    def query(
        self,
        address: str,
        timeout_millis: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> NtpSample:
        """
        Query a single NTP server.

        :param address: IP address (or host name) of the server.
        :param timeout_millis: How long to wait for the reply. Defaults to config.timeout_millis.
        :param cancel_event: When set, the query is abandoned and QueryCancelled raised.
        :return: A validated NtpSample.
        :raises SntpTimeout, HostUnreachable, InvalidNtpResponse, QueryCancelled:
        """
        if timeout_millis is None:
            timeout_millis = self.config.timeout_millis
        try:
            sample = self._exchange(address, timeout_millis, cancel_event)
        except SntpError as e:
            self.queries_count.labels(outcome=type(e).__name__).inc()
            logger.debug(
                f"SNTP request failed for {address}: {e}",
                extra={"address": address, "error": type(e).__name__},
            )
            raise

        self.queries_count.labels(outcome="success").inc()
        logger.debug(
            f"SNTP response from {address}: {sample.describe()}",
            extra={"address": address},
        )
        return sample

    def _exchange(
        self,
        address: str,
        timeout_millis: int,
        cancel_event: Optional[threading.Event],
    ) -> NtpSample:
        if cancel_event is not None and cancel_event.is_set():
            raise QueryCancelled(f"Query to {address} cancelled before send")

        try:
            with self.socket_factory(address_family(address), socket.SOCK_DGRAM) as sock:
                request_wall = self.clock.wall_millis()
                request_monotonic = self.clock.monotonic_millis()
                buffer = build_request(
                    request_wall, randomize=self.config.randomize_transmit_fraction
                )
                sock.sendto(buffer, (address, self.port))

                length = self._receive(sock, buffer, address, timeout_millis, cancel_event)
                response_monotonic = self.clock.monotonic_millis()
                response_wall = self.clock.wall_millis()
        except OSError as e:
            raise HostUnreachable(address, e) from e

        if cancel_event is not None and cancel_event.is_set():
            raise QueryCancelled(f"Query to {address} cancelled after receive")

        response = parse_response(buffer, length)
        context = NtpRequestContext(
            request_wall_millis=request_wall,
            request_monotonic_millis=request_monotonic,
            response_wall_millis=response_wall,
            response_monotonic_millis=response_monotonic,
            receive_time=response.receive_time,
            transmit_time=response.transmit_time,
        )
        return build_sample(
            response,
            context,
            self.config,
            now_wall_millis=self.clock.wall_millis(),
            address=address,
        )

    def _receive(
        self,
        sock: socket.socket,
        buffer: bytearray,
        address: str,
        timeout_millis: int,
        cancel_event: Optional[threading.Event],
    ) -> int:
        """Wait for one datagram, in slices when a cancel_event is given."""
        deadline = time.monotonic() + timeout_millis / 1000
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise QueryCancelled(f"Query to {address} cancelled while waiting")

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise SntpTimeout(address, timeout_millis)

            if cancel_event is not None:
                remaining = min(remaining, CANCEL_POLL_INTERVAL)
            sock.settimeout(remaining)

            try:
                length, _ = sock.recvfrom_into(buffer, NTP_PACKET_SIZE)
                return length
            except socket.timeout:
                continue

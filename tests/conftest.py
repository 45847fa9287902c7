from collections import deque
import socket
import struct
import threading
import time

import pytest

from sntp_consensus.codec import (
    INDEX_RECEIVE_TIME,
    INDEX_ROOT_DELAY,
    INDEX_TRANSMIT_TIME,
    NTP_PACKET_SIZE,
    encode_short,
    write_timestamp,
)
from sntp_consensus.configuration import PollConfig, SntpConfig
from sntp_consensus.sample import NtpSample

# Whole seconds decode exactly, see write_timestamp / read_timestamp
BASE_WALL_MILLIS = 1_700_000_000_000
TEST_ADDRESS = "192.0.2.10"


def build_response(
    receive_time,
    transmit_time,
    leap=0,
    version=3,
    mode=4,
    stratum=1,
    root_delay_millis=0.0,
    root_dispersion_millis=0.0,
):
    buffer = bytearray(NTP_PACKET_SIZE)
    buffer[0] = (leap << 6) | (version << 3) | mode
    buffer[1] = stratum
    struct.pack_into(
        "!II",
        buffer,
        INDEX_ROOT_DELAY,
        encode_short(root_delay_millis),
        encode_short(root_dispersion_millis),
    )
    write_timestamp(buffer, INDEX_RECEIVE_TIME, receive_time, randomize=False)
    write_timestamp(buffer, INDEX_TRANSMIT_TIME, transmit_time, randomize=False)
    return bytes(buffer)


def make_sample(offset=0, delay=10, address=TEST_ADDRESS, monotonic_offset=None):
    return NtpSample(
        clock_offset_millis=offset,
        monotonic_offset_millis=offset if monotonic_offset is None else monotonic_offset,
        round_trip_delay_millis=delay,
        root_delay_millis=1.0,
        root_dispersion_millis=1.0,
        stratum=1,
        leap=0,
        mode=4,
        address=address,
    )


class ScriptedClock:
    """Returns queued readings; the last reading repeats once the queue is empty."""

    def __init__(self, wall, monotonic):
        self._wall = deque(wall)
        self._monotonic = deque(monotonic)

    @staticmethod
    def _next(readings):
        return readings.popleft() if len(readings) > 1 else readings[0]

    def wall_millis(self):
        return self._next(self._wall)

    def monotonic_millis(self):
        return self._next(self._monotonic)


class FakeUdpSocket:
    def __init__(self, reply=None, send_error=None, on_receive=None):
        self.reply = reply
        self.send_error = send_error
        self.on_receive = on_receive
        self.sent = []
        self.timeouts = []
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()
        return False

    def settimeout(self, value):
        self.timeouts.append(value)

    def sendto(self, data, address):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((bytes(data), address))
        return len(data)

    def recvfrom_into(self, buffer, nbytes=0):
        if self.on_receive is not None:
            self.on_receive()
        if self.reply is None:
            time.sleep(min(self.timeouts[-1], 0.01))
            raise socket.timeout("timed out")
        buffer[: len(self.reply)] = self.reply
        return len(self.reply), (TEST_ADDRESS, 123)

    def close(self):
        self.closed = True


class FakeSocketFactory:
    """Hands out prepared sockets in order and records how they were opened."""

    def __init__(self, *sockets):
        self.sockets = deque(sockets)
        self.opened = []

    def __call__(self, family, kind):
        sock = self.sockets.popleft()
        self.opened.append((family, kind, sock))
        return sock


class ScriptedClient:
    """
    Stand-in for SntpClient.

    Each address has a queue of outcomes (NtpSample or exception instance); the
    last outcome repeats once the queue is empty. latency is either seconds for
    every query or a mapping of address to seconds.
    """

    def __init__(self, scripts, latency=0.0):
        self.scripts = {address: deque(outcomes) for address, outcomes in scripts.items()}
        self.latency = latency
        self.calls = {address: 0 for address in scripts}
        self.in_flight = {address: 0 for address in scripts}
        self.max_in_flight = {address: 0 for address in scripts}
        self._lock = threading.Lock()

    def query(self, address, timeout_millis=None, cancel_event=None):
        with self._lock:
            outcomes = self.scripts[address]
            outcome = outcomes.popleft() if len(outcomes) > 1 else outcomes[0]
            self.calls[address] += 1
            self.in_flight[address] += 1
            self.max_in_flight[address] = max(
                self.max_in_flight[address], self.in_flight[address]
            )
        try:
            latency = (
                self.latency.get(address, 0.0)
                if isinstance(self.latency, dict)
                else self.latency
            )
            if latency:
                time.sleep(latency)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            with self._lock:
                self.in_flight[address] -= 1


class RecordingSink:
    def __init__(self):
        self.samples = []

    def on_trusted_sample(self, sample):
        self.samples.append(sample)


@pytest.fixture(scope="function")
def sntp_config():
    return SntpConfig(
        root_delay_max=100.0,
        root_dispersion_max=100.0,
        server_response_delay_max=750,
        timeout_millis=200,
        randomize_transmit_fraction=False,
    )


@pytest.fixture(scope="function")
def poll_config():
    return PollConfig(
        repeat_count=5,
        retry_limit=3,
        max_addresses_considered=5,
        max_concurrent_queries_per_address=5,
    )


@pytest.fixture(scope="function")
def recording_sink():
    return RecordingSink()

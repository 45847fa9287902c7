from __future__ import annotations
from dataclasses import asdict, dataclass
from typing import Dict

import ntplib

from sntp_consensus.codec import NtpResponse
from sntp_consensus.configuration import SntpConfig
from sntp_consensus.exceptions import InvalidNtpResponse

STALE_REQUEST_MILLIS = 10_000
VALID_MODES = (4, 5)  # server, broadcast
LEAP_UNSYNCHRONIZED = 3


def truncating_div(numerator: int, denominator: int) -> int:
    """Integer division rounding toward zero."""
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


@dataclass(frozen=True)
class NtpRequestContext:
    """
    Timestamps around one request/response exchange, in milliseconds.

    receive_time (T1) and transmit_time (T2) are taken from the server
    response. The other four are local readings.
    """

    request_wall_millis: int
    request_monotonic_millis: int
    response_wall_millis: int
    response_monotonic_millis: int
    receive_time: int
    transmit_time: int

    def round_trip_delay(self) -> int:
        return (self.response_wall_millis - self.request_wall_millis) - (
            self.transmit_time - self.receive_time
        )

    def clock_offset(self) -> int:
        return truncating_div(
            (self.receive_time - self.request_wall_millis)
            + (self.transmit_time - self.response_wall_millis),
            2,
        )

    def monotonic_offset(self) -> int:
        return truncating_div(
            (self.receive_time - self.request_monotonic_millis)
            + (self.transmit_time - self.response_monotonic_millis),
            2,
        )


@dataclass(frozen=True)
class NtpSample:
    """A validated result of one SNTP query."""

    clock_offset_millis: int
    monotonic_offset_millis: int
    round_trip_delay_millis: int
    root_delay_millis: float
    root_dispersion_millis: float
    stratum: int
    leap: int
    mode: int
    address: str = ""

    @property
    def abs_round_trip_delay_millis(self) -> int:
        return abs(self.round_trip_delay_millis)

    def to_dict(self) -> Dict:
        return asdict(self)

    def describe(self) -> str:
        return (
            f"offset={self.clock_offset_millis}ms "
            f"delay={self.round_trip_delay_millis}ms "
            f"stratum={ntplib.stratum_to_text(self.stratum)} "
            f"mode={ntplib.mode_to_text(self.mode)} "
            f"leap={ntplib.leap_to_text(self.leap)}"
        )


def validate_response(
    response: NtpResponse,
    context: NtpRequestContext,
    config: SntpConfig,
    now_wall_millis: int,
) -> None:
    """
    Check a decoded response against the RFC-1305 derived sanity rules.

    Checks run in a fixed order and the first violation raises.

    :param now_wall_millis: Wall clock at the time validation runs.
    :raises InvalidNtpResponse: with the reason of the first failed check.
    """
    root_delay = response.root_delay_millis
    if root_delay > config.root_delay_max:
        raise InvalidNtpResponse("root_delay", root_delay, config.root_delay_max)

    root_dispersion = response.root_dispersion_millis
    if root_dispersion > config.root_dispersion_max:
        raise InvalidNtpResponse(
            "root_dispersion", root_dispersion, config.root_dispersion_max
        )

    if response.mode not in VALID_MODES:
        raise InvalidNtpResponse("mode", response.mode)

    if not 1 <= response.stratum <= 15:
        raise InvalidNtpResponse("stratum", response.stratum)

    if response.leap == LEAP_UNSYNCHRONIZED:
        raise InvalidNtpResponse("unsynchronized", response.leap)

    delay = abs(context.round_trip_delay())
    if delay >= config.server_response_delay_max:
        raise InvalidNtpResponse(
            "server_response_delay", delay, config.server_response_delay_max
        )

    # The wall clock may have jumped mid-exchange
    elapsed = abs(now_wall_millis - context.request_wall_millis)
    if elapsed >= STALE_REQUEST_MILLIS:
        raise InvalidNtpResponse("stale_request", elapsed, STALE_REQUEST_MILLIS)


def build_sample(
    response: NtpResponse,
    context: NtpRequestContext,
    config: SntpConfig,
    now_wall_millis: int,
    address: str = "",
) -> NtpSample:
    """Validate a response and compute its offsets."""
    validate_response(response, context, config, now_wall_millis)
    return NtpSample(
        clock_offset_millis=context.clock_offset(),
        monotonic_offset_millis=context.monotonic_offset(),
        round_trip_delay_millis=context.round_trip_delay(),
        root_delay_millis=response.root_delay_millis,
        root_dispersion_millis=response.root_dispersion_millis,
        stratum=response.stratum,
        leap=response.leap,
        mode=response.mode,
        address=address,
    )

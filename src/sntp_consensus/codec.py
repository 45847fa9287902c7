"""
Wire format of the 48 byte SNTP packet (RFC-1305 / RFC-4330 field offsets).

Timestamps are converted between the NTP 32.32 fixed point format (seconds
since 1900-01-01) and integer milliseconds since the unix epoch.
"""
from __future__ import annotations
from dataclasses import dataclass
import random
import struct
from typing import Union

from sntp_consensus.exceptions import InvalidNtpResponse

NTP_PORT = 123
NTP_PACKET_SIZE = 48
NTP_MODE_CLIENT = 3
NTP_VERSION = 3

INDEX_VERSION = 0
INDEX_STRATUM = 1
INDEX_ROOT_DELAY = 4
INDEX_ROOT_DISPERSION = 8
INDEX_ORIGINATE_TIME = 24
INDEX_RECEIVE_TIME = 32
INDEX_TRANSMIT_TIME = 40

# 70 years plus 17 leap days
OFFSET_1900_TO_1970 = ((365 * 70) + 17) * 24 * 60 * 60

FRACTION_SCALE = 0x100000000
SHORT_UNITS_PER_MILLI = 65.536

Buffer = Union[bytes, bytearray, memoryview]


def read_unsigned_32(buffer: Buffer, offset: int) -> int:
    """Read an unsigned 32 bit big endian number at offset."""
    return struct.unpack_from("!I", buffer, offset)[0]


def write_timestamp(
    buffer: bytearray, offset: int, time_millis: int, randomize: bool = True
) -> None:
    """
    Write unix epoch milliseconds as an NTP timestamp at offset.

    When randomize is set the lowest byte of the fraction is replaced with
    random data. Only byte offset + 7 is touched, so the seconds field is
    never affected.
    """
    seconds, milliseconds = divmod(time_millis, 1000)
    seconds += OFFSET_1900_TO_1970
    fraction = milliseconds * FRACTION_SCALE // 1000
    struct.pack_into("!II", buffer, offset, seconds & 0xFFFFFFFF, fraction)

    if randomize:
        buffer[offset + 7] = random.randrange(256)


def read_timestamp(buffer: Buffer, offset: int) -> int:
    """Read the NTP timestamp at offset as unix epoch milliseconds."""
    seconds = read_unsigned_32(buffer, offset)
    fraction = read_unsigned_32(buffer, offset + 4)
    return (seconds - OFFSET_1900_TO_1970) * 1000 + fraction * 1000 // FRACTION_SCALE


def decode_short(raw: int) -> float:
    """Convert an NTP Short (16.16 fixed point seconds) to milliseconds."""
    return raw / SHORT_UNITS_PER_MILLI


def encode_short(millis: float) -> int:
    """Convert milliseconds to an NTP Short (16.16 fixed point seconds)."""
    return int(round(millis * SHORT_UNITS_PER_MILLI)) & 0xFFFFFFFF


def build_request(time_millis: int, randomize: bool = True) -> bytearray:
    """
    Build a client request packet.

    :param time_millis: Local wall clock at send, written as the transmit timestamp.
    :param randomize: Randomize the low order byte of the transmit fraction.
    :return: A 48 byte buffer, mode 3 (client), version 3.
    """
    buffer = bytearray(NTP_PACKET_SIZE)
    # mode is in the low 3 bits, version in bits 3-5
    buffer[INDEX_VERSION] = NTP_MODE_CLIENT | (NTP_VERSION << 3)
    write_timestamp(buffer, INDEX_TRANSMIT_TIME, time_millis, randomize=randomize)
    return buffer


@dataclass(frozen=True)
class NtpResponse:
    """Decoded fields of a server response. Nothing here is validated yet."""

    leap: int
    version: int
    mode: int
    stratum: int
    root_delay: int
    root_dispersion: int
    originate_time: int
    receive_time: int
    transmit_time: int

    @property
    def root_delay_millis(self) -> float:
        return decode_short(self.root_delay)

    @property
    def root_dispersion_millis(self) -> float:
        return decode_short(self.root_dispersion)


def parse_response(buffer: Buffer, length: int = None) -> NtpResponse:
    """
    Decode a server response.

    :param buffer: The receive buffer.
    :param length: Number of bytes actually received. Defaults to len(buffer).
    :raises InvalidNtpResponse: if fewer than 48 bytes were received.
    """
    length = len(buffer) if length is None else length
    if length < NTP_PACKET_SIZE:
        raise InvalidNtpResponse("packet_size", actual=length)

    header = buffer[INDEX_VERSION] & 0xFF
    return NtpResponse(
        leap=(header >> 6) & 0x3,
        version=(header >> 3) & 0x7,
        mode=header & 0x7,
        stratum=buffer[INDEX_STRATUM] & 0xFF,
        root_delay=read_unsigned_32(buffer, INDEX_ROOT_DELAY),
        root_dispersion=read_unsigned_32(buffer, INDEX_ROOT_DISPERSION),
        originate_time=read_timestamp(buffer, INDEX_ORIGINATE_TIME),
        receive_time=read_timestamp(buffer, INDEX_RECEIVE_TIME),
        transmit_time=read_timestamp(buffer, INDEX_TRANSMIT_TIME),
    )

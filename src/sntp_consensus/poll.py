#!/usr/bin/env python
# -*- coding: utf-8 -*-
# ----------------------------------------------------------------------------
# Created By  : Matthew Davidson
# Created Date: 2023-01-23
# version ='1.0'
# ---------------------------------------------------------------------------
"""Parallel polling of NTP addresses and selection of one trusted sample"""
# ---------------------------------------------------------------------------
from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor, as_completed
import logging
import threading
from typing import Iterable, List, Optional, Sequence

from prometheus_client import Counter, Gauge

from sntp_consensus.client import SntpClient
from sntp_consensus.configuration import PollConfig
from sntp_consensus.exceptions import (
    HostUnreachable,
    NoTrustedResponse,
    QueryCancelled,
    SntpError,
    SntpTimeout,
)
from sntp_consensus.sample import NtpSample

logger = logging.getLogger(__name__)

# Failures of a single attempt that are worth retrying as the same attempt
RETRYABLE_ERRORS = (SntpTimeout, HostUnreachable)


def unique_addresses(candidates: Iterable[str]) -> List[str]:
    """Remove duplicate addresses, keeping the first occurrence."""
    return list(dict.fromkeys(candidates))


def select_least_round_trip_delay(samples: Sequence[NtpSample]) -> NtpSample:
    """
    Return the sample with the smallest absolute round-trip delay.

    Ties go to the earliest sample in the sequence.
    """
    if not samples:
        raise ValueError("No samples to select from")
    return min(samples, key=lambda sample: sample.abs_round_trip_delay_millis)


def select_median_clock_offset(samples: Sequence[NtpSample]) -> NtpSample:
    """
    Return the sample with the median clock offset.

    The samples are sorted by clock offset and the element at index len // 2 is
    returned, so an even count selects the upper middle sample.
    """
    if not samples:
        raise ValueError("No samples to select from")
    ordered = sorted(samples, key=lambda sample: sample.clock_offset_millis)
    return ordered[len(ordered) // 2]


def settled_winners(
    winners: Sequence[Optional[NtpSample]],
    settled: Sequence[bool],
    limit: int,
) -> Optional[List[NtpSample]]:
    """
    Return the winners of the leading candidates once they can no longer change.

    Candidates are walked in order. The result is ready when `limit` winners
    are found before the first unsettled candidate, or when every candidate
    has settled. Returns None while an earlier candidate is still pending.
    """
    collected = []
    for winner, done in zip(winners, settled):
        if not done:
            return None
        if winner is not None:
            collected.append(winner)
            if len(collected) == limit:
                break
    return collected


class ChainedEvent(threading.Event):
    """An Event that also reads as set once its parent event is set."""

    def __init__(self, parent: Optional[threading.Event] = None):
        super().__init__()
        self.parent = parent

    def is_set(self) -> bool:
        return super().is_set() or (self.parent is not None and self.parent.is_set())


class PollOrchestrator:
    """
    Turns a set of candidate addresses into one trusted NtpSample.

    Every address is queried repeat_count times and keeps its lowest delay
    response. The winners of the first max_addresses_considered addresses, in
    candidate order, are then reduced to the one with the median clock offset.
    """

    poll_rounds_count = Counter(
        "sntp_poll_rounds_total",
        "Total number of SNTP poll rounds, by outcome",
        labelnames=("outcome",),
    )
    trusted_clock_offset = Gauge(
        "sntp_trusted_clock_offset_millis",
        "Clock offset of the last trusted SNTP sample",
    )
    trusted_round_trip_delay = Gauge(
        "sntp_trusted_round_trip_delay_millis",
        "Round-trip delay of the last trusted SNTP sample",
    )

    def __init__(
        self,
        client: SntpClient,
        poll_config: Optional[PollConfig] = None,
        sinks: Optional[List] = None,
    ):
        """
        :param client: Performs the individual queries.
        :param poll_config: Repeat, retry and concurrency settings.
        :param sinks: Objects with an on_trusted_sample(sample) method, called
            once per successful round.
        """
        self.client = client
        self.poll_config = (poll_config or PollConfig()).validate()
        self.sinks = list(sinks) if sinks else []
        logger.debug("Poll orchestrator configured", extra=dict(self.poll_config))

    def add_sink(self, sink) -> None:
        if not callable(getattr(sink, "on_trusted_sample", None)):
            raise TypeError("Sink must provide an on_trusted_sample(sample) method")
        self.sinks.append(sink)

    def resolve(
        self,
        candidates: Iterable[str],
        cancel_event: Optional[threading.Event] = None,
    ) -> NtpSample:
        """
        Run one poll round.

        :param candidates: Resolved server addresses.
        :param cancel_event: Set to abandon the round. No sample is reported
            after cancellation.
        :return: The trusted sample.
        :raises NoTrustedResponse: if no address produced a valid sample.
        :raises QueryCancelled: if cancel_event was set during the round.
        """
        addresses = unique_addresses(candidates)
        config = self.poll_config
        round_event = ChainedEvent(cancel_event)

        winners: List[Optional[NtpSample]] = [None] * len(addresses)
        errors: List[Optional[Exception]] = [None] * len(addresses)
        settled = [False] * len(addresses)
        working_set: Optional[List[NtpSample]] = [] if not addresses else None

        if addresses:
            executor = ThreadPoolExecutor(
                max_workers=config.max_workers or len(addresses),
                thread_name_prefix="sntp-address",
            )
            try:
                futures = {
                    executor.submit(self._best_or_error, address, round_event): index
                    for index, address in enumerate(addresses)
                }
                for future in as_completed(futures):
                    index = futures[future]
                    winners[index], errors[index] = future.result()
                    settled[index] = True
                    working_set = settled_winners(
                        winners, settled, config.max_addresses_considered
                    )
                    if working_set is not None or round_event.is_set():
                        break
            finally:
                # Attempts still running belong to addresses that cannot be selected
                round_event.set()
                executor.shutdown(wait=False, cancel_futures=True)

        if cancel_event is not None and cancel_event.is_set():
            self.poll_rounds_count.labels(outcome="cancelled").inc()
            raise QueryCancelled("Poll round cancelled")

        if not working_set:
            self.poll_rounds_count.labels(outcome="failure").inc()
            last_error = next((e for e in reversed(errors) if e is not None), None)
            message = f"No trusted response from {len(addresses)} NTP address(es)"
            if last_error is not None:
                raise NoTrustedResponse(
                    f"{message}. Last error: {last_error}", last_error
                ) from last_error
            raise NoTrustedResponse(message)

        trusted = select_median_clock_offset(working_set)
        if cancel_event is not None and cancel_event.is_set():
            self.poll_rounds_count.labels(outcome="cancelled").inc()
            raise QueryCancelled("Poll round cancelled before reporting")

        logger.info(
            f"Trusted sample from {trusted.address}: {trusted.describe()}",
            extra={
                "address": trusted.address,
                "addresses_considered": len(working_set),
            },
        )
        self.poll_rounds_count.labels(outcome="success").inc()
        self.trusted_clock_offset.set(trusted.clock_offset_millis)
        self.trusted_round_trip_delay.set(trusted.abs_round_trip_delay_millis)

        for sink in self.sinks:
            sink.on_trusted_sample(trusted)
        return trusted

    def _best_or_error(self, address: str, cancel_event: threading.Event):
        try:
            return self.best_response_from_address(address, cancel_event), None
        except SntpError as e:
            return None, e

    def best_response_from_address(
        self,
        address: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> NtpSample:
        """
        Query one address repeat_count times and keep the lowest delay response.

        At most max_concurrent_queries_per_address attempts are in flight at a
        time. Ties on delay go to the lowest attempt index, whatever order the
        attempts complete in.

        :raises SntpError: the last attempt error, if no attempt succeeded.
        """
        cancel_event = cancel_event or threading.Event()
        config = self.poll_config

        with ThreadPoolExecutor(
            max_workers=min(config.max_concurrent_queries_per_address, config.repeat_count),
            thread_name_prefix=f"sntp-{address}",
        ) as executor:
            futures = [
                executor.submit(self._attempt, address, attempt, cancel_event)
                for attempt in range(config.repeat_count)
            ]

        successes = []
        last_error = None
        for future in futures:
            try:
                successes.append(future.result())
            except SntpError as e:
                last_error = e

        if not successes:
            if cancel_event.is_set():
                raise QueryCancelled(f"Polling of {address} cancelled")
            logger.warning(
                f"No valid response from {address} after {config.repeat_count} attempts",
                extra={"address": address, "error": str(last_error)},
            )
            raise last_error

        best = select_least_round_trip_delay(successes)
        logger.debug(
            f"Best of {len(successes)} responses from {address}: {best.describe()}",
            extra={"address": address},
        )
        return best

    def _attempt(
        self, address: str, attempt: int, cancel_event: threading.Event
    ) -> NtpSample:
        """One attempt, retried up to retry_limit times on network errors."""
        retries = 0
        while True:
            if cancel_event.is_set():
                raise QueryCancelled(f"Attempt #{attempt} against {address} cancelled")
            try:
                return self.client.query(address, cancel_event=cancel_event)
            except RETRYABLE_ERRORS as e:
                if retries >= self.poll_config.retry_limit:
                    logger.warning(
                        f"Attempt #{attempt} against {address} failed after {retries} retries: {e}",
                        extra={"address": address, "attempt": attempt},
                    )
                    raise
                retries += 1
                logger.debug(
                    f"Retry #{retries} of attempt #{attempt} against {address}: {e}",
                    extra={"address": address, "attempt": attempt},
                )
            except QueryCancelled:
                raise
            except SntpError as e:
                logger.info(
                    f"Attempt #{attempt} against {address} rejected: {e}",
                    extra={"address": address, "attempt": attempt},
                )
                raise

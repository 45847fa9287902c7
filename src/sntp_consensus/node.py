#!/usr/bin/env python
# -*- coding: utf-8 -*-
# ----------------------------------------------------------------------------
# Created By  : Matthew Davidson
# Created Date: 2023-01-23
# version ='1.0'
# ---------------------------------------------------------------------------
"""One-shot network time synchronization against an NTP pool"""
# ---------------------------------------------------------------------------
from __future__ import annotations
import logging
from pathlib import Path
import threading
import time
from typing import Iterable, List, Optional, Union

from sntp_consensus.client import SntpClient
from sntp_consensus.configuration import (
    MQTTBrokerConfig,
    MQTTSinkConfig,
    PollConfig,
    ReachabilityConfig,
    SntpConfig,
    initialize_config,
)
from sntp_consensus.poll import PollOrchestrator
from sntp_consensus.resolver import is_reachable, resolve_all
from sntp_consensus.sample import NtpSample
from sntp_consensus.sinks import MQTTSampleSink, OffsetStore

logger = logging.getLogger(__name__)


class SntpNode:
    """
    Resolves an NTP pool, polls its addresses and keeps the trusted sample.

    The latest sample is available from offset_store; any additional sinks
    receive it too.
    """

    @classmethod
    def from_config_file(
        cls,
        config_file: Union[str, Path],
        secrets_file: Optional[Union[str, Path]] = None,
        **kwargs,
    ) -> SntpNode:
        """
        Instantiate an SntpNode from a configuration file.

        :param config_file: Path to the configuration file.
        :param secrets_file: Path to the secrets file (optional).
        :param kwargs: Additional keyword arguments. See SntpNode.__init__ for details. These will override the config file.
        :return: An initialized SntpNode instance.
        """
        config = initialize_config(config=config_file, secrets=secrets_file)
        # The keyword arguments will override the configuration file
        combined_args = {**config, **kwargs}
        return cls(**combined_args)

    def __init__(
        self,
        ntp_pool: str,
        name: Optional[str] = None,
        sntp_config: Optional[SntpConfig] = None,
        poll_config: Optional[PollConfig] = None,
        reachability_config: Optional[ReachabilityConfig] = None,
        mqtt_sink_config: Optional[MQTTSinkConfig] = None,
        broker_config: Optional[MQTTBrokerConfig] = None,
        client: Optional[SntpClient] = None,
        sinks: Optional[List] = None,
    ):
        """
        :param ntp_pool: Host name resolved to the candidate addresses.
        :param name: The name of the node.
        :param sntp_config: Thresholds for a single query.
        :param poll_config: Redundancy settings for a poll round.
        :param reachability_config: TCP pre-filtering of resolved addresses.
        :param mqtt_sink_config: Publishing of trusted samples to MQTT.
        :param broker_config: The MQTT broker, required when the MQTT sink is enabled.
        :param client: An SntpClient to use instead of one built from sntp_config.
        :param sinks: Extra sinks receiving every trusted sample.
        """
        self.name = name or f"{self.__class__.__name__}_{time.time_ns()}"
        self.ntp_pool = ntp_pool
        self.reachability_config = reachability_config or ReachabilityConfig()

        self.client = client or SntpClient(config=sntp_config)
        self.offset_store = OffsetStore()
        self.orchestrator = PollOrchestrator(
            self.client, poll_config, sinks=[self.offset_store]
        )
        for sink in sinks or []:
            self.orchestrator.add_sink(sink)

        self.mqtt_sink = None
        if mqtt_sink_config is not None and mqtt_sink_config.enabled:
            if broker_config is None:
                raise ValueError("broker_config is required when the MQTT sink is enabled")
            self.mqtt_sink = MQTTSampleSink(broker_config, mqtt_sink_config).connect()
            self.orchestrator.add_sink(self.mqtt_sink)

        # Set up custom logger for node with additional fields
        self.logger = logging.LoggerAdapter(
            logger,
            extra={
                "node_name": self.name,
                "ntp_pool": self.ntp_pool,
            },
        )

    @property
    def sample(self) -> Optional[NtpSample]:
        """The latest trusted sample, or None if never synchronized."""
        return self.offset_store.sample

    def candidate_addresses(self, ntp_pool: Optional[str] = None) -> List[str]:
        """Resolve the pool and keep the addresses that pass the reachability probe."""
        ntp_pool = ntp_pool or self.ntp_pool
        addresses = resolve_all(ntp_pool)
        if not self.reachability_config.enabled:
            return addresses

        reachable = [
            address
            for address in addresses
            if is_reachable(
                address,
                port=self.reachability_config.port,
                timeout_millis=self.reachability_config.timeout_millis,
            )
        ]
        self.logger.debug(
            f"{len(reachable)} of {len(addresses)} addresses of {ntp_pool} reachable",
        )
        return reachable

    def synchronize(
        self,
        ntp_pool: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> NtpSample:
        """
        Resolve the pool and run one poll round against its addresses.

        :raises AddressResolutionError: if the pool does not resolve.
        :raises NoTrustedResponse: if no address produced a valid sample.
        """
        addresses = self.candidate_addresses(ntp_pool)
        return self.synchronize_addresses(addresses, cancel_event=cancel_event)

    def synchronize_addresses(
        self,
        addresses: Iterable[str],
        cancel_event: Optional[threading.Event] = None,
    ) -> NtpSample:
        """Run one poll round against already resolved addresses."""
        addresses = list(addresses)
        self.logger.info(f"Polling {len(addresses)} NTP address(es)")
        sample = self.orchestrator.resolve(addresses, cancel_event=cancel_event)
        self.logger.info(
            f"Synchronized: clock offset {sample.clock_offset_millis}ms",
            extra={"address": sample.address},
        )
        return sample

    def close(self) -> None:
        if self.mqtt_sink is not None:
            self.mqtt_sink.disconnect()
            self.mqtt_sink = None

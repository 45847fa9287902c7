from __future__ import annotations
import json
import logging
import threading
import time
from typing import Optional

import paho.mqtt.client as mqtt

from sntp_consensus.configuration import MQTTBrokerConfig, MQTTSinkConfig
from sntp_consensus.sample import NtpSample

logger = logging.getLogger(__name__)


class SampleSink:
    """Receives the trusted sample of every successful poll round."""

    def on_trusted_sample(self, sample: NtpSample) -> None:
        raise NotImplementedError(
            "on_trusted_sample must be implemented in child class"
        )


class OffsetStore(SampleSink):
    """
    Holds the latest trusted sample.

    A failed round never reaches the store, so callers can tell "never
    synchronized" (sample is None) from "synchronized earlier".
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sample: Optional[NtpSample] = None

    @property
    def sample(self) -> Optional[NtpSample]:
        with self._lock:
            return self._sample

    def has_sample(self) -> bool:
        return self.sample is not None

    def clear(self) -> None:
        with self._lock:
            self._sample = None

    def on_trusted_sample(self, sample: NtpSample) -> None:
        with self._lock:
            self._sample = sample


class MQTTSampleSink(SampleSink):
    """Publishes trusted samples as JSON to an MQTT topic."""

    def __init__(
        self,
        broker_config: MQTTBrokerConfig,
        sink_config: Optional[MQTTSinkConfig] = None,
        client: Optional[mqtt.Client] = None,
    ):
        """
        :param broker_config: The configuration for the MQTT broker.
        :param sink_config: Topic, QoS and retain flag.
        :param client: An existing paho client. One is created when omitted.
        """
        self.broker_config = broker_config
        self.sink_config = sink_config or MQTTSinkConfig(enabled=True)
        self.hostname = broker_config.hostname
        self.port = broker_config.port

        if client is None:
            client = mqtt.Client(
                mqtt.CallbackAPIVersion.VERSION2,
                client_id=self.sink_config.client_id or "",
                protocol=mqtt.MQTTv5,
            )
            client.username_pw_set(broker_config.username, broker_config.password)
        self.client = client

    def connect(self) -> MQTTSampleSink:
        """
        Connect to the broker, trying up to reconnect_attempts times and
        waiting broker_config.timeout seconds between tries.
        """
        attempts = max(1, self.broker_config.reconnect_attempts)
        for attempt in range(1, attempts + 1):
            try:
                error_code = self.client.connect(
                    host=self.hostname,
                    port=self.port,
                    keepalive=self.broker_config.keepalive,
                )
            except OSError as e:
                logger.error(
                    f"Failed to connect to broker at {self.hostname}:{self.port}: {e}",
                )
                error_code = None

            if error_code == 0:
                self.client.loop_start()
                logger.info(
                    f"Connected to broker at {self.hostname}:{self.port}",
                    extra=dict(self.sink_config),
                )
                return self

            logger.warning(f"Connection attempt to {self.hostname}:{self.port} failed")
            if attempt < attempts:
                logger.info(f"Retry attempt #{attempt + 1} in {self.broker_config.timeout}s")
                time.sleep(self.broker_config.timeout)

        logger.error(
            f"Giving up on broker at {self.hostname}:{self.port} after {attempts} attempts"
        )
        return self

    def disconnect(self) -> None:
        self.client.loop_stop()
        self.client.disconnect()
        logger.info(f"Disconnected from broker at {self.hostname}:{self.port}")

    def on_trusted_sample(self, sample: NtpSample) -> None:
        payload = json.dumps(sample.to_dict())
        result = self.client.publish(
            self.sink_config.topic,
            payload,
            qos=self.sink_config.qos,
            retain=self.sink_config.retain,
        )
        if result.rc != 0:
            logger.error(
                f"{mqtt.error_string(result.rc)}, failed to publish trusted sample",
                extra={"topic": self.sink_config.topic},
            )
        else:
            logger.debug(
                f"Published trusted sample to {self.sink_config.topic}",
                extra={"topic": self.sink_config.topic},
            )

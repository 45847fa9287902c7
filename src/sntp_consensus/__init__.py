__version__ = "0.1.0"

from sntp_consensus.client import SntpClient
from sntp_consensus.poll import PollOrchestrator
from sntp_consensus.node import SntpNode
from sntp_consensus.sample import NtpSample, NtpRequestContext
from sntp_consensus.sinks import OffsetStore, MQTTSampleSink, SampleSink
from sntp_consensus.exceptions import (
    SntpError,
    SntpTimeout,
    HostUnreachable,
    InvalidNtpResponse,
    QueryCancelled,
    AddressResolutionError,
    NoTrustedResponse,
)
from sntp_consensus.configuration import (
    initialize_config,
    initialize_logging,
    SntpConfig,
    PollConfig,
    ReachabilityConfig,
    MQTTBrokerConfig,
    MQTTSinkConfig,
)

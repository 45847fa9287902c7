import sys

from sntp_consensus.configuration import initialize_logging
from sntp_consensus.exceptions import SntpError
from sntp_consensus.node import SntpNode

logger = initialize_logging("./config/logging.yaml")


def synchronize_once(config_file) -> int:
    """Run one poll round against the configured NTP pool."""
    node = SntpNode.from_config_file(config_file=config_file)
    try:
        sample = node.synchronize()
    finally:
        node.close()
    logger.info(
        f"Clock offset {sample.clock_offset_millis}ms, "
        f"monotonic offset {sample.monotonic_offset_millis}ms, "
        f"round-trip delay {sample.round_trip_delay_millis}ms from {sample.address}"
    )
    return 0


if __name__ == "__main__":
    try:
        sys.exit(synchronize_once("config/config.toml"))
    except SntpError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Exiting")
        sys.exit(0)

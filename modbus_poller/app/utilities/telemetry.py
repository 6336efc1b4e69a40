"""
Shared poller logger.

Modules log through `logger` with `extra={"component": ...}`. Importing this
module installs a compact JSON console setup unless logging was configured
already; the service runtime replaces it with the settings-driven file setup.
"""

import os

from modbus_poller.app.utilities.logging_config import (
    LoggingConfig,
    LogFormat,
    LogDestination,
    configure_logging,
    get_logger,
    logging_manager
)

LOG_LEVEL_VARIABLE = "MODBUS_POLLER_LOG_LEVEL"


def bootstrap_config() -> LoggingConfig:
    """Console logging used until the runtime applies its own settings"""
    return LoggingConfig(
        level=os.getenv(LOG_LEVEL_VARIABLE, "INFO"),
        format_type=LogFormat.JSON_COMPACT,
        enable_console=True,
        console_destination=LogDestination.STDOUT
    )


def initialize_logging(config: LoggingConfig = None):
    configure_logging(config or bootstrap_config())
    return get_logger()


# Handlers are swapped in place on reconfiguration, so this object stays valid
logger = get_logger() if logging_manager.is_configured else initialize_logging()

"""
Logging presets for the poller.

- Service: rotating log file from Settings, optional console mirror on stderr,
  per-exchange frame dumps held back to INFO
- Testing: warnings only, plain text on stderr
"""

from modbus_poller.app.config import Settings
from modbus_poller.app.utilities.logging_config import LoggingConfig, LogLevel, LogDestination
from modbus_poller.app.utilities.telemetry import initialize_logging


def setup_service_logging(settings: Settings):
    """Configure file and console logging from the service settings"""
    config = LoggingConfig(
        level=settings.log_level,
        format_type=settings.log_format.lower(),
        enable_console=settings.log_to_console,
        console_destination=LogDestination.STDERR,
        log_file_path=settings.log_file_path or None,
        max_file_size=settings.log_max_bytes,
        backup_count=settings.log_backup_count,
        component_filters={
            "frame_codec": LogLevel.INFO,
        }
    )

    logger = initialize_logging(config)
    logger.info("Service logging configured", extra={
        "component": "logging",
        "log_file_path": settings.log_file_path,
        "log_level": config.level.name,
        "log_format": config.format_type.value
    })
    return logger


def setup_testing_logging():
    return initialize_logging(LoggingConfig(
        level=LogLevel.WARNING,
        format_type="standard",
        enable_console=True,
        console_destination=LogDestination.STDERR,
        capture_warnings=False
    ))

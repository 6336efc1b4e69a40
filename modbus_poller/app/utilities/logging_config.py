import logging
import logging.handlers
import json
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union
from enum import Enum


class LogLevel(Enum):
    CRITICAL = logging.CRITICAL
    ERROR = logging.ERROR
    WARNING = logging.WARNING
    INFO = logging.INFO
    DEBUG = logging.DEBUG

    @classmethod
    def parse(cls, level: Union["LogLevel", str, int]) -> "LogLevel":
        """Accept 'INFO', 'info', logging.INFO or a LogLevel"""
        if isinstance(level, cls):
            return level
        if isinstance(level, int):
            return cls(level)
        return cls[level.strip().upper()]


class LogFormat(Enum):
    JSON_COMPACT = "json_compact"
    JSON_PRETTY = "json_pretty"
    STANDARD = "standard"
    DETAILED = "detailed"


class LogDestination(Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    NONE = "none"


# Attributes every LogRecord carries; anything else came in through extra=
_RESERVED_ATTRS = set(vars(logging.LogRecord('', 0, '', 0, '', (), None)).keys())
_RESERVED_ATTRS.update(['message', 'asctime', 'exc_text', 'stack_info', 'taskName'])

TEXT_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def record_extras(record: logging.LogRecord) -> Dict:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith('_')
    }


class JsonFormatter(logging.Formatter):
    """One JSON object per line; extras are nested under "extra" """

    indent: Optional[int] = None

    def format(self, record):
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        extras = record_extras(record)
        if extras:
            payload["extra"] = extras

        separators = (',', ':') if self.indent is None else None
        return json.dumps(payload, ensure_ascii=False, indent=self.indent, separators=separators, default=str)


class JsonPrettyFormatter(JsonFormatter):
    indent = 2


class StandardFormatter(logging.Formatter):
    """Plain text; the component tag and remaining extras trail the message"""

    text_format = '%(asctime)s - %(levelname)s - %(message)s'

    def __init__(self):
        super().__init__(fmt=self.text_format, datefmt=TEXT_DATE_FORMAT)

    def format(self, record):
        text = super().format(record)
        extras = record_extras(record)
        component = extras.pop("component", None)
        if component:
            text = f"{text} [{component}]"
        if extras:
            text += " " + " ".join(f"{key}={value}" for key, value in extras.items())
        return text


class DetailedFormatter(StandardFormatter):
    text_format = '%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(lineno)d - %(message)s'


FORMATTERS = {
    LogFormat.JSON_COMPACT: JsonFormatter,
    LogFormat.JSON_PRETTY: JsonPrettyFormatter,
    LogFormat.STANDARD: StandardFormatter,
    LogFormat.DETAILED: DetailedFormatter,
}


@dataclass
class LoggingConfig:
    """Logging setup for the poller; string values are normalized on creation"""
    level: Union[LogLevel, str] = LogLevel.INFO
    format_type: Union[LogFormat, str] = LogFormat.JSON_COMPACT
    logger_name: str = "modbus_poller"
    enable_console: bool = True
    console_destination: Union[LogDestination, str] = LogDestination.STDOUT
    log_file_path: Optional[str] = None
    max_file_size: int = 10 * 1024 * 1024
    backup_count: int = 5
    # Minimum level per `component` extra
    component_filters: Dict[str, Union[LogLevel, str]] = field(default_factory=dict)
    exclude_components: List[str] = field(default_factory=list)
    capture_warnings: bool = True

    def __post_init__(self):
        self.level = LogLevel.parse(self.level)
        self.format_type = LogFormat(self.format_type)
        self.console_destination = LogDestination(self.console_destination)
        self.component_filters = {
            component: LogLevel.parse(level) for component, level in self.component_filters.items()
        }

    @property
    def has_filters(self) -> bool:
        return bool(self.component_filters or self.exclude_components)


class ComponentFilter(logging.Filter):
    """Drops records by their `component` extra"""

    def __init__(self, component_filters: Dict[str, LogLevel], exclude_components: List[str]):
        super().__init__()
        self.component_filters = component_filters
        self.exclude_components = set(exclude_components)

    def filter(self, record):
        component = getattr(record, "component", None)
        if component is None:
            return True
        if component in self.exclude_components:
            return False

        minimum = self.component_filters.get(component)
        return minimum is None or record.levelno >= minimum.value


class LoggingManager:
    """Owns the handlers of the project logger and hands out child loggers"""

    def __init__(self):
        self._loggers: Dict[str, logging.Logger] = {}
        self._config: Optional[LoggingConfig] = None

    @property
    def is_configured(self) -> bool:
        return self._config is not None

    def configure(self, config: LoggingConfig) -> None:
        self._config = config
        if config.capture_warnings:
            logging.captureWarnings(True)

        root = logging.getLogger(config.logger_name)
        root.setLevel(config.level.value)
        root.propagate = False

        # Reconfiguration swaps handlers on the same logger object
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()

        handlers = self._build_handlers(config)
        for handler in handlers:
            handler.setLevel(config.level.value)
            handler.setFormatter(FORMATTERS[config.format_type]())
            if config.has_filters:
                handler.addFilter(ComponentFilter(config.component_filters, config.exclude_components))
            root.addHandler(handler)
        if not handlers:
            root.addHandler(logging.NullHandler())

        self._loggers[config.logger_name] = root

    def get_logger(self, name: Optional[str] = None) -> logging.Logger:
        """The project logger, or a child of it when a name is given"""
        if self._config is None:
            raise RuntimeError("Logging not configured. Call configure() first.")

        base = self._config.logger_name
        logger_name = name or base
        if logger_name != base and not logger_name.startswith(base + "."):
            logger_name = f"{base}.{logger_name}"
        if logger_name not in self._loggers:
            self._loggers[logger_name] = logging.getLogger(logger_name)
        return self._loggers[logger_name]

    @staticmethod
    def _build_handlers(config: LoggingConfig) -> List[logging.Handler]:
        handlers: List[logging.Handler] = []

        if config.enable_console and config.console_destination != LogDestination.NONE:
            stream = sys.stdout if config.console_destination == LogDestination.STDOUT else sys.stderr
            handlers.append(logging.StreamHandler(stream))

        if config.log_file_path:
            path = Path(config.log_file_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.handlers.RotatingFileHandler(
                filename=str(path),
                maxBytes=config.max_file_size,
                backupCount=config.backup_count,
                encoding="utf-8"
            ))

        return handlers


logging_manager = LoggingManager()


def configure_logging(config: LoggingConfig) -> None:
    logging_manager.configure(config)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging_manager.get_logger(name)

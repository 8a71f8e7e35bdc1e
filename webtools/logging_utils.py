"""
Structured JSON logging shared by every webtools module.

Records are written to stderr (stdout belongs to the MCP stdio transport).
Pass ``extra={"event_type": "..."}`` to name the event; any other extra keys
are copied into the JSON line as-is.
"""
import json
import logging
import sys

ROOT_LOGGER_NAME = "webtools"


class JsonFormatter(logging.Formatter):
    CORE_LOG_KEYS = {
        'args', 'asctime', 'created', 'exc_info', 'exc_text', 'filename',
        'funcName', 'levelname', 'levelno', 'lineno', 'message', 'module',
        'msecs', 'msg', 'name', 'pathname', 'process', 'processName',
        'relativeCreated', 'stack_info', 'thread', 'threadName', 'taskName',
        'timestamp', 'level', 'function', 'line',
    }

    def format(self, record):
        log_entry = {
            'timestamp': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'message': record.getMessage(),
        }
        log_entry['event'] = getattr(record, 'event_type', record.msg.split(' ')[0] if isinstance(record.msg, str) else 'generic_event')
        for key, value in record.__dict__.items():
            if key not in self.CORE_LOG_KEYS and key not in log_entry and key != 'event_type':
                log_entry[key] = value
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def get_logger(name: str) -> logging.Logger:
    """Returns a child of the ``webtools`` logger, installing the JSON handler once."""
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(JsonFormatter())
        root.addHandler(handler)
        root.setLevel(logging.INFO)
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def set_log_level(level: str) -> None:
    logging.getLogger(ROOT_LOGGER_NAME).setLevel(level.upper())

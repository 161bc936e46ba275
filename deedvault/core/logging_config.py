"""
DeedVault log output.

Production and log files get one JSON object per line, carrying any
`extra=` fields a call site attached (document ids, storage keys, request
ids). Consoles get a short colored line with the few context fields worth
reading at a glance.
"""

import json
import logging
import sys
from datetime import datetime, timezone

# Attributes every LogRecord has; anything else came in through extra=
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime"}

# Context shown inline by the console formatter, in this order
CONSOLE_CONTEXT = ("request_id", "document_id", "key", "chunk_index")

# Chatty dependencies held at WARNING
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine", "aiosqlite")


def record_extras(record: logging.LogRecord) -> dict:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record, timestamped when the record was made."""

    def __init__(self, include_extras: bool = True, service: str | None = None):
        super().__init__()
        self.include_extras = include_extras
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if self.service:
            entry["service"] = self.service
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if self.include_extras:
            for key, value in record_extras(record).items():
                entry.setdefault(key, value)

        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    DIM = "\033[2m"

    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        color = self.LEVEL_COLORS.get(record.levelname, "")
        line = (
            f"{self.DIM}{when}{self.RESET} "
            f"{color}{record.levelname:8}{self.RESET} "
            f"{self.DIM}{record.name}{self.RESET} - {record.getMessage()}"
        )

        context = " ".join(
            f"{name}={getattr(record, name)}" for name in CONSOLE_CONTEXT if hasattr(record, name)
        )
        if context:
            line += f" {self.DIM}[{context}]{self.RESET}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: str | None = None,
    service: str | None = None,
) -> None:
    """
    Install the DeedVault handlers on the root logger, replacing any
    already there so repeated app construction does not duplicate output.

    `level` is a standard level name. The console is JSON when
    `json_format` is set and colored otherwise; `log_file`, when given,
    always receives JSON.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    root = logging.getLogger()
    root.setLevel(numeric_level)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(JSONFormatter(service=service) if json_format else ColoredFormatter())
    root.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(JSONFormatter(service=service))
        root.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

# services/logging_utils.py
import asyncio
import os
import logging
import logging.config
from pathlib import Path
import re


class RedactingFilter(logging.Filter):
    """
    A logging.Filter that masks ICE credentials and DTLS fingerprints
    in logged session descriptions.
    """

    SENSITIVE_PATTERNS = [
        re.compile(r'(a=ice-ufrag:)\S+'),
        re.compile(r'(a=ice-pwd:)\S+'),
        re.compile(r'(a=fingerprint:\S+ )\S+'),
        re.compile(r'(ice-pwd=)\S+'),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        """
        Rewrite record.msg with sensitive values replaced by "***".
        """
        msg = record.getMessage()
        for pat in self.SENSITIVE_PATTERNS:
            msg = pat.sub(r"\1***", msg)

        record.msg = msg
        record.args = ()
        return True


def setup_logging(
        level: str = None,
        logs_dir: str = "logs",
        log_file: str = "server.log") -> None:
    """
    Configure application-wide logging with console and rotating file handlers.

    Args:
        level (str, optional): Logging level (e.g., "INFO", "DEBUG").
            Defaults to the LOG_LEVEL environment variable or "INFO".
        logs_dir (str, optional): Directory for log files, created if missing.
        log_file (str, optional): Main log file name within logs_dir.

    Returns:
        None

    Raises:
        OSError: If the logs_dir directory cannot be created.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()

    Path(logs_dir).mkdir(exist_ok=True)

    LOGGING_CONFIG = {
        "version": 1,
        "disable_existing_loggers": False,          # keep 3rd-party logs
        "filters": {
            "redact": {
                "()": RedactingFilter,
            },
        },
        "formatters": {
            "default": {
                "format": "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s",
                "datefmt": "%d-%m-%Y %H:%M:%S",
            },
        },
        "handlers": {
            "console": {"class": "logging.StreamHandler",
                        "formatter": "default",
                        "filters": ["redact"],
                        "level": level},
            "file":    {"class": "logging.handlers.TimedRotatingFileHandler",
                        "formatter": "default",
                        "filters": ["redact"],
                        "filename": f"{logs_dir}/{log_file}",
                        "when": "midnight",
                        "backupCount": 14,
                        "encoding": "utf-8",
                        "level": level},
            "errors":  {"class": "logging.handlers.RotatingFileHandler",
                        "formatter": "default",
                        "filters": ["redact"],
                        "filename": f"{logs_dir}/server-error.log",
                        "maxBytes": 10 * 1024 * 1024,    # 10 MiB
                        "backupCount": 5,
                        "encoding": "utf-8",
                        "level": "ERROR"},
        },
        "loggers": {
            # aiortc / aioice are chatty at DEBUG
            "aioice": {"level": "WARNING"},
            "aiortc": {"level": "WARNING"},
        },
        "root": {"level": level,
                 "handlers": ["console", "file", "errors"]},
    }

    logging.config.dictConfig(LOGGING_CONFIG)


def install_loop_exception_handler(loop: asyncio.AbstractEventLoop) -> None:
    """
    Route exceptions from orphaned tasks and callbacks to the logger instead
    of letting them vanish or terminate the process.
    """
    log = logging.getLogger("asyncio.unhandled")

    def _handler(_loop, context):
        exc = context.get("exception")
        log.error(f"Unhandled event loop error: {context.get('message')}", exc_info=exc)

    loop.set_exception_handler(_handler)

"""Logging configuration for Onebox Python components."""
import logging
import sys
from collections.abc import MutableMapping
from typing import Any

from pythonjsonlogger import jsonlogger

from .config import get_config

# Per-account sync workers run on threads named "mail-sync-<account id>"
SYNC_THREAD_PREFIX = "mail-sync-"


class OneboxJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that stamps every record with the service and account identity."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        config = get_config()

        # Unified service tags
        log_record["env"] = config.env
        log_record["service"] = config.service.name
        log_record["version"] = config.service.version

        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["thread"] = record.threadName

        # Engine and session code logs from the worker thread without an adapter
        thread_name = record.threadName or ""
        if "account_id" not in log_record and thread_name.startswith(SYNC_THREAD_PREFIX):
            log_record["account_id"] = thread_name[len(SYNC_THREAD_PREFIX) :]

        if "message" not in log_record:
            log_record["message"] = record.getMessage()


class AccountLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that tags records with the account being synced.

    Call-site ``extra`` values are merged over the adapter's own, so a
    single call can add fields such as ``sync_reason``.
    """

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **(kwargs.get("extra") or {})}
        return msg, kwargs


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        OneboxJsonFormatter(
            fmt="%(timestamp)s %(level)s %(name)s %(message)s",
            rename_fields={"timestamp": "@timestamp"},
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, level.upper()))

    # Reduce noise from libraries
    logging.getLogger("imapclient").setLevel(logging.WARNING)
    logging.getLogger("elastic_transport").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(name)


def get_account_logger(
    name: str, account_id: str, mailbox: str | None = None
) -> AccountLoggerAdapter:
    """Get a logger whose records carry ``account_id`` (and ``mailbox`` when given)."""
    extra: dict[str, Any] = {"account_id": account_id}
    if mailbox:
        extra["mailbox"] = mailbox
    return AccountLoggerAdapter(logging.getLogger(name), extra)

"""Classifier capability handle.

The label model is loaded outside this package. The engine only ever sees a
handle that is either ready (wraps a callable) or not ready yet, and swaps
it explicitly via ``SyncEngine.update_classifier`` once the model loads.

Calls run on a small shared pool so a hung model costs one pool thread and
``timeout_seconds`` of sync time per record, never the whole pass.
"""

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass

from onebox_mail.models import DEFAULT_LABEL, EmailRecord

logger = logging.getLogger(__name__)

ClassifyFn = Callable[[EmailRecord], str]

DEFAULT_CLASSIFY_TIMEOUT_SECONDS = 10.0

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="classifier")


@dataclass(frozen=True)
class ReadyClassifier:
    """A loaded classifier. ``timeout_seconds=None`` calls it inline without a bound."""

    classify: ClassifyFn
    name: str = "classifier"
    timeout_seconds: float | None = DEFAULT_CLASSIFY_TIMEOUT_SECONDS


@dataclass(frozen=True)
class NotReadyClassifier:
    """Placeholder used until a classifier has been loaded."""

    reason: str = "not loaded"


ClassifierHandle = ReadyClassifier | NotReadyClassifier


def _call(handle: ReadyClassifier, record: EmailRecord) -> str:
    if handle.timeout_seconds is None:
        return handle.classify(record)
    future = _executor.submit(handle.classify, record)
    try:
        return future.result(timeout=handle.timeout_seconds)
    except FutureTimeoutError:
        future.cancel()
        raise


def classify_record(
    handle: ClassifierHandle,
    record: EmailRecord,
    default: str = DEFAULT_LABEL,
) -> str:
    """
    Label a record, best-effort.

    Returns ``default`` when the classifier is not ready, raises, times
    out, or produces an empty label. Never raises.
    """
    if not isinstance(handle, ReadyClassifier):
        return default

    try:
        label = _call(handle, record)
    except FutureTimeoutError:
        logger.warning(
            "Classification timed out for UID %d after %.1fs",
            record.uid,
            handle.timeout_seconds,
        )
        return default
    except Exception as e:
        logger.warning("Classification failed for UID %d: %s", record.uid, e)
        return default

    if not label or not isinstance(label, str):
        return default
    return label

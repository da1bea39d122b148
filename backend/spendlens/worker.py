import math
import threading
from typing import Callable, Optional

from .adapters.base import AdapterRegistry
from .adapters.registry import registry as default_registry
from .errors import ParseCancelled, StatementDecodeError
from .logging_utils import log_event
from .models import WorkerCancelled, WorkerComplete, WorkerError, WorkerMessage, WorkerProgress

NO_ADAPTER_MESSAGE = "No suitable parser found for this PDF."

MessageSink = Callable[[WorkerMessage], None]


class CancellationToken:
    """Per-request cancel flag, read by adapters at page boundaries."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ParseCancelled("Parsing cancelled.")


class ProgressRelay:
    """
    Wraps a message sink so progress only ever moves forward, stays within
    [0, 100] and a failing sink never interrupts parsing.
    """

    def __init__(self, sink: MessageSink):
        self._sink = sink
        self.last_percent = -1

    def progress(self, percent: float, message: Optional[str] = None) -> None:
        value = max(0, min(100, int(percent)))
        if value <= self.last_percent:
            return
        self.last_percent = value
        self.send(WorkerProgress(progress_percent=value, message=message))

    def send(self, msg: WorkerMessage) -> None:
        try:
            self._sink(msg)
        except Exception as exc:
            log_event('warning', 'progress.sink_failed', kind=msg.kind, error=str(exc))


def scale_adapter_progress(percent: float) -> int:
    """Map adapter progress (0-100) into the worker's 10-99 parsing band."""
    return min(10 + math.floor(percent * 0.9), 99)


async def run_parse_job(
    data: bytes,
    file_name: str,
    emit: MessageSink,
    cancel_token: Optional[CancellationToken] = None,
    registry: Optional[AdapterRegistry] = None,
) -> WorkerMessage:
    """
    Parse one statement and report through ``emit``.

    Progress messages come first; exactly one terminal message (complete,
    error or cancelled) is emitted last and also returned. Progress reaches
    100 before a complete or error outcome, never before a cancellation.
    """
    registry = registry or default_registry
    relay = ProgressRelay(emit)

    def finish(msg: WorkerMessage) -> WorkerMessage:
        relay.send(msg)
        return msg

    def fail(msg: WorkerError) -> WorkerMessage:
        relay.progress(100)
        return finish(msg)

    relay.progress(2, "Loading parsers")
    relay.progress(5, "Selecting parser")
    adapter = registry.select(data, file_name)
    if adapter is None:
        log_event('warning', 'parse.no_adapter', file_name=file_name, size=len(data or b''))
        return fail(WorkerError(message=NO_ADAPTER_MESSAGE, code="no_adapter"))

    relay.progress(10, f"Parsing with {adapter.bank}")

    def on_adapter_progress(percent: float, message: Optional[str] = None) -> None:
        relay.progress(scale_adapter_progress(percent), message)

    try:
        result = await adapter.parse(data, on_adapter_progress, cancel_token)
    except ParseCancelled:
        log_event('info', 'parse.cancelled', bank=adapter.bank, file_name=file_name)
        return finish(WorkerCancelled())
    except StatementDecodeError as exc:
        log_event('warning', 'parse.decode_failed', bank=adapter.bank, file_name=file_name, error=str(exc))
        return fail(WorkerError(message=str(exc), code="decode_failed"))
    except Exception as exc:
        log_event('error', 'parse.failed', bank=adapter.bank, file_name=file_name, error=str(exc))
        return fail(WorkerError(message=f"Failed to parse statement: {exc}", code="failed"))

    relay.progress(100, "Done")
    return finish(WorkerComplete(result=result))

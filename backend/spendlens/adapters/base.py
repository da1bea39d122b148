from typing import Callable, List, Optional, Protocol, runtime_checkable

from ..models import ParseResult, SupportedBank

ProgressCallback = Callable[..., None]


@runtime_checkable
class Cancellable(Protocol):
    def raise_if_cancelled(self) -> None:
        ...


class StatementAdapter(Protocol):
    """
    A bank-specific statement parser.

    ``can_parse`` must be cheap and must not raise: a file the adapter cannot
    decode is simply not its file. ``parse`` reports progress as
    ``emit_progress(percent, message=None)`` and raises StatementDecodeError
    when the document itself cannot be decoded.
    """

    bank: SupportedBank

    def can_parse(self, data: bytes, file_name: str) -> bool:
        ...

    async def parse(
        self,
        data: bytes,
        emit_progress: ProgressCallback,
        cancel_token: Optional[Cancellable] = None,
    ) -> ParseResult:
        ...


class AdapterRegistry:
    def __init__(self):
        self._adapters: List[StatementAdapter] = []

    def register(self, adapter: StatementAdapter) -> None:
        self._adapters.append(adapter)

    def select(self, data: bytes, file_name: str) -> Optional[StatementAdapter]:
        """First registered adapter that accepts the file, in registration order."""
        for adapter in self._adapters:
            if adapter.can_parse(data, file_name):
                return adapter
        return None

    def list_all(self) -> List[StatementAdapter]:
        return list(self._adapters)

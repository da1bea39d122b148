from typing import Callable, Dict, List, Optional, Tuple

from ..errors import InvalidDateError, StatementDecodeError
from ..logging_utils import log_event
from ..ml.pipeline import MLTransactionPipeline, create_ml_pipeline, flatten_enrichment
from ..models import Confidence, Enrichment, Fragment, ParseResult, RawTransaction, Transaction, utc_now
from ..parser import (
    extract_account_number,
    group_fragments_into_rows,
    rows_to_lines,
    segment_rows,
)
from ..pdf import open_document
from ..rules import Enricher, RuleEnrichment, convert_to_transactions, rule_enricher
from ..settings import PipelineConfig, load_pipeline_config
from .base import Cancellable, ProgressCallback

UNKNOWN_ACCOUNT = "UNKNOWN"
BANK_MARKERS = ("ICICI Bank", "icicibank")


class IciciStatementAdapter:
    bank = "ICICI"

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        decoder: Callable = open_document,
        pipeline: Optional[MLTransactionPipeline] = None,
    ):
        self.config = config or load_pipeline_config()
        self.decoder = decoder
        self._pipeline = pipeline

    @property
    def pipeline(self) -> MLTransactionPipeline:
        if self._pipeline is None:
            self._pipeline = create_ml_pipeline(self.config)
        return self._pipeline

    def can_parse(self, data: bytes, file_name: str) -> bool:
        if "icici" in (file_name or "").lower():
            return True
        try:
            with self.decoder(data) as doc:
                if doc.page_count == 0:
                    return False
                text = doc.page_text(0)
        except StatementDecodeError:
            return False
        return BANK_MARKERS[0] in text or BANK_MARKERS[1] in text.lower()

    async def parse(
        self,
        data: bytes,
        emit_progress: ProgressCallback,
        cancel_token: Optional[Cancellable] = None,
    ) -> ParseResult:
        warnings: List[str] = []
        transactions: List[Transaction] = []
        account_number = UNKNOWN_ACCOUNT
        next_index = 0
        now = utc_now()

        with self.decoder(data) as doc:
            total = doc.page_count
            log_event('info', 'parse.started', bank=self.bank, pages=total, use_ml=self.config.use_ml)

            for page_index in range(total):
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                page_no = page_index + 1

                try:
                    fragments = doc.fragments(page_index)
                except Exception as exc:
                    warnings.append(f"Failed to extract text from page {page_no}: {exc}")
                    log_event('warning', 'parse.page_failed', page=page_no, error=str(exc))
                    emit_progress(int(page_no / total * 100), f"Skipped page {page_no} of {total}")
                    continue

                rows = group_fragments_into_rows(fragments, self.config.y_tolerance)
                if page_index == 0:
                    account_number = self._account_number(rows, warnings)

                records = segment_rows(rows)
                enrich = await self._enricher(records)

                def skip(record: RawTransaction, exc: InvalidDateError) -> None:
                    warnings.append(f"Skipped transaction on page {page_no}: {exc}")
                    log_event('warning', 'parse.record_skipped', page=page_no, error=str(exc))

                transactions.extend(convert_to_transactions(
                    records,
                    account_number,
                    self.bank,
                    enrich=enrich,
                    start_index=next_index,
                    now=now,
                    on_skip=skip,
                ))
                next_index += len(records)

                emit_progress(int(page_no / total * 100), f"Parsed page {page_no} of {total}")

        emit_progress(100, f"Parsed {len(transactions)} transactions")
        log_event(
            'info',
            'parse.completed',
            bank=self.bank,
            pages=total,
            transactions=len(transactions),
            warnings=len(warnings),
        )
        return ParseResult(
            bank=self.bank,
            transactions=transactions,
            warnings=warnings,
            account_number=account_number if account_number != UNKNOWN_ACCOUNT else None,
        )

    def _account_number(self, rows: List[List[Fragment]], warnings: List[str]) -> str:
        account_number = extract_account_number(rows_to_lines(rows))
        if account_number:
            return account_number
        warnings.append("Account number not found on the first page; using UNKNOWN.")
        return UNKNOWN_ACCOUNT

    async def _enricher(self, records: List[RawTransaction]) -> Enricher:
        if not self.config.use_ml:
            return rule_enricher(self.config.merchant_normalization)
        # Enrichment depends only on description, amount and direction.
        enriched: Dict[Tuple[str, float, str], Enrichment] = {}
        for record in records:
            key = (record.description, record.amount, record.type)
            if key not in enriched:
                direction = "debit" if record.type == "DR" else "credit"
                enriched[key] = await self.pipeline.enrich_transaction(record.description, record.amount, direction)

        def enrich(raw: RawTransaction) -> Tuple[RuleEnrichment, Optional[Confidence]]:
            enrichment = enriched[(raw.description, raw.amount, raw.type)]
            return flatten_enrichment(enrichment), enrichment.confidence

        return enrich

import os
import secrets
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .adapters.registry import registry
from .logging_utils import configure_logging, log_event, reset_request_id, set_request_id
from .ml.pipeline import MLTransactionPipeline, create_ml_pipeline
from .models import Direction, WorkerCancelled, WorkerComplete, WorkerError
from .rules import enrich_with_rules
from .settings import load_pipeline_config
from .worker import run_parse_job


configure_logging()

app = FastAPI(title="Spendlens API", version="0.3.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ALLOW_ORIGINS", "").split(",") if o.strip()] or ["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

pipeline_config = load_pipeline_config()
_pipeline: Optional[MLTransactionPipeline] = None


def get_pipeline() -> MLTransactionPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = create_ml_pipeline(pipeline_config)
    return _pipeline


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started = datetime.now(timezone.utc)
    rid = request.headers.get("x-request-id") or secrets.token_hex(8)
    token = set_request_id(rid)
    response = None
    try:
        response = await call_next(request)
        return response
    except Exception:
        duration_ms = int((datetime.now(timezone.utc) - started).total_seconds() * 1000)
        log_event(
            'error',
            'http.request_failed',
            method=request.method,
            path=request.url.path,
            query=str(request.url.query or ''),
            duration_ms=duration_ms,
        )
        raise
    finally:
        if response is not None:
            response.headers['X-Request-ID'] = rid
            duration_ms = int((datetime.now(timezone.utc) - started).total_seconds() * 1000)
            if request.url.path != '/health':
                status = int(response.status_code)
                req_level = 'error' if status >= 500 else 'warning' if status >= 400 else 'info'
                log_event(
                    req_level,
                    'http.request',
                    method=request.method,
                    path=request.url.path,
                    query=str(request.url.query or ''),
                    status_code=response.status_code,
                    duration_ms=duration_ms,
                )
        reset_request_id(token)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    level = 'warning' if int(exc.status_code) < 500 else 'error'
    log_event(
        level,
        'http.http_exception',
        method=request.method,
        path=request.url.path,
        status_code=exc.status_code,
        detail=str(exc.detail),
    )
    response = JSONResponse(status_code=exc.status_code, content={'detail': exc.detail})
    rid = request.headers.get('x-request-id')
    if rid:
        response.headers['X-Request-ID'] = rid
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    log_event(
        'warning',
        'http.validation_error',
        method=request.method,
        path=request.url.path,
        errors=exc.errors(),
    )
    response = JSONResponse(status_code=422, content={'detail': exc.errors()})
    rid = request.headers.get('x-request-id')
    if rid:
        response.headers['X-Request-ID'] = rid
    return response


class EnrichRequest(BaseModel):
    description: str = Field(min_length=1, max_length=1000)
    amount: float = Field(ge=0)
    type: Direction = "debit"


class CategorizeItem(BaseModel):
    description: str = Field(max_length=1000)
    amount: float = 0.0


class CategorizeRequest(BaseModel):
    transactions: List[CategorizeItem]


@app.get("/health")
def health() -> dict:
    return {"ok": True}


@app.get("/api/ml/status")
def ml_status() -> dict:
    return get_pipeline().get_stats()


async def _parse_statement_impl(file: UploadFile) -> dict:
    file_name = file.filename or ""
    if not file_name.lower().endswith(".pdf"):
        raise HTTPException(status_code=400, detail="Please upload a PDF file.")

    data = await file.read()
    # Progress has no consumer over a plain request/response call.
    outcome = await run_parse_job(data, file_name, lambda msg: None, registry=registry)

    if isinstance(outcome, WorkerComplete):
        payload = outcome.result.model_dump(mode="json")
        payload["count"] = len(outcome.result.transactions)
        return payload
    if isinstance(outcome, WorkerError):
        if outcome.code == "decode_failed":
            raise HTTPException(status_code=422, detail=outcome.message)
        if outcome.code == "no_adapter":
            raise HTTPException(status_code=400, detail=outcome.message)
        raise HTTPException(status_code=500, detail=outcome.message)
    if isinstance(outcome, WorkerCancelled):
        raise HTTPException(status_code=409, detail="Parsing cancelled.")
    raise HTTPException(status_code=500, detail="Unexpected parser outcome.")


@app.post("/api/parse/statement")
async def parse_statement(file: UploadFile = File(...)):
    return await _parse_statement_impl(file)


@app.post("/api/enrich")
async def enrich(payload: EnrichRequest):
    enrichment = await get_pipeline().enrich_transaction(payload.description, payload.amount, payload.type)
    return enrichment.model_dump(mode="json")


@app.post("/api/categorize")
def categorize(payload: CategorizeRequest):
    policy = pipeline_config.merchant_normalization
    out = []
    for item in payload.transactions:
        rules = enrich_with_rules(item.description, item.amount, policy)
        out.append({
            "description": item.description,
            "amount": item.amount,
            **rules.model_dump(),
        })
    return {"transactions": out}

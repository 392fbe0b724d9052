"""
Request tracing for the services

Each HTTP request runs inside a span whose trace id is taken from the
incoming X-Trace-ID header (or minted) and echoed back on the response.
Finished spans are logged as one "TRACE:" JSON line.
"""
import json
import logging
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional
from fastapi import Request

logger = logging.getLogger(__name__)

TRACE_HEADER = "X-Trace-ID"
SPAN_HEADER = "X-Span-ID"

trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
span_id_var: ContextVar[Optional[str]] = ContextVar("span_id", default=None)

class Span:
    def __init__(self, service: str, operation: str, trace_id: Optional[str] = None, parent_span_id: Optional[str] = None):
        self.service = service
        self.operation = operation
        self.trace_id = trace_id or uuid.uuid4().hex[:16]
        self.span_id = uuid.uuid4().hex[:8]
        self.parent_span_id = parent_span_id
        self.tags: Dict[str, Any] = {}
        self.failed = False
        self._started = time.time()
        self._tokens = []

    def tag(self, key: str, value: Any) -> "Span":
        self.tags[key] = value
        return self

    def fail(self, error: Optional[BaseException] = None) -> "Span":
        self.failed = True
        if error is not None:
            self.tag("error.type", type(error).__name__).tag("error.message", str(error))
        return self

    def __enter__(self) -> "Span":
        self._tokens = [trace_id_var.set(self.trace_id), span_id_var.set(self.span_id)]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_val is not None:
            self.fail(exc_val)
        span_id_var.reset(self._tokens[1])
        trace_id_var.reset(self._tokens[0])
        record = {
            "service": self.service,
            "operation": self.operation,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "duration_ms": round((time.time() - self._started) * 1000, 2),
            "status": "error" if self.failed else "ok",
            "tags": self.tags,
        }
        logger.info(f"TRACE: {json.dumps(record, default=str)}")

class Tracer:
    def __init__(self, service: str):
        self.service = service

    def span(self, operation: str, trace_id: Optional[str] = None, parent_span_id: Optional[str] = None) -> Span:
        return Span(self.service, operation, trace_id, parent_span_id)

    def request_span(self, request: Request) -> Span:
        """Continue the caller's trace if it sent one"""
        span = self.span(
            f"{request.method} {request.url.path}",
            request.headers.get(TRACE_HEADER),
            request.headers.get(SPAN_HEADER),
        )
        return span.tag("http.method", request.method).tag(
            "authenticated", request.headers.get("authorization", "").startswith("Bearer ")
        )

auth_tracer = Tracer("auth-service")
ledger_tracer = Tracer("ledger-service")
contract_tracer = Tracer("contract-service")
dispute_tracer = Tracer("dispute-service")
notification_tracer = Tracer("notification-service")
audit_tracer = Tracer("audit-service")

def get_trace_headers() -> Dict[str, str]:
    """Headers carrying the active trace, for outgoing messages"""
    headers = {}
    if trace_id_var.get():
        headers[TRACE_HEADER] = trace_id_var.get()
    if span_id_var.get():
        headers[SPAN_HEADER] = span_id_var.get()
    return headers

async def tracing_middleware(request: Request, call_next, tracer: Tracer):
    with tracer.request_span(request) as span:
        request.state.trace_id = span.trace_id
        response = await call_next(request)
        span.tag("http.status_code", response.status_code)
        if response.status_code >= 500:
            span.fail()
        response.headers[TRACE_HEADER] = span.trace_id
        response.headers[SPAN_HEADER] = span.span_id
        return response

"""
EstateVerify Verification Service
Synchronous verification endpoints for listings, brokers and properties
"""

import logging
import os
import time
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from estateverify.admission import AdmissionGate
from estateverify.config import get_settings
from estateverify.errors import InternalFault, InvalidRequestError
from estateverify.evaluators import default_evaluators
from estateverify.models import (
    BrokerRequest,
    ListingRequest,
    PropertyRequest,
    VerificationDecision,
)
from estateverify.orchestrator import VerificationOrchestrator
from estateverify.provider import GeminiAdapter
from estateverify.rules import RuleChecker


# Logging configuration
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler('logs/estateverify.log') if os.path.exists('logs') else logging.NullHandler()
    ]
)

logger = logging.getLogger(__name__)

# Load environment variables early so Settings picks them up
load_dotenv()
settings = get_settings()


# Metrics tracker
class Metrics:
    """Track service metrics"""

    def __init__(self):
        self.total_requests = 0
        self.successful_requests = 0
        self.failed_requests = 0
        self.degraded_requests = 0
        self.total_processing_time = 0.0
        self.decisions: Counter = Counter()
        self.start_time = time.time()

    def record_decision(self, decision: VerificationDecision, processing_time: float):
        """Record a completed verification"""
        self.total_requests += 1
        self.successful_requests += 1
        self.total_processing_time += processing_time
        self.decisions[decision.decision.value] += 1
        if decision.degraded:
            self.degraded_requests += 1

    def record_failure(self, processing_time: float):
        self.total_requests += 1
        self.failed_requests += 1
        self.total_processing_time += processing_time

    def get_stats(self) -> Dict[str, Any]:
        """Get current metrics"""
        uptime = time.time() - self.start_time
        avg_time = self.total_processing_time / self.total_requests if self.total_requests > 0 else 0

        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "degraded_requests": self.degraded_requests,
            "decisions": dict(self.decisions),
            "average_processing_time": f"{avg_time:.2f}s",
            "uptime_seconds": int(uptime)
        }


metrics = Metrics()


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("=" * 60)
    logger.info(f"Starting {settings.service_title} v{settings.version}")
    logger.info("=" * 60)

    gate = AdmissionGate(settings.provider_max_concurrency)
    http_client = httpx.AsyncClient(timeout=settings.provider_timeout)
    provider = GeminiAdapter(settings, gate=gate, client=http_client)
    if not provider.configured:
        logger.warning("GEMINI_API_KEY not set: provider-backed checks will resolve to ERROR")

    app.state.gate = gate
    app.state.provider = provider
    app.state.orchestrator = VerificationOrchestrator(
        default_evaluators(provider, rules=RuleChecker(settings=settings), settings=settings),
        settings=settings,
    )
    logger.info(f"  Provider model: {provider.model}")
    logger.info(f"  Provider concurrency: {gate.capacity}")
    logger.info(f"  Request timeout: {settings.request_timeout}s")
    logger.info("Service ready")

    yield

    logger.info("Shutting down...")
    gate.close()
    await provider.aclose()
    await http_client.aclose()
    logger.info("Shutdown complete")


# FastAPI application
app = FastAPI(
    title=settings.service_title,
    version=settings.version,
    description="AI verification of real-estate listings, brokers and properties",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(status_code: int, error: str, detail: Any, retryable: bool) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "detail": detail, "retryable": retryable}
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return _error_response(
        422,
        "Invalid verification request",
        jsonable_errors(exc.errors()),
        retryable=False
    )


@app.exception_handler(InvalidRequestError)
async def invalid_request_handler(request: Request, exc: InvalidRequestError):
    return _error_response(
        422,
        "Invalid verification request",
        jsonable_errors(exc.errors) or str(exc),
        retryable=False
    )


@app.exception_handler(InternalFault)
async def internal_fault_handler(request: Request, exc: InternalFault):
    logger.error(f"Internal fault: {exc}", exc_info=True)
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal verification fault",
        str(exc) if settings.debug else "An error occurred",
        retryable=True
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error",
        str(exc) if settings.debug else "An error occurred",
        retryable=True
    )


def jsonable_errors(errors: list) -> list:
    """Strip non-serializable context from pydantic error entries"""
    return [
        {key: value for key, value in error.items() if key in ("type", "loc", "msg")}
        for error in errors
    ]


# API endpoints
@app.get("/")
async def root():
    """Root endpoint with service information"""
    return {
        "service": settings.service_title,
        "version": settings.version,
        "status": "operational",
        "endpoints": {
            "verify_listing": "POST /verify/listing",
            "verify_broker": "POST /verify/broker",
            "verify_property": "POST /verify/property",
            "health": "GET /health",
            "metrics": "GET /metrics"
        }
    }


@app.get("/health")
async def health_check(request: Request):
    """Detailed health check"""
    provider = request.app.state.provider
    gate = request.app.state.gate
    overall_status = "healthy" if provider.configured and not gate.closed else "degraded"

    return {
        "status": overall_status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {
            "api": "healthy",
            "provider": "configured" if provider.configured else "unconfigured",
            "admission_gate": gate.stats()
        },
        "metrics": metrics.get_stats()
    }


@app.get("/metrics")
async def get_metrics(request: Request):
    """Get service metrics"""
    return {
        "service": settings.service_title,
        "version": settings.version,
        "metrics": metrics.get_stats(),
        "admission_gate": request.app.state.gate.stats()
    }


async def run_verification(request: Request, subject) -> Dict[str, Any]:
    """Run the orchestrator and record the outcome"""
    start_time = time.time()
    orchestrator: VerificationOrchestrator = request.app.state.orchestrator
    try:
        decision = await orchestrator.verify(subject)
    except Exception:
        metrics.record_failure(time.time() - start_time)
        raise
    metrics.record_decision(decision, time.time() - start_time)
    return decision.to_payload()


@app.post("/verify/listing")
async def verify_listing(body: ListingRequest, request: Request):
    """Verify a listing submission"""
    return await run_verification(request, body)


@app.post("/verify/broker")
async def verify_broker(body: BrokerRequest, request: Request):
    """Verify a broker profile"""
    return await run_verification(request, body)


@app.post("/verify/property")
async def verify_property(body: PropertyRequest, request: Request):
    """Verify a property record"""
    return await run_verification(request, body)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8001,
        reload=True,
        log_level="info"
    )

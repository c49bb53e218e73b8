# subscription_engine/server/main.py
from contextlib import asynccontextmanager
from typing import Annotated, List, Optional
from uuid import UUID
import logging

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from subscription_engine import create_billing_client, BillingClient, Scheduler
from subscription_engine.config import get_settings
from subscription_engine.logging import configure as configure_logging
from subscription_engine.exceptions import (
    AlreadyFinalizedError,
    ConcurrentModificationError,
    DatabaseError,
    InvalidTransitionError,
    NotFoundError,
    OverlappingPeriodError,
)
from subscription_engine.models import (
    DecisionResult,
    PaymentRequestCreate,
    PaymentRequestRecord,
    PlanChangeResult,
    ProviderEvent,
    SubscriptionRecord,
    SubscriptionView,
)

logger = logging.getLogger(__name__)


# --- Request bodies ---
class ProofSubmission(BaseModel):
    proof_reference: str = Field(..., min_length=1, max_length=500)


class DecisionIn(BaseModel):
    verifier: str = Field(..., min_length=1)
    approve: bool
    notes: Optional[str] = None


class SubscriptionCreateIn(BaseModel):
    plan_id: UUID
    start_as_trial: bool = True


class PlanChangeIn(BaseModel):
    plan_id: UUID


class CancelIn(BaseModel):
    reason: Optional[str] = None


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str


# --- Dependencies ---
def get_billing_client(request: Request) -> BillingClient:
    return request.app.state.billing_client


def get_scheduler(client: Annotated[BillingClient, Depends(get_billing_client)]) -> Scheduler:
    return Scheduler(client, get_settings().scheduler)


Client = Annotated[BillingClient, Depends(get_billing_client)]

router = APIRouter()


@router.post("/webhooks/provider", response_model=WebhookAck, tags=["Provider"])
async def provider_webhook(event: ProviderEvent, client: Client):
    """Receives an already-verified provider event. Unknown tenants and replays are acknowledged too."""
    result = await client.handle_provider_event(event)
    return WebhookAck(outcome=result.outcome.value)


@router.post("/payment-requests", response_model=PaymentRequestRecord,
             status_code=status.HTTP_201_CREATED, tags=["Payments"])
async def submit_payment_request(data: PaymentRequestCreate, client: Client):
    return await client.submit_payment_request(data)


@router.post("/payment-requests/{request_id}/proof", response_model=PaymentRequestRecord, tags=["Payments"])
async def attach_proof(request_id: UUID, body: ProofSubmission, client: Client):
    return await client.mark_under_review(request_id, body.proof_reference)


@router.post("/admin/payment-requests/{request_id}/decision", response_model=DecisionResult, tags=["Admin"])
async def decide_payment_request(request_id: UUID, body: DecisionIn, client: Client):
    return await client.decide(request_id, body.verifier, body.approve, body.notes)


@router.get("/admin/payment-requests/pending", response_model=List[PaymentRequestRecord], tags=["Admin"])
async def pending_payment_requests(client: Client):
    return await client.list_pending_requests()


@router.post("/tenants/{tenant_id}/subscription", response_model=SubscriptionRecord,
             status_code=status.HTTP_201_CREATED, tags=["Subscriptions"])
async def create_subscription(tenant_id: UUID, body: SubscriptionCreateIn, client: Client):
    return await client.create_subscription(tenant_id, body.plan_id, start_as_trial=body.start_as_trial)


@router.get("/tenants/{tenant_id}/subscription", response_model=SubscriptionView, tags=["Subscriptions"])
async def get_subscription(tenant_id: UUID, client: Client):
    return await client.describe(tenant_id)


@router.post("/tenants/{tenant_id}/subscription/plan", response_model=PlanChangeResult, tags=["Subscriptions"])
async def change_plan(tenant_id: UUID, body: PlanChangeIn, client: Client):
    return await client.change_plan(tenant_id, body.plan_id)


@router.post("/tenants/{tenant_id}/subscription/cancel", response_model=SubscriptionRecord, tags=["Subscriptions"])
async def cancel_subscription(tenant_id: UUID, body: CancelIn, client: Client):
    return await client.cancel(tenant_id, body.reason)


@router.post("/scheduler/tick", tags=["Scheduler"])
async def scheduler_tick(scheduler: Annotated[Scheduler, Depends(get_scheduler)]) -> dict[str, int]:
    return await scheduler.run_tick()


# --- Error mapping ---
_STATUS_BY_ERROR = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (OverlappingPeriodError, status.HTTP_409_CONFLICT),
    (AlreadyFinalizedError, status.HTTP_409_CONFLICT),
    (ConcurrentModificationError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def _install_error_handlers(app: FastAPI) -> None:
    for error_cls, code in _STATUS_BY_ERROR:
        async def handler(request: Request, exc: Exception, code: int = code) -> JSONResponse:
            return JSONResponse(status_code=code, content={"detail": str(exc)})
        app.add_exception_handler(error_cls, handler)

    async def database_handler(request: Request, exc: DatabaseError) -> JSONResponse:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                            content={"detail": "An internal error occurred."})
    app.add_exception_handler(DatabaseError, database_handler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    if getattr(app.state, "billing_client", None) is None:
        app.state.billing_client = create_billing_client()
    app.state.billing_client.dispatcher.start()
    yield
    await app.state.billing_client.aclose()


def create_app(client: BillingClient | None = None) -> FastAPI:
    app = FastAPI(title="Subscription Engine", lifespan=lifespan)
    app.state.billing_client = client
    app.include_router(router)
    _install_error_handlers(app)
    return app


app = create_app()

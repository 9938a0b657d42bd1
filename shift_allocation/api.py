import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from shift_allocation.config import AllocationConfig, configure_logging
from shift_allocation.core import AllocationCore
from shift_allocation.errors import AllocationError, ConflictError, NotFoundError
from shift_allocation.models import ClaimStatus
from shift_allocation.notifier import Event, log_event

router = APIRouter()


class ClaimRequest(BaseModel):
    worker_id: str


class ManagerDecision(BaseModel):
    resolved_by: str


def _core(request: Request) -> AllocationCore:
    return request.app.state.core


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/workers/{worker_id}/visible-shifts")
async def visible_shifts(
    worker_id: str, request: Request, restaurant_id: str | None = None
) -> dict:
    shifts = await _core(request).get_visible_shifts(worker_id, restaurant_id)
    return {
        "worker_id": worker_id,
        "shifts": [
            {
                "shift": s.shift.model_dump(mode="json"),
                "phase": s.visibility.phase.value,
                "hours_until_start": s.visibility.hours_until_start,
                "distance_miles": s.visibility.distance_miles,
            }
            for s in shifts
        ],
    }


@router.post("/shifts/{shift_id}/claims")
async def submit_claim(shift_id: str, body: ClaimRequest, request: Request) -> dict:
    result = await _core(request).submit_claim(shift_id, body.worker_id)

    if result.rejection is not None or result.claim is None:
        return {
            "status": "rejected",
            "shift_id": shift_id,
            "worker_id": body.worker_id,
            **(result.rejection.model_dump(mode="json") if result.rejection else {}),
        }

    return {
        "status": result.claim.status.value.lower(),
        "shift_id": shift_id,
        "claim": result.claim.model_dump(mode="json"),
        "resolution": (
            result.resolution.model_dump(mode="json") if result.resolution else None
        ),
    }


@router.post("/shifts/{shift_id}/resolve")
async def resolve_claims(shift_id: str, request: Request) -> dict:
    result = await _core(request).resolve_claims(shift_id)
    return result.model_dump(mode="json")


@router.get("/shifts/{shift_id}/claims")
async def list_claims(shift_id: str, request: Request) -> dict:
    claims = await _core(request).claims_for_shift(shift_id)
    return {
        "shift_id": shift_id,
        "claims": [c.model_dump(mode="json") for c in claims],
    }


@router.delete("/claims/{claim_id}")
async def withdraw_claim(claim_id: str, worker_id: str, request: Request) -> dict:
    await _core(request).withdraw_claim(claim_id, worker_id)
    return {"status": "withdrawn", "claim_id": claim_id}


@router.post("/claims/{claim_id}/approve")
async def approve_claim(claim_id: str, body: ManagerDecision, request: Request) -> dict:
    result = await _core(request).approve_claim(claim_id, body.resolved_by)
    return result.model_dump(mode="json")


@router.post("/claims/{claim_id}/reject")
async def reject_claim(claim_id: str, body: ManagerDecision, request: Request) -> dict:
    claim = await _core(request).reject_claim(claim_id, body.resolved_by)
    return {"status": "rejected", "claim": claim.model_dump(mode="json")}


@router.get("/workers/{worker_id}/claims")
async def worker_claims(
    worker_id: str, request: Request, status: ClaimStatus | None = None
) -> dict:
    claims = await _core(request).claims_for_worker(worker_id, status)
    return {
        "worker_id": worker_id,
        "claims": [c.model_dump(mode="json") for c in claims],
    }


@router.get("/restaurants/{restaurant_id}/pending-claims")
async def pending_claims(restaurant_id: str, request: Request) -> dict:
    claims = await _core(request).pending_claims_for_restaurant(restaurant_id)
    return {
        "restaurant_id": restaurant_id,
        "claims": [c.model_dump(mode="json") for c in claims],
    }


@router.get("/shifts/{shift_id}/eligible-workers")
async def eligible_workers(shift_id: str, request: Request) -> dict:
    audience = await _core(request).workers_who_can_see_shift(shift_id)
    return audience.model_dump(mode="json")


@router.get("/identities/{user_id}/reputation")
async def network_reputation(user_id: str, request: Request) -> dict:
    reputation = await _core(request).get_network_reputation(user_id)
    return reputation.model_dump(mode="json")


@router.get("/identities/{user_id}/reputation/breakdown")
async def reputation_breakdown(user_id: str, request: Request) -> dict:
    breakdown = await _core(request).get_reputation_breakdown(user_id)
    return {
        "user_id": user_id,
        "restaurants": [r.model_dump(mode="json") for r in breakdown],
    }


async def not_found_handler(_request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def conflict_handler(_request: Request, exc: Exception) -> JSONResponse:
    retryable = isinstance(exc, ConflictError) and exc.retryable
    return JSONResponse(
        status_code=409, content={"detail": str(exc), "retry": retryable}
    )


async def allocation_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=500, content={"detail": "Internal error"})


def create_app(config: AllocationConfig | None = None) -> FastAPI:
    config = config or AllocationConfig()
    configure_logging(config.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await app.state.core.shutdown()

    app = FastAPI(lifespan=lifespan)
    app.state.now_fn = lambda: datetime.now(UTC)
    app.state.sleep_fn = asyncio.sleep

    # resolve through app.state/module globals at call time so tests can swap them
    async def emit(event: Event) -> None:
        await log_event(event)

    async def sleep(seconds: float) -> None:
        await app.state.sleep_fn(seconds)

    app.state.core = AllocationCore(
        config=config,
        emit=emit,
        now_fn=lambda: app.state.now_fn(),
        sleep_fn=sleep,
    )

    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(ConflictError, conflict_handler)
    app.add_exception_handler(AllocationError, allocation_error_handler)
    app.include_router(router)
    return app

from datetime import datetime
from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger

from callbacks import CallbackProcessor, detect_provider

from .ads import AdRewardService
from .bonus import HappyHourSchedule
from .errors import AuthError, PointsError
from .logging_config import configure_logging
from .models import (
    AdCompleteResponse,
    AdStartResponse,
    CompleteAdRequest,
    CreateCompletionRequest,
    LeaderboardResponse,
    LedgerHistoryResponse,
    OfferCompletion,
    StartAdRequest,
    UserBalance,
)
from .service import LedgerService
from .settings import Settings, get_settings
from .storage import InMemoryStorage

router = APIRouter()
bearer = HTTPBearer(auto_error=False)


def get_ledger(request: Request) -> LedgerService:
    return request.app.state.ledger


def get_ads(request: Request) -> AdRewardService:
    return request.app.state.ads


def get_processor(request: Request) -> CallbackProcessor:
    return request.app.state.processor


def require_admin(request: Request,
                  credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> None:
    settings: Settings = request.app.state.settings
    if not settings.admin_api_key:
        raise HTTPException(status_code=AuthError.status_code, detail="Admin API key is not configured")
    if credentials is None or credentials.credentials != settings.admin_api_key:
        raise HTTPException(
            status_code=AuthError.status_code,
            detail="Invalid or missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def _read_payload(request: Request) -> dict[str, Any]:
    payload: dict[str, Any] = dict(request.query_params)
    if request.method != "POST":
        return payload

    content_type = request.headers.get("content-type", "")
    try:
        if "application/json" in content_type:
            body = await request.json()
            if isinstance(body, dict):
                payload.update(body)
        elif "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
            form = await request.form()
            payload.update({key: str(value) for key, value in form.items()})
    except ValueError:
        logger.warning("Unreadable callback body, using query parameters only")
    return payload


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "offerwall-ledger"}


@router.api_route("/offers/callback", methods=["GET", "POST"], tags=["Offers"])
@router.api_route("/offers/callback/{provider}", methods=["GET", "POST"], tags=["Offers"])
async def offer_callback(request: Request, provider: Optional[str] = None,
                         processor: CallbackProcessor = Depends(get_processor)):
    raw_payload = await _read_payload(request)
    provider_name = detect_provider(raw_payload, provider)

    try:
        result = await run_in_threadpool(processor.process, provider_name, raw_payload)
    except PointsError as e:
        logger.warning("Rejected offer callback", provider=provider_name,
                       error=type(e).__name__, detail=str(e))
        raise HTTPException(status_code=e.status_code, detail=str(e))

    if processor.adapter(provider_name).plain_text_response:
        return PlainTextResponse("1")
    return JSONResponse({"success": True, "message": "1", "outcome": result.outcome.value})


@router.post("/offers/completions", response_model=OfferCompletion,
             status_code=status.HTTP_201_CREATED, tags=["Offers"],
             dependencies=[Depends(require_admin)])
def create_completion(request: CreateCompletionRequest,
                      ledger: LedgerService = Depends(get_ledger)) -> OfferCompletion:
    try:
        return ledger.create_completion(request)
    except PointsError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.get("/offers/completions/{completion_id}", response_model=OfferCompletion,
            tags=["Offers"], dependencies=[Depends(require_admin)])
def get_completion(completion_id: str, ledger: LedgerService = Depends(get_ledger)) -> OfferCompletion:
    try:
        return ledger.get_completion(completion_id)
    except PointsError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/ads", response_model=AdStartResponse, tags=["Ads"])
def start_ad(request: StartAdRequest, ads: AdRewardService = Depends(get_ads)) -> AdStartResponse:
    try:
        return ads.start_ad_view(request.user_id)
    except PointsError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.patch("/ads", response_model=AdCompleteResponse, tags=["Ads"])
def complete_ad(request: CompleteAdRequest, ads: AdRewardService = Depends(get_ads)) -> AdCompleteResponse:
    try:
        return ads.complete_ad_view(request.ad_view_id, request.user_id)
    except PointsError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
def get_user_balance(user_id: str, ledger: LedgerService = Depends(get_ledger)) -> UserBalance:
    try:
        return ledger.get_balance(user_id)
    except PointsError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.get("/users/{user_id}/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
def get_user_ledger(user_id: str, limit: int = Query(50, ge=1, le=200), offset: int = Query(0, ge=0),
                    ledger: LedgerService = Depends(get_ledger)) -> LedgerHistoryResponse:
    try:
        return ledger.get_ledger_history(user_id, limit, offset)
    except PointsError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.get("/tournament", response_model=LeaderboardResponse, tags=["Tournament"])
def get_leaderboard(user_id: Optional[str] = Query(None, alias="userId"),
                    week: Optional[str] = None, limit: int = Query(100, ge=1, le=500),
                    ledger: LedgerService = Depends(get_ledger)) -> LeaderboardResponse:
    return ledger.tournament.leaderboard(week, limit=limit, user_id=user_id)


def create_app(settings: Optional[Settings] = None, storage: Optional[InMemoryStorage] = None,
               clock: Optional[Callable[[], datetime]] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(
        service_name=settings.service_name,
        environment=settings.environment,
        version=settings.version,
        level=settings.log_level,
        json_output=settings.log_json,
    )

    app = FastAPI(
        title="Offerwall Ledger API",
        description="Offer postback reconciliation, ad rewards and the points ledger",
        version=settings.version,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    ledger = LedgerService(storage or InMemoryStorage(seed=settings.environment == "development"),
                           clock=clock)
    app.state.settings = settings
    app.state.ledger = ledger
    app.state.processor = CallbackProcessor(ledger, settings)
    app.state.ads = AdRewardService(
        ledger,
        schedule=HappyHourSchedule(
            settings.timezone,
            enabled=settings.happy_hour_enabled,
            weekend_bonus=settings.weekend_bonus_enabled,
        ),
        max_ads_per_day=settings.max_ads_per_day,
        base_reward_points=settings.base_ad_reward_points,
        timezone_name=settings.timezone,
        cooldown_seconds=settings.ad_cooldown_seconds,
    )
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)

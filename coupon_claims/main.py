from contextlib import asynccontextmanager
from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from . import identity
from .config import Settings, settings as default_settings
from .errors import AppError, app_error_handler, unhandled_exception_handler
from .logging import configure_logging, get_logger
from .logic import Clock, ClaimCoordinator, CouponAllocator, EligibilityEvaluator, utc_now
from .middleware import RequestIdMiddleware
from .models import ClaimRequest, ClaimResponse, Coupon, CouponCode, EligibilityStatus
from .ratelimit import ClaimRateLimitMiddleware, RateLimitConfig
from .storage import CouponStore, open_store, seed_coupons

API_PREFIX = "/api"

logger = get_logger()


# ---------------------------
# Dependencies
# ---------------------------

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> CouponStore:
    return request.app.state.store


def get_evaluator(request: Request) -> EligibilityEvaluator:
    return request.app.state.evaluator


def get_coordinator(request: Request) -> ClaimCoordinator:
    return request.app.state.coordinator


# ---------------------------
# Routes
# ---------------------------

router = APIRouter()


@router.post("/claim-coupon", response_model=ClaimResponse)
def claim_coupon(
    request: Request,
    response: Response,
    payload: Optional[ClaimRequest] = None,
    cfg: Settings = Depends(get_settings),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
):
    ip_address = identity.client_ip(request, cfg.TRUST_PROXY)
    browser_id = identity.browser_id(request, payload.browserId if payload else None)

    result = coordinator.claim(ip_address, browser_id)

    if browser_id and not request.cookies.get(identity.BROWSER_COOKIE):
        response.set_cookie(
            identity.BROWSER_COOKIE,
            browser_id,
            max_age=cfg.BROWSER_COOKIE_MAX_AGE_DAYS * 24 * 60 * 60,
            httponly=True,
            secure=cfg.is_production,
        )

    return ClaimResponse(success=True, message=result.message, coupon=CouponCode(code=result.code))


@router.get("/check-eligibility", response_model=EligibilityStatus, response_model_exclude_none=True)
def check_eligibility(
    request: Request,
    browserId: Optional[str] = Query(None),
    cfg: Settings = Depends(get_settings),
    evaluator: EligibilityEvaluator = Depends(get_evaluator),
):
    ip_address = identity.client_ip(request, cfg.TRUST_PROXY)
    return evaluator.check(ip_address, identity.browser_id(request, browserId))


@router.get("/coupons", response_model=List[Coupon])
def list_coupons(store: CouponStore = Depends(get_store)):
    return store.list_coupons_sorted_by_code()


# ---------------------------
# FastAPI App
# ---------------------------

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[CouponStore] = None,
    clock: Clock = utc_now,
) -> FastAPI:
    """Build the application.

    A store passed in is owned by the caller and is not closed on shutdown;
    otherwise the store named by DATABASE_URL is opened at startup.
    """
    cfg = settings or default_settings
    configure_logging(cfg.ENV, cfg.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = store is None
        active = open_store(cfg) if owned else store
        if cfg.SEED_ON_STARTUP:
            seed_coupons(active, cfg.SEED_COUPON_CODES)

        window = timedelta(minutes=cfg.CLAIM_WINDOW_MINUTES)
        evaluator = EligibilityEvaluator(active, window=window, clock=clock)
        app.state.store = active
        app.state.evaluator = evaluator
        app.state.coordinator = ClaimCoordinator(
            active,
            evaluator,
            CouponAllocator(active),
            retry_attempts=cfg.CLAIM_RETRY_ATTEMPTS,
            clock=clock,
        )
        logger.info("Starting coupon claims service...")
        try:
            yield
        finally:
            logger.info("Stopping coupon claims service...")
            if owned:
                active.close()

    app = FastAPI(title="Coupon Claims Service", lifespan=lifespan)
    app.state.settings = cfg

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Added innermost first: the request id is bound before rate limiting runs
    app.add_middleware(
        ClaimRateLimitMiddleware,
        config=RateLimitConfig.from_settings(cfg),
        path=f"{API_PREFIX}/claim-coupon",
        client_ip=lambda request: identity.client_ip(request, cfg.TRUST_PROXY),
    )
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix=API_PREFIX, tags=["coupons"])

    @app.get("/health")
    def health_check():
        return {"status": "ok", "env": cfg.ENV}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "coupon_claims.main:app",
        host="127.0.0.1",
        port=8000,
        reload=False,
    )

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .errors import RewardServiceError, ValidationError
from .logging_config import configure_logging
from .models import (
    BalanceResult,
    ErrorDetails,
    ErrorResponse,
    MintRewardRequest,
    MintRewardResult,
    RedeemResult,
    RegisterRequest,
    RegisterResult,
    RewardView,
    StatusResult,
)
from .service import RewardService, build_service

logger = structlog.get_logger()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


def get_service(request: Request) -> RewardService:
    return request.app.state.service


def _error_response(exc: RewardServiceError) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetails(kind=exc.kind, message=exc.message))
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RewardServiceError)
    async def _service_error_handler(request: Request, exc: RewardServiceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, kind=exc.kind, cause=repr(exc.__cause__))
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error_response(ValidationError("Invalid payload"))


def build_router(settings: Settings) -> APIRouter:
    router = APIRouter(prefix=settings.api_base_path, responses=ERROR_RESPONSES)

    @router.get("/status", response_model=StatusResult, tags=["System"])
    def get_status() -> StatusResult:
        return StatusResult(version=settings.api_version)

    @router.post("/user", response_model=RegisterResult, tags=["Users"])
    def register(
        request: Optional[RegisterRequest] = None,
        service: RewardService = Depends(get_service),
    ) -> RegisterResult:
        return service.register_user(request or RegisterRequest())

    @router.get("/user/{user_id}/balance", response_model=BalanceResult, tags=["Users"])
    def get_balance(user_id: str, service: RewardService = Depends(get_service)) -> BalanceResult:
        return service.get_balance(user_id)

    @router.post(
        "/user/{user_id}/reward",
        response_model=MintRewardResult,
        status_code=status.HTTP_201_CREATED,
        tags=["Rewards"],
    )
    def mint_reward(
        user_id: str,
        request: MintRewardRequest,
        service: RewardService = Depends(get_service),
    ) -> MintRewardResult:
        return service.mint_reward(user_id, request)

    @router.get("/reward/{reward_id}", response_model=RewardView, tags=["Rewards"])
    def get_reward(reward_id: str, service: RewardService = Depends(get_service)) -> RewardView:
        return RewardView.from_reward(service.get_reward(reward_id))

    @router.post("/reward/{reward_id}/redeem", response_model=RedeemResult, tags=["Rewards"])
    def redeem(reward_id: str, service: RewardService = Depends(get_service)) -> RedeemResult:
        return service.redeem_reward(reward_id)

    @router.post("/reward/{reward_id}/recover", response_model=RewardView, tags=["Rewards"])
    def recover(reward_id: str, service: RewardService = Depends(get_service)) -> RewardView:
        return RewardView.from_reward(service.recover_redemption(reward_id))

    return router


def create_app(service: Optional[RewardService] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        store = None
        if getattr(app.state, "service", None) is None:
            configure_logging(settings)
            app.state.service, store = build_service(settings)
            logger.info("rewards_api_started", database_path=settings.database_path, ledger_url=settings.ledger_url)
            pending = app.state.service.pending_redemptions()
            if pending:
                logger.warning("pending_redemptions_found", count=len(pending), reward_ids=pending)
        yield
        if store is not None:
            app.state.service.gateway.close()
            store.close()
            app.state.service = None

    app = FastAPI(
        title="Rewards API",
        description="Reward issuance backend: users, minted reward tokens and one-time redemption",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    app.include_router(build_router(settings))
    return app

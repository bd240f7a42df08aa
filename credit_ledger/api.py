import logging
import sys
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from mangum import Mangum

from .errors import (
    ConsistencyViolationError,
    InsufficientCreditError,
    InvalidAmountError,
    LedgerNotProvisionedError,
    NotFoundError,
    TemporarilyUnavailableError,
)
from .models import (
    BulkExpiryResult,
    CancellationOutcome,
    CancellationQuote,
    CancellationQuoteRequest,
    CancellationRequest,
    ConsumeCreditRequest,
    ConsumptionResult,
    CreditBalance,
    CreditLot,
    CreditsSummary,
    ExpiryResult,
    IssuanceResult,
    IssueCreditRequest,
    LedgerHistoryResponse,
    ReconciliationReport,
)
from .service import CreditLedgerService, build_service
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format=settings.log_format,
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def get_service(request: Request) -> CreditLedgerService:
    return request.app.state.credit_service


def create_app(service: Optional[CreditLedgerService] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="Credit Ledger API",
        description="Issues, tracks and spends user credits with lot-level FIFO consumption and an audit ledger",
        version="1.0.0",
    )
    app.state.credit_service = service or build_service(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerNotProvisionedError)
    async def ledger_not_provisioned(request: Request, exc: LedgerNotProvisionedError):
        logger.error("Credit ledger storage not provisioned: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Credit ledger is not provisioned"},
        )

    @app.exception_handler(TemporarilyUnavailableError)
    async def temporarily_unavailable(request: Request, exc: TemporarilyUnavailableError):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": str(exc)},
            headers={"Retry-After": "1"},
        )

    @app.exception_handler(ConsistencyViolationError)
    async def consistency_violation(request: Request, exc: ConsistencyViolationError):
        logger.error("Consistency violation on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Credit ledger error, operators have been notified"},
        )

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "credit-ledger"}

    @app.post("/cancellations/quote", response_model=CancellationQuote, tags=["Cancellations"])
    def quote_cancellation(
        request: CancellationQuoteRequest,
        service: CreditLedgerService = Depends(get_service),
    ) -> CancellationQuote:
        return service.quote_cancellation(
            request.paid_amount, request.scheduled_event_time, request.cancellation_time
        )

    @app.post(
        "/cancellations",
        response_model=CancellationOutcome,
        status_code=status.HTTP_201_CREATED,
        tags=["Cancellations"],
    )
    def cancel_with_credit(
        request: CancellationRequest,
        response: Response,
        service: CreditLedgerService = Depends(get_service),
    ) -> CancellationOutcome:
        try:
            outcome = service.on_cancellation(
                request.owner_id,
                request.source_event_ref,
                request.paid_amount,
                request.scheduled_event_time,
                description=request.description,
                cancellation_time=request.cancellation_time,
            )
        except InvalidAmountError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        if outcome.lot is None:
            response.status_code = status.HTTP_200_OK
        return outcome

    @app.post("/credits", response_model=IssuanceResult, status_code=status.HTTP_201_CREATED, tags=["Credits"])
    def issue_credit(
        request: IssueCreditRequest,
        service: CreditLedgerService = Depends(get_service),
    ) -> IssuanceResult:
        try:
            return service.issue_credit(
                request.owner_id,
                request.amount,
                request.credit_type,
                description=request.description,
                source_event_ref=request.source_event_ref,
                ttl=timedelta(days=request.ttl_days) if request.ttl_days else None,
                created_by=request.created_by,
            )
        except InvalidAmountError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.post("/credits/expire", response_model=BulkExpiryResult, tags=["Maintenance"])
    def expire_all_credits(service: CreditLedgerService = Depends(get_service)) -> BulkExpiryResult:
        return service.expire_all_credits()

    @app.get("/credits/summaries", response_model=list[CreditsSummary], tags=["Maintenance"])
    def list_credit_summaries(service: CreditLedgerService = Depends(get_service)) -> list[CreditsSummary]:
        return service.list_summaries()

    @app.get("/credits/lots/{lot_id}", response_model=CreditLot, tags=["Credits"])
    def get_lot(lot_id: UUID, service: CreditLedgerService = Depends(get_service)) -> CreditLot:
        try:
            return service.get_lot(lot_id)
        except NotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Credit lot {lot_id} not found")

    @app.post("/users/{owner_id}/consume", response_model=ConsumptionResult, tags=["Users"])
    def consume_credit(
        owner_id: str,
        request: ConsumeCreditRequest,
        service: CreditLedgerService = Depends(get_service),
    ) -> ConsumptionResult:
        try:
            return service.consume(owner_id, request.amount, request.consuming_event_ref)
        except InvalidAmountError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except InsufficientCreditError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    @app.get("/users/{owner_id}/balance", response_model=CreditBalance, tags=["Users"])
    def get_user_balance(owner_id: str, service: CreditLedgerService = Depends(get_service)) -> CreditBalance:
        return service.get_credit_balance(owner_id)

    @app.get("/users/{owner_id}/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
    def get_user_ledger(
        owner_id: str,
        limit: int = 50,
        offset: int = 0,
        service: CreditLedgerService = Depends(get_service),
    ) -> LedgerHistoryResponse:
        return service.get_ledger_history(owner_id, limit, offset)

    @app.get("/users/{owner_id}/lots", response_model=list[CreditLot], tags=["Users"])
    def get_user_lots(
        owner_id: str,
        usable_only: bool = False,
        service: CreditLedgerService = Depends(get_service),
    ) -> list[CreditLot]:
        return service.list_lots(owner_id, usable_only=usable_only)

    @app.get("/users/{owner_id}/summary", response_model=CreditsSummary, tags=["Users"])
    def get_user_summary(owner_id: str, service: CreditLedgerService = Depends(get_service)) -> CreditsSummary:
        return service.get_summary(owner_id)

    @app.post("/users/{owner_id}/expire", response_model=ExpiryResult, tags=["Users"])
    def expire_user_credits(
        owner_id: str,
        as_of: Optional[datetime] = None,
        service: CreditLedgerService = Depends(get_service),
    ) -> ExpiryResult:
        try:
            return service.expire_credits(owner_id, as_of)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.get("/users/{owner_id}/reconcile", response_model=ReconciliationReport, tags=["Users"])
    def reconcile_user(owner_id: str, service: CreditLedgerService = Depends(get_service)) -> ReconciliationReport:
        return service.reconcile(owner_id)


app = create_app()
handler = Mangum(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

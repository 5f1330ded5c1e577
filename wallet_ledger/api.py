import logging

from fastapi import Depends, FastAPI, Header, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .errors import (
    InfrastructureFailure,
    LedgerServiceError,
    NotFound,
    PreconditionFailed,
    Unauthorized,
)
from .models import (
    AddMoneyRequest,
    ApplyToCampaignRequest,
    ApproveWorkRequest,
    Campaign,
    CampaignStatusRequest,
    CreateCampaignRequest,
    DeductBudgetRequest,
    MoneyRequest,
    MoneyRequestType,
    OperationResponse,
    RejectWorkRequest,
    ResolveMoneyRequest,
    SubmitWorkRequest,
    TransactionRecord,
    WalletBalance,
    WithdrawalRequest,
    WorkSubmission,
)
from .service import LedgerService

settings = get_settings()
logging.basicConfig(level=settings.log_level)

app = FastAPI(
    title="Task Marketplace Wallet Ledger API",
    description="Wallet balances, campaign budgets, work rewards and admin-mediated money requests",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger_service = LedgerService(settings=settings)

RETRY_MESSAGE = "Action failed, please retry"


def get_ledger_service() -> LedgerService:
    return ledger_service


def _http_error(error: LedgerServiceError) -> HTTPException:
    if isinstance(error, Unauthorized):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(error))
    if isinstance(error, NotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, PreconditionFailed):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, InfrastructureFailure):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=RETRY_MESSAGE)
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=RETRY_MESSAGE)


def _outcome(success: bool, message: str) -> OperationResponse:
    if not success:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=RETRY_MESSAGE)
    return OperationResponse(success=True, message=message)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "wallet-ledger"}


@app.get("/wallets/{uid}", response_model=WalletBalance, tags=["Wallets"])
async def get_wallet(
    uid: str,
    actor_id: str = Header(..., alias="X-Actor-Id"),
    service: LedgerService = Depends(get_ledger_service),
) -> WalletBalance:
    try:
        return await service.fetch_wallet(uid, actor_id=actor_id)
    except LedgerServiceError as e:
        raise _http_error(e) from e


@app.get("/wallets/{uid}/transactions", response_model=list[TransactionRecord], tags=["Wallets"])
async def get_transactions(
    uid: str,
    actor_id: str = Header(..., alias="X-Actor-Id"),
    service: LedgerService = Depends(get_ledger_service),
) -> list[TransactionRecord]:
    try:
        return await service.fetch_transactions(uid, actor_id=actor_id)
    except LedgerServiceError as e:
        raise _http_error(e) from e


@app.post("/wallets/{uid}/add-money", response_model=MoneyRequest, status_code=status.HTTP_201_CREATED, tags=["Wallets"])
async def add_money(
    uid: str,
    request: AddMoneyRequest,
    actor_id: str = Header(..., alias="X-Actor-Id"),
    service: LedgerService = Depends(get_ledger_service),
) -> MoneyRequest:
    try:
        return await service.request_add_money(
            uid, request.amount, request.upi_transaction_id, actor_id=actor_id, user_name=request.user_name
        )
    except LedgerServiceError as e:
        raise _http_error(e) from e


@app.post("/wallets/{uid}/withdrawals", response_model=MoneyRequest, status_code=status.HTTP_201_CREATED, tags=["Wallets"])
async def withdraw(
    uid: str,
    request: WithdrawalRequest,
    actor_id: str = Header(..., alias="X-Actor-Id"),
    service: LedgerService = Depends(get_ledger_service),
) -> MoneyRequest:
    try:
        return await service.request_withdrawal(
            uid, request.amount, request.upi_id, actor_id=actor_id, user_name=request.user_name
        )
    except LedgerServiceError as e:
        raise _http_error(e) from e


@app.post("/campaigns", response_model=Campaign, status_code=status.HTTP_201_CREATED, tags=["Campaigns"])
async def create_campaign(
    request: CreateCampaignRequest,
    actor_id: str = Header(..., alias="X-Actor-Id"),
    service: LedgerService = Depends(get_ledger_service),
) -> Campaign:
    try:
        return await service.create_campaign(actor_id, request, actor_id=actor_id)
    except LedgerServiceError as e:
        raise _http_error(e) from e


@app.post("/campaigns/{campaign_id}/deduct", response_model=OperationResponse, tags=["Campaigns"])
async def deduct_budget(
    campaign_id: str,
    request: DeductBudgetRequest,
    actor_id: str = Header(..., alias="X-Actor-Id"),
    service: LedgerService = Depends(get_ledger_service),
) -> OperationResponse:
    try:
        success = await service.deduct_campaign_budget(campaign_id, request.amount, request.user_id, actor_id=actor_id)
    except LedgerServiceError as e:
        raise _http_error(e) from e
    return _outcome(success, "Campaign budget deducted")


@app.post("/campaigns/{campaign_id}/status", response_model=Campaign, tags=["Campaigns"])
async def moderate_campaign(
    campaign_id: str,
    request: CampaignStatusRequest,
    actor_id: str = Header(..., alias="X-Actor-Id"),
    service: LedgerService = Depends(get_ledger_service),
) -> Campaign:
    try:
        return await service.set_campaign_status(campaign_id, request.action, actor_id=actor_id)
    except LedgerServiceError as e:
        raise _http_error(e) from e


@app.post("/campaigns/{campaign_id}/apply", response_model=OperationResponse, tags=["Campaigns"])
async def apply_to_campaign(
    campaign_id: str,
    request: ApplyToCampaignRequest,
    actor_id: str = Header(..., alias="X-Actor-Id"),
    service: LedgerService = Depends(get_ledger_service),
) -> OperationResponse:
    try:
        success = await service.apply_to_campaign(
            campaign_id, request.user_id, request.user_name, actor_id=actor_id
        )
    except LedgerServiceError as e:
        raise _http_error(e) from e
    return _outcome(success, "Applied to campaign")


@app.post("/campaigns/{campaign_id}/submit", response_model=OperationResponse, tags=["Campaigns"])
async def submit_work(
    campaign_id: str,
    request: SubmitWorkRequest,
    actor_id: str = Header(..., alias="X-Actor-Id"),
    service: LedgerService = Depends(get_ledger_service),
) -> OperationResponse:
    try:
        success = await service.submit_work(campaign_id, request.user_id, request.proof_url, actor_id=actor_id)
    except LedgerServiceError as e:
        raise _http_error(e) from e
    return _outcome(success, "Work submitted for review")


@app.get("/works/{uid}", response_model=list[WorkSubmission], tags=["Works"])
async def get_works(
    uid: str,
    actor_id: str = Header(..., alias="X-Actor-Id"),
    service: LedgerService = Depends(get_ledger_service),
) -> list[WorkSubmission]:
    try:
        return await service.fetch_works(uid, actor_id=actor_id)
    except LedgerServiceError as e:
        raise _http_error(e) from e


@app.post("/works/{uid}/{work_id}/approve", response_model=OperationResponse, tags=["Works"])
async def approve_work(
    uid: str,
    work_id: str,
    request: ApproveWorkRequest,
    actor_id: str = Header(..., alias="X-Actor-Id"),
    service: LedgerService = Depends(get_ledger_service),
) -> OperationResponse:
    try:
        success = await service.approve_work_and_credit(
            work_id, uid, request.campaign_id, request.reward, actor_id=actor_id
        )
    except LedgerServiceError as e:
        raise _http_error(e) from e
    return _outcome(success, "Work approved and credited")


@app.post("/works/{uid}/{work_id}/reject", response_model=OperationResponse, tags=["Works"])
async def reject_work(
    uid: str,
    work_id: str,
    request: RejectWorkRequest,
    actor_id: str = Header(..., alias="X-Actor-Id"),
    service: LedgerService = Depends(get_ledger_service),
) -> OperationResponse:
    try:
        success = await service.reject_work(work_id, uid, request.campaign_id, actor_id=actor_id)
    except LedgerServiceError as e:
        raise _http_error(e) from e
    return _outcome(success, "Work rejected")


@app.post("/admin/requests/{request_type}/{request_id}", response_model=OperationResponse, tags=["Admin"])
async def resolve_money_request(
    request_type: MoneyRequestType,
    request_id: str,
    request: ResolveMoneyRequest,
    actor_id: str = Header(..., alias="X-Actor-Id"),
    service: LedgerService = Depends(get_ledger_service),
) -> OperationResponse:
    try:
        success = await service.process_money_request(
            request_id, request_type, request.user_id, request.amount, request.resolution, actor_id=actor_id
        )
    except LedgerServiceError as e:
        raise _http_error(e) from e
    return _outcome(success, f"Request {request.resolution.value}")


@app.post("/sessions/{uid}/sign-out", response_model=OperationResponse, tags=["Sessions"])
async def sign_out(
    uid: str,
    actor_id: str = Header(..., alias="X-Actor-Id"),
    service: LedgerService = Depends(get_ledger_service),
) -> OperationResponse:
    try:
        await service.sign_out(uid, actor_id=actor_id)
    except LedgerServiceError as e:
        raise _http_error(e) from e
    return OperationResponse(success=True, message="Signed out")


@app.post("/admin/cache/reset", response_model=OperationResponse, tags=["Admin"])
async def reset_cache(
    actor_id: str = Header(..., alias="X-Actor-Id"),
    service: LedgerService = Depends(get_ledger_service),
) -> OperationResponse:
    try:
        await service.reset_cache(actor_id=actor_id)
    except LedgerServiceError as e:
        raise _http_error(e) from e
    return OperationResponse(success=True, message="Read cache cleared")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

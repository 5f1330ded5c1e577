"""
Wallet ledger engine.

The document store only offers atomic read-modify-write on a single path, so
every money movement that spans two documents runs as a two-leg protocol: the
resource that is safe to revert is mutated first, the second leg is attempted
with its own compare-and-swap, and a failed second leg is followed by a
compensating write on the first resource.
"""

import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic.alias_generators import to_camel

from .auth import Authorizer, ProfileAuthorizer, Role
from .cache import ReadCache
from .config import LedgerSettings, get_settings
from .errors import (
    AbortedTransaction,
    InfrastructureFailure,
    LedgerServiceError,
    NotFound,
    PreconditionFailed,
    Unauthorized,
)
from .models import (
    BALANCE_FIELDS,
    Campaign,
    CampaignAction,
    CampaignStatus,
    CreateCampaignRequest,
    MoneyRequest,
    MoneyRequestType,
    RequestStatus,
    TransactionRecord,
    TransactionType,
    WalletAdjustment,
    WalletBalance,
    WorkStatus,
    WorkSubmission,
    utcnow,
)
from .store import ABORT, CASResult, DocumentStore, InMemoryDocumentStore

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

WalletUpdate = Callable[[WalletBalance], Any]

_BALANCE_FIELD_BY_ALIAS = {to_camel(name): name for name in BALANCE_FIELDS}

# action -> (statuses it may start from, resulting status)
_CAMPAIGN_TRANSITIONS = {
    CampaignAction.PAUSE: ({CampaignStatus.ACTIVE}, CampaignStatus.PAUSED),
    CampaignAction.RESUME: ({CampaignStatus.PAUSED}, CampaignStatus.ACTIVE),
    CampaignAction.COMPLETE: ({CampaignStatus.ACTIVE, CampaignStatus.PAUSED}, CampaignStatus.COMPLETED),
    CampaignAction.BAN: (
        {CampaignStatus.ACTIVE, CampaignStatus.PAUSED, CampaignStatus.COMPLETED},
        CampaignStatus.BANNED,
    ),
}


def as_amount(value: Union[Decimal, int, float, str, None]) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _balance_field(name: str) -> str:
    return _BALANCE_FIELD_BY_ALIAS.get(name, name)


class LedgerService:
    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        cache: Optional[ReadCache] = None,
        authorizer: Optional[Authorizer] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or InMemoryDocumentStore(max_retries=self.settings.cas_max_retries)
        self.cache = cache or ReadCache(
            ttl_seconds=self.settings.cache_ttl_seconds,
            max_entries=self.settings.cache_max_entries,
        )
        self.authorizer = authorizer or ProfileAuthorizer(self.store)

    # ------------------------------------------------------------------
    # Wallet primitives
    # ------------------------------------------------------------------

    async def update_wallet_balance(
        self, uid: str, update_fn: WalletUpdate, *, actor_id: str
    ) -> Optional[WalletBalance]:
        """
        Atomically apply update_fn to the wallet of uid.

        update_fn receives the current WalletBalance (all zero when the wallet
        does not exist yet) and returns a partial update keyed by balance field
        name, or ABORT. The store re-runs update_fn against the latest value
        when a concurrent write lands on the same wallet.

        Returns the committed wallet, or None when update_fn aborted or the
        store declined to commit.
        """
        await self._require(actor_id, uid, "You can only update your own wallet balance")
        return await self._wallet_cas(uid, update_fn)

    async def create_transaction_and_adjust_wallet(
        self,
        uid: str,
        transaction: TransactionRecord,
        deltas: dict[str, Any],
        *,
        actor_id: str,
    ) -> WalletAdjustment:
        """
        Append a transaction record, then add the given deltas to the wallet.

        The record is written first and is never rolled back; every balance
        field is clamped to zero after the deltas are applied.
        """
        await self._require(actor_id, uid, "You can only update your own wallet")
        transaction_id = await self._append_transaction(uid, transaction)

        normalized = {_balance_field(name): as_amount(delta) for name, delta in deltas.items()}

        def adjust(balance: WalletBalance) -> dict:
            return {name: getattr(balance, name) + delta for name, delta in normalized.items()}

        try:
            wallet = await self._wallet_cas(uid, adjust)
        except LedgerServiceError:
            logger.warning(
                "Transaction %s/%s recorded but wallet update raised; needs reconciliation",
                uid, transaction_id,
            )
            raise
        if wallet is None:
            logger.warning(
                "Transaction %s/%s recorded but wallet update did not commit; needs reconciliation",
                uid, transaction_id,
            )
        return WalletAdjustment(transaction_id=transaction_id, wallet=wallet)

    # ------------------------------------------------------------------
    # Campaign budget
    # ------------------------------------------------------------------

    async def deduct_campaign_budget(self, campaign_id: str, amount: Any, uid: str, *, actor_id: str) -> bool:
        operation = "deduct_campaign_budget"
        amount = as_amount(amount)
        await self._require(actor_id, uid, "You can only deduct from your own campaigns")

        campaign_path = f"campaigns/{campaign_id}"
        campaign = await self.store.read(campaign_path)
        if campaign is None:
            raise NotFound(f"Campaign {campaign_id} not found")
        if campaign.get("creatorId") != uid:
            raise Unauthorized("You can only deduct from your own campaigns")
        if amount <= ZERO:
            return self._declined(operation, PreconditionFailed(f"Deduction amount must be positive, got {amount}"))

        def take_budget(current):
            if not current or as_amount(current.get("remainingBudget")) < amount:
                return ABORT
            return {**current, "remainingBudget": as_amount(current["remainingBudget"]) - amount}

        campaign_result = await self.store.compare_and_swap(campaign_path, take_budget)
        if not campaign_result.committed:
            return self._declined(
                operation, AbortedTransaction(f"Campaign {campaign_id} has less than {amount} remaining")
            )

        def spend_added(balance: WalletBalance):
            if balance.added_balance < amount:
                return ABORT
            return {"added_balance": balance.added_balance - amount}

        failure = await self._second_leg(uid, spend_added, f"Wallet {uid} has less than {amount} added balance")
        if failure is not None:
            def restore_budget(current):
                if not current:
                    return ABORT
                restored = as_amount(current.get("remainingBudget")) + amount
                if current.get("totalBudget") is not None:
                    restored = min(restored, as_amount(current["totalBudget"]))
                return {**current, "remainingBudget": restored}

            await self._compensate(operation, campaign_path, self.store.compare_and_swap(campaign_path, restore_budget))
            return self._declined(operation, failure)

        self._invalidate(f"wallet:{uid}", "campaigns:all", f"campaign:{campaign_id}")
        logger.info("Deducted %s from campaign %s and wallet %s", amount, campaign_id, uid)
        return True

    async def create_campaign(self, creator_id: str, request: CreateCampaignRequest, *, actor_id: str) -> Campaign:
        """
        Create an active campaign and pay its full budget from the creator's
        added balance. The campaign is marked failed when the wallet cannot
        cover it.
        """
        await self._require(actor_id, creator_id, "You can only create campaigns for yourself")

        total_budget = request.reward_per_worker * request.total_workers
        campaign = Campaign(
            title=request.title,
            description=request.description,
            instructions=request.instructions,
            category=request.category,
            creator_id=creator_id,
            creator_name=request.creator_name,
            total_workers=request.total_workers,
            reward_per_worker=request.reward_per_worker,
            total_budget=total_budget,
            remaining_budget=total_budget,
        )
        campaign_id = await self.store.append_child("campaigns", campaign.to_store())
        campaign_path = f"campaigns/{campaign_id}"

        def pay_budget(balance: WalletBalance):
            if balance.added_balance < total_budget:
                return ABORT
            return {"added_balance": balance.added_balance - total_budget}

        failure = await self._second_leg(
            creator_id, pay_budget, f"Wallet {creator_id} cannot cover campaign budget {total_budget}"
        )
        if failure is not None:
            def mark_failed(current):
                if not current:
                    return ABORT
                return {**current, "status": CampaignStatus.FAILED.value}

            await self._compensate("create_campaign", campaign_path, self.store.compare_and_swap(campaign_path, mark_failed))
            self._declined("create_campaign", failure)
            self._invalidate("campaigns:all")
            return campaign.model_copy(update={"id": campaign_id, "status": CampaignStatus.FAILED.value})

        await self._record_best_effort(creator_id, TransactionRecord(
            type=TransactionType.CAMPAIGN_SPEND,
            amount=total_budget,
            status=RequestStatus.APPROVED,
            description=f"Budget for campaign {request.title}",
            reference_id=campaign_id,
        ))
        self._invalidate(f"wallet:{creator_id}", f"transactions:{creator_id}", "campaigns:all")
        logger.info("Campaign %s created by %s with budget %s", campaign_id, creator_id, total_budget)
        return campaign.model_copy(update={"id": campaign_id})

    async def set_campaign_status(self, campaign_id: str, action: CampaignAction, *, actor_id: str) -> Campaign:
        action = CampaignAction(action)
        campaign_path = f"campaigns/{campaign_id}"
        campaign = await self.store.read(campaign_path)
        if campaign is None:
            raise NotFound(f"Campaign {campaign_id} not found")
        await self._require(actor_id, campaign.get("creatorId", ""), "Only admins can moderate campaigns", Role.ADMIN)

        allowed, target = _CAMPAIGN_TRANSITIONS[action]
        allowed_values = {status.value for status in allowed}
        if campaign.get("status") not in allowed_values:
            raise PreconditionFailed(f"Cannot {action.value} a campaign in {campaign.get('status')} state")

        def transition(current):
            if not current or current.get("status") not in allowed_values:
                return ABORT
            return {**current, "status": target.value}

        result = await self.store.compare_and_swap(campaign_path, transition)
        if not result.committed:
            raise AbortedTransaction(f"Campaign {campaign_id} changed while applying {action.value}")

        self._invalidate("campaigns:all", f"campaign:{campaign_id}")
        logger.info("Campaign %s moved to %s by %s", campaign_id, target.value, actor_id)
        return Campaign.from_store(result.value, id=campaign_id)

    # ------------------------------------------------------------------
    # Work lifecycle
    # ------------------------------------------------------------------

    async def apply_to_campaign(
        self,
        campaign_id: str,
        user_id: str,
        user_name: str = "",
        *,
        actor_id: str,
    ) -> bool:
        """Take an open worker slot and create a pending work paying the campaign reward."""
        operation = "apply_to_campaign"
        if actor_id != user_id:
            raise Unauthorized("You can only apply to campaigns for yourself")

        work_path = f"works/{user_id}/{campaign_id}"
        if await self.store.read(work_path) is not None:
            return self._declined(operation, PreconditionFailed(f"{user_id} already applied to {campaign_id}"))

        campaign_path = f"campaigns/{campaign_id}"
        data = await self.store.read(campaign_path)
        if data is None:
            raise NotFound(f"Campaign {campaign_id} not found")
        campaign = Campaign.from_store(data, id=campaign_id)
        if campaign.status != CampaignStatus.ACTIVE:
            return self._declined(operation, PreconditionFailed(f"Campaign {campaign_id} is {campaign.status}"))
        if not campaign.has_open_slots():
            return self._declined(operation, PreconditionFailed(f"Campaign {campaign_id} is full"))

        def take_slot(current):
            if not current or current.get("status") != CampaignStatus.ACTIVE.value:
                return ABORT
            if current.get("completedWorkers", 0) >= current.get("totalWorkers", 0):
                return ABORT
            return {**current, "completedWorkers": current.get("completedWorkers", 0) + 1}

        slot = await self.store.compare_and_swap(campaign_path, take_slot)
        if not slot.committed:
            return self._declined(operation, AbortedTransaction(f"No open slot left on campaign {campaign_id}"))

        work = WorkSubmission(
            id=campaign_id,
            user_id=user_id,
            user_name=user_name,
            campaign_id=campaign_id,
            reward=campaign.reward_per_worker,
        )

        def create_work(current):
            if current is not None:
                return ABORT
            return work.to_store()

        try:
            created = await self.store.compare_and_swap(work_path, create_work)
            failure = None if created.committed else AbortedTransaction(f"{user_id} already applied to {campaign_id}")
        except InfrastructureFailure as exc:
            failure = exc

        if failure is not None:
            await self._compensate(operation, campaign_path, self.store.compare_and_swap(campaign_path, _release_slot))
            return self._declined(operation, failure)

        self._invalidate(f"works:{user_id}", "campaigns:all", f"campaign:{campaign_id}")
        logger.info("%s applied to campaign %s", user_id, campaign_id)
        return True

    async def submit_work(self, campaign_id: str, user_id: str, proof_url: str, *, actor_id: str) -> bool:
        operation = "submit_work"
        if actor_id != user_id:
            raise Unauthorized("You can only submit work for yourself")

        work_path = f"works/{user_id}/{campaign_id}"
        data = await self.store.read(work_path)
        if data is None:
            raise NotFound(f"{user_id} has not applied to campaign {campaign_id}")
        if not WorkSubmission.from_store(data).can_resubmit():
            return self._declined(operation, PreconditionFailed("Work has already been approved"))

        resubmittable = {WorkStatus.PENDING.value, WorkStatus.REJECTED.value}

        def attach_proof(current):
            if not current or current.get("status") not in resubmittable:
                return ABORT
            return {
                **current,
                "proofUrl": proof_url,
                "status": WorkStatus.PENDING.value,
                "submittedAt": utcnow(),
            }

        result = await self.store.compare_and_swap(work_path, attach_proof)
        if not result.committed:
            return self._declined(operation, AbortedTransaction(f"Work {work_path} changed during submission"))

        self._invalidate(f"works:{user_id}", f"works:{user_id}:{campaign_id}")
        return True

    async def approve_work_and_credit(
        self, work_id: str, user_id: str, campaign_id: str, reward: Any, *, actor_id: str
    ) -> bool:
        operation = "approve_work_and_credit"
        reward = as_amount(reward)
        await self._require(actor_id, user_id, "Only admins can approve work", Role.ADMIN)

        work_path = f"works/{user_id}/{work_id}"
        work = await self.store.read(work_path)
        if work is None:
            raise NotFound(f"Work {work_id} of {user_id} not found")
        if work.get("status") != WorkStatus.PENDING.value:
            return self._declined(operation, PreconditionFailed(f"Work {work_id} is {work.get('status')}"))

        def approve(current):
            if not current or current.get("status") != WorkStatus.PENDING.value:
                return ABORT
            return {**current, "status": WorkStatus.APPROVED.value}

        result = await self.store.compare_and_swap(work_path, approve)
        if not result.committed:
            return self._declined(operation, AbortedTransaction(f"Work {work_id} is no longer pending"))

        def credit(balance: WalletBalance):
            return {"earned_balance": balance.earned_balance + reward}

        failure = await self._second_leg(user_id, credit, f"Wallet {user_id} was not credited")
        if failure is not None:
            def reopen(current):
                if not current or current.get("status") != WorkStatus.APPROVED.value:
                    return ABORT
                return {**current, "status": WorkStatus.PENDING.value}

            await self._compensate(operation, work_path, self.store.compare_and_swap(work_path, reopen))
            return self._declined(operation, failure)

        await self._bump_profile(user_id, {"earnedMoney": reward, "approvedWorks": 1})
        await self._record_best_effort(user_id, TransactionRecord(
            type=TransactionType.EARNING,
            amount=reward,
            status=RequestStatus.APPROVED,
            description="Reward for approved work",
            reference_id=campaign_id,
        ))
        self._invalidate(f"wallet:{user_id}", f"works:{user_id}", f"works:{user_id}:{campaign_id}", f"transactions:{user_id}")
        logger.info("Approved work %s of %s, credited %s", work_id, user_id, reward)
        return True

    async def reject_work(self, work_id: str, user_id: str, campaign_id: str, *, actor_id: str) -> bool:
        """Reject a pending work and give its slot back to the campaign."""
        operation = "reject_work"
        await self._require(actor_id, user_id, "Only admins can reject work", Role.ADMIN)

        work_path = f"works/{user_id}/{work_id}"
        work = await self.store.read(work_path)
        if work is None:
            raise NotFound(f"Work {work_id} of {user_id} not found")
        if work.get("status") != WorkStatus.PENDING.value:
            return self._declined(operation, PreconditionFailed(f"Work {work_id} is {work.get('status')}"))

        def reject(current):
            if not current or current.get("status") != WorkStatus.PENDING.value:
                return ABORT
            return {**current, "status": WorkStatus.REJECTED.value}

        result = await self.store.compare_and_swap(work_path, reject)
        if not result.committed:
            return self._declined(operation, AbortedTransaction(f"Work {work_id} is no longer pending"))

        try:
            await self.store.compare_and_swap(f"campaigns/{campaign_id}", _release_slot)
        except LedgerServiceError:
            logger.exception("Slot on campaign %s not released after rejecting %s", campaign_id, work_id)

        self._invalidate(f"works:{user_id}", "campaigns:all", f"campaign:{campaign_id}")
        logger.info("Rejected work %s of %s", work_id, user_id)
        return True

    # ------------------------------------------------------------------
    # Money requests
    # ------------------------------------------------------------------

    async def request_add_money(
        self, user_id: str, amount: Any, upi_transaction_id: str, *, actor_id: str, user_name: str = ""
    ) -> MoneyRequest:
        amount = as_amount(amount)
        await self._require(actor_id, user_id, "You can only add money to your own wallet")
        self._check_bounds(amount, self.settings.add_money_min, self.settings.add_money_max)

        adjustment = await self.create_transaction_and_adjust_wallet(
            user_id,
            TransactionRecord(
                type=TransactionType.ADD_MONEY,
                amount=amount,
                description="Add money request",
                upi_transaction_id=upi_transaction_id,
            ),
            {"pending_add_money": amount},
            actor_id=actor_id,
        )
        request = MoneyRequest(
            type=MoneyRequestType.ADD_MONEY,
            user_id=user_id,
            user_name=user_name,
            amount=amount,
            upi_transaction_id=upi_transaction_id,
            transaction_id=adjustment.transaction_id,
        )
        request_id = await self.store.append_child(MoneyRequestType.ADD_MONEY.store_path, request.to_store())
        self._invalidate(f"wallet:{user_id}", f"transactions:{user_id}")
        logger.info("Add money request %s for %s: %s", request_id, user_id, amount)
        return request.model_copy(update={"id": request_id})

    async def request_withdrawal(
        self, user_id: str, amount: Any, upi_id: str, *, actor_id: str, user_name: str = ""
    ) -> MoneyRequest:
        amount = as_amount(amount)
        await self._require(actor_id, user_id, "You can only withdraw from your own wallet")
        self._check_bounds(amount, self.settings.withdrawal_min, self.settings.withdrawal_max)

        wallet = WalletBalance.from_store(await self.store.read(f"wallets/{user_id}") or {})
        if wallet.earned_balance < amount:
            raise PreconditionFailed(f"Earned balance {wallet.earned_balance} is below {amount}")

        transaction_id = await self._append_transaction(user_id, TransactionRecord(
            type=TransactionType.WITHDRAWAL,
            amount=amount,
            description="Withdrawal request",
            upi_id=upi_id,
        ))
        request = MoneyRequest(
            type=MoneyRequestType.WITHDRAWAL,
            user_id=user_id,
            user_name=user_name,
            amount=amount,
            upi_id=upi_id,
            transaction_id=transaction_id,
        )
        request_id = await self.store.append_child(MoneyRequestType.WITHDRAWAL.store_path, request.to_store())
        self._invalidate(f"transactions:{user_id}")
        logger.info("Withdrawal request %s for %s: %s", request_id, user_id, amount)
        return request.model_copy(update={"id": request_id})

    async def process_money_request(
        self,
        request_id: str,
        request_type: MoneyRequestType,
        user_id: str,
        amount: Any,
        resolution: RequestStatus,
        *,
        actor_id: str,
    ) -> bool:
        operation = "process_money_request"
        request_type = MoneyRequestType(request_type)
        resolution = RequestStatus(resolution)
        amount = as_amount(amount)
        await self._require(actor_id, user_id, "Only admins can process money requests", Role.ADMIN)

        request_path = f"{request_type.store_path}/{request_id}"
        request = await self.store.read(request_path)
        if request is None:
            raise NotFound(f"Request {request_id} not found")
        if request.get("status") != RequestStatus.PENDING.value:
            return self._declined(operation, PreconditionFailed(f"Request {request_id} is {request.get('status')}"))
        if resolution == RequestStatus.PENDING:
            return self._declined(operation, PreconditionFailed("Resolution must be approved or rejected"))
        if request.get("userId") != user_id or as_amount(request.get("amount")) != amount:
            return self._declined(operation, PreconditionFailed(f"Request {request_id} does not match user or amount"))

        await self.store.write(request_path, {
            "status": resolution.value,
            "resolvedBy": actor_id,
            "resolvedAt": utcnow(),
        })

        if resolution == RequestStatus.REJECTED:
            await self._sync_transaction(user_id, request.get("transactionId"), resolution)
            self._invalidate(f"transactions:{user_id}")
            logger.info("Rejected %s request %s for %s", request_type.value, request_id, user_id)
            return True

        if request_type == MoneyRequestType.ADD_MONEY:
            def settle(balance: WalletBalance):
                return {
                    "added_balance": balance.added_balance + amount,
                    "pending_add_money": max(ZERO, balance.pending_add_money - amount),
                }
        else:
            def settle(balance: WalletBalance):
                if balance.earned_balance < amount:
                    return ABORT
                return {
                    "earned_balance": balance.earned_balance - amount,
                    "total_withdrawn": balance.total_withdrawn + amount,
                }

        failure = await self._second_leg(user_id, settle, f"Wallet {user_id} cannot settle {amount}")
        if failure is not None:
            await self._compensate(operation, request_path, self.store.write(request_path, {
                "status": RequestStatus.PENDING.value,
                "resolvedBy": None,
                "resolvedAt": None,
            }))
            return self._declined(operation, failure)

        if request_type == MoneyRequestType.WITHDRAWAL:
            await self._bump_profile(user_id, {"totalWithdrawn": amount})
        await self._sync_transaction(user_id, request.get("transactionId"), resolution)
        self._invalidate(f"wallet:{user_id}", f"transactions:{user_id}")
        logger.info("Approved %s request %s for %s: %s", request_type.value, request_id, user_id, amount)
        return True

    # ------------------------------------------------------------------
    # Cached reads
    # ------------------------------------------------------------------

    async def fetch_wallet(self, uid: str, *, actor_id: str) -> WalletBalance:
        await self._require(actor_id, uid, "You can only view your own wallet")

        async def load() -> Optional[WalletBalance]:
            data = await self.store.read(f"wallets/{uid}")
            return WalletBalance.from_store(data) if data is not None else None

        return await self.cache.get_or_fetch(f"wallet:{uid}", load) or WalletBalance()

    async def fetch_transactions(self, uid: str, *, actor_id: str) -> list[TransactionRecord]:
        await self._require(actor_id, uid, "You can only view your own transactions")

        async def load() -> list[TransactionRecord]:
            data = await self.store.read(f"transactions/{uid}") or {}
            records = [TransactionRecord.from_store(value, id=key) for key, value in data.items()]
            records.sort(key=lambda r: r.created_at, reverse=True)
            return records

        return await self.cache.get_or_fetch(f"transactions:{uid}", load)

    async def fetch_works(self, uid: str, *, actor_id: str) -> list[WorkSubmission]:
        await self._require(actor_id, uid, "You can only view your own works")

        async def load() -> list[WorkSubmission]:
            data = await self.store.read(f"works/{uid}") or {}
            works = [WorkSubmission.from_store(value, id=key) for key, value in data.items()]
            works.sort(key=lambda w: w.submitted_at, reverse=True)
            return works

        return await self.cache.get_or_fetch(f"works:{uid}", load)

    async def sign_out(self, uid: str, *, actor_id: str) -> None:
        """Drop every cached read belonging to uid."""
        await self._require(actor_id, uid, "You can only end your own session")
        self.cache.clear_user_cache(uid)
        logger.info("Cleared cached reads of %s", uid)

    async def reset_cache(self, *, actor_id: str) -> None:
        await self._require(actor_id, "", "Only admins can reset the read cache", Role.ADMIN)
        self.cache.clear_all()
        logger.info("Read cache reset by %s", actor_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _require(
        self, actor_id: str, owner_id: str, message: str, required_role: Optional[Role] = None
    ) -> None:
        if not await self.authorizer.authorize(actor_id, owner_id, required_role):
            logger.warning("Denied actor=%s owner=%s role=%s", actor_id, owner_id, required_role)
            raise Unauthorized(message)

    async def _wallet_cas(
        self, uid: str, update_fn: WalletUpdate, *, refresh_cache: bool = True
    ) -> Optional[WalletBalance]:
        def apply(current):
            balance = WalletBalance.from_store(current or {})
            update = update_fn(balance)
            if update is ABORT or update is None:
                return ABORT
            update = {_balance_field(name): value for name, value in update.items()}
            merged = WalletBalance.model_validate({**balance.model_dump(), **update})
            return {**(current or {}), **merged.to_store()}

        result = await self.store.compare_and_swap(f"wallets/{uid}", apply)
        if not result.committed:
            return None
        wallet = WalletBalance.from_store(result.value)
        if refresh_cache:
            self.cache.set(f"wallet:{uid}", wallet)
        return wallet

    async def _second_leg(self, uid: str, update_fn: WalletUpdate, abort_message: str) -> Optional[LedgerServiceError]:
        """Run the wallet leg of a transfer and return the failure, if any."""
        try:
            wallet = await self._wallet_cas(uid, update_fn, refresh_cache=False)
        except InfrastructureFailure as exc:
            return exc
        if wallet is None:
            return AbortedTransaction(abort_message)
        return None

    async def _compensate(self, operation: str, path: str, pending_write: Awaitable[Any]) -> None:
        try:
            result = await pending_write
        except Exception:
            logger.exception("Compensation for %s on %s failed; manual reconciliation required", operation, path)
            raise
        if isinstance(result, CASResult) and not result.committed:
            logger.error("Compensation for %s on %s did not commit; manual reconciliation required", operation, path)
            raise InfrastructureFailure(f"Compensation for {operation} did not commit on {path}")
        logger.warning("Compensated %s on %s", operation, path)

    def _declined(self, operation: str, error: LedgerServiceError) -> bool:
        logger.warning("%s declined (%s): %s", operation, type(error).__name__, error)
        return False

    def _invalidate(self, *keys: str) -> None:
        for key in keys:
            self.cache.clear(key)

    def _check_bounds(self, amount: Decimal, minimum: Decimal, maximum: Decimal) -> None:
        if amount < minimum or amount > maximum:
            raise PreconditionFailed(f"Amount must be between {minimum} and {maximum}, got {amount}")

    async def _append_transaction(self, uid: str, transaction: TransactionRecord) -> str:
        return await self.store.append_child(f"transactions/{uid}", transaction.to_store())

    async def _record_best_effort(self, uid: str, transaction: TransactionRecord) -> None:
        try:
            await self._append_transaction(uid, transaction)
        except LedgerServiceError:
            logger.exception("Could not record %s transaction for %s", transaction.type, uid)

    async def _sync_transaction(self, uid: str, transaction_id: Optional[str], status: RequestStatus) -> None:
        if not transaction_id:
            return

        def resolve(current):
            if not current or current.get("status") != RequestStatus.PENDING.value:
                return ABORT
            return {**current, "status": status.value}

        try:
            await self.store.compare_and_swap(f"transactions/{uid}/{transaction_id}", resolve)
        except LedgerServiceError:
            logger.exception("Transaction %s/%s status not updated to %s", uid, transaction_id, status.value)

    async def _bump_profile(self, uid: str, increments: dict[str, Any]) -> None:
        """
        Add increments to the aggregate counters of users/{uid}.

        Profiles are written by other clients, so stored counters may be
        floats, strings or junk. Failures are logged and never undo the
        money movement that already committed.
        """
        def bump(current):
            if not current:
                return ABORT
            return {**current, **{key: _increment(current.get(key), delta) for key, delta in increments.items()}}

        try:
            await self.store.compare_and_swap(f"users/{uid}", bump)
        except (LedgerServiceError, TypeError, ValueError, ArithmeticError):
            logger.exception("Profile counters of %s not updated", uid)
        self._invalidate(f"user:{uid}")


def _increment(value: Any, delta: Any) -> Union[int, Decimal]:
    # counts stay ints, money becomes Decimal
    if isinstance(delta, int):
        return int(value or 0) + delta
    return as_amount(value) + as_amount(delta)


def _release_slot(current):
    if not current or current.get("completedWorkers", 0) <= 0:
        return ABORT
    return {**current, "completedWorkers": current["completedWorkers"] - 1}

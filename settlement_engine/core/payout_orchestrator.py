"""
Payout orchestration for weekly settlements.

State machine: pending -> processing -> {completed, failed}; pending -> failed.
completed and failed are terminal.

Every transition is a guarded conditional UPDATE that only succeeds while
the stored status still matches the expected pre-state; this is what
serializes concurrent operator actions on a row.

Initiation flow:
1. Validate preconditions and claim the row with a fresh attempt key
2. Resolve (or create and remember) the payee and funding destination
3. Request the payout for the net amount, in minor units
4. Record the outcome: processing, failed, released for retry, or flagged
   for reconciliation when the gateway outcome is ambiguous

Anything else that interrupts an attempt after the payout request was sent
(cancellation, a crash) also leaves it for reconciliation.
"""
import asyncio
import uuid
from decimal import Decimal
from typing import Any, Dict, NamedTuple, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database.models import RestaurantPayoutAccount, SettlementStatus, WeeklySettlement
from ..integrations.gateway import GatewayError, GatewayErrorType, PayoutGateway, PayoutResult
from ..integrations.webhook_handler import GatewayEvent
from ..monitoring import metrics
from .events import record_event, utcnow
from .exceptions import (
    PayoutAccountMissingError,
    SettlementNotFoundError,
    SettlementValidationError,
    StateTransitionError,
)
from .money import to_minor_units

logger = structlog.get_logger(__name__)

PENDING = SettlementStatus.PENDING.value
PROCESSING = SettlementStatus.PROCESSING.value
COMPLETED = SettlementStatus.COMPLETED.value
FAILED = SettlementStatus.FAILED.value

ALLOWED_TRANSITIONS = {
    PENDING: {PROCESSING, FAILED},
    PROCESSING: {COMPLETED, FAILED},
    COMPLETED: set(),
    FAILED: set(),
}

REJECTED_PAYOUT_STATUSES = {"failed", "rejected", "reversed", "cancelled"}
FAILURE_EVENTS = {"payout.failed", "payout.reversed", "payout.rejected"}


class PayoutTarget(NamedTuple):
    """Snapshot of what an initiate attempt pays and to whom."""

    settlement_id: int
    restaurant_id: int
    year_week: int
    amount_minor_units: int
    transfer_mode: str
    account_id: int
    beneficiary_name: str
    email: Optional[str]
    phone: Optional[str]
    method: str
    vpa: Optional[str]
    ifsc: Optional[str]
    account_number: Optional[str]
    gateway_contact_id: Optional[str]
    gateway_fund_account_id: Optional[str]


class PayoutOrchestrator:
    """
    Drives settlements through the payout lifecycle.

    Completion is never inferred from a successful initiate call: payouts
    settle asynchronously and are confirmed by webhook or operator action.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PayoutGateway,
        default_transfer_mode: str = "IMPS",
    ):
        """
        Initialize payout orchestrator.

        Args:
            session_factory: Async session factory
            gateway: Payout gateway adapter
            default_transfer_mode: Mode used when a restaurant has no preference
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.default_transfer_mode = default_transfer_mode

    # ------------------------------------------------------------------
    # initiate
    # ------------------------------------------------------------------

    async def initiate(self, settlement_id: int) -> WeeklySettlement:
        """
        Pay out a pending settlement's net amount.

        Returns:
            WeeklySettlement: The settlement, now processing

        Raises:
            SettlementNotFoundError: If the settlement does not exist
            StateTransitionError: If the settlement is not initiable
            PayoutAccountMissingError: If the restaurant has no payout account
            SettlementValidationError: If the amount or account details are unusable
            GatewayError: If the gateway rejected the request (retryable or not)
            GatewayAmbiguousError: If the payout outcome is unknown
        """
        correlation_id = str(uuid.uuid4())
        attempt_key = uuid.uuid4().hex
        log = logger.bind(
            correlation_id=correlation_id, settlement_id=settlement_id, attempt_key=attempt_key
        )
        log.info("payout_initiation_started")

        target = await self._claim(settlement_id, attempt_key, correlation_id)
        metrics.payout_amount_minor_units.observe(target.amount_minor_units)

        try:
            fund_account_id = await self._ensure_funding_destination(target)
        except ValueError as e:
            await self._release_claim(target, attempt_key, correlation_id, str(e))
            raise SettlementValidationError(
                f"Payout account of restaurant {target.restaurant_id} is invalid: {e}",
                restaurant_id=target.restaurant_id,
            ) from e
        except GatewayError as e:
            await self._handle_setup_error(target, attempt_key, correlation_id, e)
            raise
        except BaseException as e:
            # No payout requested yet
            await asyncio.shield(
                self._release_claim(target, attempt_key, correlation_id, f"interrupted: {e!r}")
            )
            raise

        try:
            payout = await self.gateway.create_payout(
                fund_account_id,
                target.amount_minor_units,
                target.transfer_mode,
                f"Settlement {target.year_week}",
                reference_id=attempt_key,
                idempotency_key=attempt_key,
            )
        except GatewayError as e:
            if e.error_type == GatewayErrorType.AMBIGUOUS:
                await self._flag_for_reconciliation(target, attempt_key, correlation_id, str(e))
                metrics.payout_initiations_total.labels(outcome="ambiguous").inc()
                log.error("payout_outcome_ambiguous", error=str(e))
            elif e.retryable:
                await self._release_claim(target, attempt_key, correlation_id, str(e))
                metrics.payout_initiations_total.labels(outcome="retryable").inc()
            else:
                await self._fail_attempt(target, attempt_key, correlation_id, str(e))
                metrics.payout_initiations_total.labels(outcome="rejected").inc()
            raise
        except BaseException as e:
            await asyncio.shield(
                self._flag_for_reconciliation(
                    target, attempt_key, correlation_id, f"payout request interrupted: {e!r}"
                )
            )
            metrics.payout_initiations_total.labels(outcome="ambiguous").inc()
            log.error("payout_request_interrupted", error=repr(e))
            raise

        if payout.status.lower() in REJECTED_PAYOUT_STATUSES:
            reason = payout.failure_reason or f"payout {payout.payout_id} {payout.status}"
            await self._fail_attempt(target, attempt_key, correlation_id, reason, payout)
            metrics.payout_initiations_total.labels(outcome="rejected").inc()
            raise GatewayError(reason, GatewayErrorType.PERMANENT)

        await self._mark_processing(target, attempt_key, correlation_id, payout)
        metrics.payout_initiations_total.labels(outcome="processing").inc()
        log.info("payout_initiated", payout_id=payout.payout_id, payout_status=payout.status)
        return await self.get(settlement_id)

    async def _claim(
        self, settlement_id: int, attempt_key: str, correlation_id: str
    ) -> PayoutTarget:
        async with self.session_factory() as session:
            async with session.begin():
                settlement = await self._load(session, settlement_id)
                self._ensure_initiable(settlement)

                account = (
                    await session.execute(
                        select(RestaurantPayoutAccount).where(
                            RestaurantPayoutAccount.restaurant_id == settlement.restaurant_id
                        )
                    )
                ).scalar_one_or_none()
                if account is None:
                    raise PayoutAccountMissingError(settlement.restaurant_id)

                net = Decimal(settlement.net_amount)
                if net <= 0:
                    raise SettlementValidationError(
                        f"Settlement {settlement_id} has no positive net amount ({net})",
                        settlement_id=settlement_id,
                    )
                amount_minor_units = to_minor_units(net)

                claimed = await session.execute(
                    update(WeeklySettlement)
                    .where(
                        WeeklySettlement.id == settlement_id,
                        WeeklySettlement.status == PENDING,
                        WeeklySettlement.needs_reconciliation.is_(False),
                        WeeklySettlement.payout_attempt_key.is_(None),
                    )
                    .values(payout_attempt_key=attempt_key, updated_at=utcnow())
                )
                if claimed.rowcount == 0:
                    raise StateTransitionError(
                        settlement_id,
                        "initiate",
                        settlement.status,
                        (PENDING,),
                        reason="another payout attempt claimed the settlement",
                    )

                mode = (account.transfer_mode or self.default_transfer_mode).upper()
                record_event(
                    session,
                    settlement_id,
                    "payout.attempt_started",
                    {
                        "attempt_key": attempt_key,
                        "amount_minor_units": amount_minor_units,
                        "transfer_mode": mode,
                    },
                    correlation_id,
                )
                return PayoutTarget(
                    settlement_id=settlement_id,
                    restaurant_id=settlement.restaurant_id,
                    year_week=settlement.year_week,
                    amount_minor_units=amount_minor_units,
                    transfer_mode=mode,
                    account_id=account.id,
                    beneficiary_name=account.beneficiary_name,
                    email=account.email,
                    phone=account.phone,
                    method=account.method,
                    vpa=account.vpa,
                    ifsc=account.ifsc,
                    account_number=account.account_number,
                    gateway_contact_id=account.gateway_contact_id,
                    gateway_fund_account_id=account.gateway_fund_account_id,
                )

    @staticmethod
    def _ensure_initiable(settlement: WeeklySettlement) -> None:
        if settlement.status != PENDING:
            raise StateTransitionError(settlement.id, "initiate", settlement.status, (PENDING,))
        if settlement.needs_reconciliation:
            raise StateTransitionError(
                settlement.id,
                "initiate",
                settlement.status,
                (PENDING,),
                reason="a previous payout attempt is awaiting reconciliation",
            )
        if settlement.payout_attempt_key is not None:
            raise StateTransitionError(
                settlement.id,
                "initiate",
                settlement.status,
                (PENDING,),
                reason="a payout attempt is already in progress",
            )

    async def _ensure_funding_destination(self, target: PayoutTarget) -> str:
        """Reuse the restaurant's gateway identities, creating missing ones once."""
        if target.gateway_fund_account_id:
            return target.gateway_fund_account_id

        contact_id = target.gateway_contact_id
        if not contact_id:
            created = await self.gateway.create_payee(
                target.beneficiary_name,
                email=target.email,
                contact=target.phone,
                reference_id=f"restaurant-{target.restaurant_id}",
            )
            contact_id = await self._remember_identity(
                target.account_id, "gateway_contact_id", created
            )

        if target.method == "upi":
            details: Dict[str, Any] = {"vpa": target.vpa}
        else:
            details = {
                "name": target.beneficiary_name,
                "ifsc": target.ifsc,
                "account_number": target.account_number,
            }
        created = await self.gateway.create_funding_destination(contact_id, target.method, details)
        return await self._remember_identity(target.account_id, "gateway_fund_account_id", created)

    async def _remember_identity(self, account_id: int, column: str, value: str) -> str:
        """
        Store a gateway identity unless one was stored concurrently.

        Returns:
            str: The identity now linked to the restaurant
        """
        field = getattr(RestaurantPayoutAccount, column)
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(RestaurantPayoutAccount)
                    .where(RestaurantPayoutAccount.id == account_id, field.is_(None))
                    .values({column: value, "updated_at": utcnow()})
                )
                stored = (
                    await session.execute(select(field).where(RestaurantPayoutAccount.id == account_id))
                ).scalar_one()
        if stored != value:
            logger.warning(
                "gateway_identity_superseded", account_id=account_id, column=column, kept=stored
            )
        return stored

    async def _handle_setup_error(
        self, target: PayoutTarget, attempt_key: str, correlation_id: str, error: GatewayError
    ) -> None:
        # No money moves while resolving payee/funding, so only a clear
        # rejection is terminal.
        if error.error_type == GatewayErrorType.PERMANENT:
            await self._fail_attempt(target, attempt_key, correlation_id, str(error))
            metrics.payout_initiations_total.labels(outcome="rejected").inc()
        else:
            await self._release_claim(target, attempt_key, correlation_id, str(error))
            metrics.payout_initiations_total.labels(outcome="retryable").inc()

    async def _release_claim(
        self, target: PayoutTarget, attempt_key: str, correlation_id: str, reason: str
    ) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(WeeklySettlement)
                    .where(
                        WeeklySettlement.id == target.settlement_id,
                        WeeklySettlement.payout_attempt_key == attempt_key,
                        WeeklySettlement.status == PENDING,
                    )
                    .values(payout_attempt_key=None, updated_at=utcnow())
                )
                record_event(
                    session,
                    target.settlement_id,
                    "payout.attempt_released",
                    {"attempt_key": attempt_key, "reason": reason},
                    correlation_id,
                )
        logger.warning(
            "payout_attempt_released",
            settlement_id=target.settlement_id,
            attempt_key=attempt_key,
            reason=reason,
        )

    async def _flag_for_reconciliation(
        self, target: PayoutTarget, attempt_key: str, correlation_id: str, reason: str
    ) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(WeeklySettlement)
                    .where(
                        WeeklySettlement.id == target.settlement_id,
                        WeeklySettlement.payout_attempt_key == attempt_key,
                    )
                    .values(needs_reconciliation=True, updated_at=utcnow())
                )
                record_event(
                    session,
                    target.settlement_id,
                    "payout.reconciliation_required",
                    {"attempt_key": attempt_key, "reason": reason},
                    correlation_id,
                )

    async def _fail_attempt(
        self,
        target: PayoutTarget,
        attempt_key: str,
        correlation_id: str,
        reason: str,
        payout: Optional[PayoutResult] = None,
    ) -> None:
        now = utcnow()
        values: Dict[str, Any] = {
            "status": FAILED,
            "failure_reason": reason,
            "failed_at": now,
            "updated_at": now,
        }
        if payout is not None:
            values.update(payout_id=payout.payout_id, payout_reference=payout.reference)

        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(WeeklySettlement)
                    .where(
                        WeeklySettlement.id == target.settlement_id,
                        WeeklySettlement.status == PENDING,
                        WeeklySettlement.payout_attempt_key == attempt_key,
                        WeeklySettlement.needs_reconciliation.is_(False),
                    )
                    .values(**values)
                )
                if result.rowcount:
                    record_event(
                        session,
                        target.settlement_id,
                        "settlement.failed",
                        {"attempt_key": attempt_key, "reason": reason},
                        correlation_id,
                    )
        if result.rowcount:
            metrics.settlement_transitions_total.labels(from_status=PENDING, to_status=FAILED).inc()
        logger.error(
            "payout_rejected",
            settlement_id=target.settlement_id,
            attempt_key=attempt_key,
            reason=reason,
            recorded=bool(result.rowcount),
        )

    async def _mark_processing(
        self, target: PayoutTarget, attempt_key: str, correlation_id: str, payout: PayoutResult
    ) -> None:
        now = utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(WeeklySettlement)
                    .where(
                        WeeklySettlement.id == target.settlement_id,
                        WeeklySettlement.status == PENDING,
                        WeeklySettlement.payout_attempt_key == attempt_key,
                        WeeklySettlement.needs_reconciliation.is_(False),
                    )
                    .values(
                        status=PROCESSING,
                        payout_id=payout.payout_id,
                        payout_reference=payout.reference,
                        processing_at=now,
                        updated_at=now,
                    )
                )
                if result.rowcount:
                    record_event(
                        session,
                        target.settlement_id,
                        "settlement.processing",
                        {
                            "attempt_key": attempt_key,
                            "payout_id": payout.payout_id,
                            "payout_reference": payout.reference,
                            "payout_status": payout.status,
                        },
                        correlation_id,
                    )

        if result.rowcount == 0:
            # A payout exists at the gateway but the row moved on meanwhile
            await self._flag_for_reconciliation(
                target, attempt_key, correlation_id, f"payout {payout.payout_id} created after row changed"
            )
            logger.critical(
                "payout_created_for_changed_settlement",
                settlement_id=target.settlement_id,
                payout_id=payout.payout_id,
            )
            current = await self.get(target.settlement_id)
            raise StateTransitionError(
                target.settlement_id,
                "initiate",
                current.status,
                (PENDING,),
                reason=f"settlement changed while payout {payout.payout_id} was created",
            )
        metrics.settlement_transitions_total.labels(from_status=PENDING, to_status=PROCESSING).inc()

    # ------------------------------------------------------------------
    # explicit transitions
    # ------------------------------------------------------------------

    async def mark_completed(
        self, settlement_id: int, correlation_id: Optional[str] = None
    ) -> WeeklySettlement:
        """
        Confirm a processing settlement's payout has settled.

        Raises:
            SettlementNotFoundError: If the settlement does not exist
            StateTransitionError: If the settlement is not processing
        """
        now = utcnow()
        return await self._transition(
            settlement_id,
            "mark_completed",
            (PROCESSING,),
            COMPLETED,
            {"completed_at": now},
            {},
            correlation_id,
        )

    async def mark_failed(
        self, settlement_id: int, reason: str, correlation_id: Optional[str] = None
    ) -> WeeklySettlement:
        """
        Fail a pending or processing settlement.

        Raises:
            SettlementValidationError: If no reason is given
            SettlementNotFoundError: If the settlement does not exist
            StateTransitionError: If the settlement is completed, failed or
                awaiting reconciliation
        """
        if not reason or not reason.strip():
            raise SettlementValidationError("A failure reason is required")
        now = utcnow()
        return await self._transition(
            settlement_id,
            "mark_failed",
            (PENDING, PROCESSING),
            FAILED,
            {"failed_at": now, "failure_reason": reason.strip()},
            {"reason": reason.strip()},
            correlation_id,
        )

    async def _transition(
        self,
        settlement_id: int,
        action: str,
        expected: tuple,
        target_status: str,
        values: Dict[str, Any],
        event_data: Dict[str, Any],
        correlation_id: Optional[str],
    ) -> WeeklySettlement:
        correlation_id = correlation_id or str(uuid.uuid4())
        async with self.session_factory() as session:
            async with session.begin():
                settlement = await self._load(session, settlement_id)
                current = settlement.status
                if current not in expected or target_status not in ALLOWED_TRANSITIONS[current]:
                    raise StateTransitionError(settlement_id, action, current, expected)
                if settlement.needs_reconciliation:
                    raise StateTransitionError(
                        settlement_id,
                        action,
                        current,
                        expected,
                        reason="a payout attempt is awaiting reconciliation",
                    )

                result = await session.execute(
                    update(WeeklySettlement)
                    .where(
                        WeeklySettlement.id == settlement_id,
                        WeeklySettlement.status == current,
                        WeeklySettlement.needs_reconciliation.is_(False),
                    )
                    .values(status=target_status, updated_at=utcnow(), **values)
                )
                if result.rowcount == 0:
                    raise StateTransitionError(
                        settlement_id,
                        action,
                        current,
                        expected,
                        reason="settlement was modified concurrently",
                    )
                record_event(
                    session,
                    settlement_id,
                    f"settlement.{target_status}",
                    {"from_status": current, **event_data},
                    correlation_id,
                )

        metrics.settlement_transitions_total.labels(
            from_status=current, to_status=target_status
        ).inc()
        logger.info(
            "settlement_transitioned",
            correlation_id=correlation_id,
            settlement_id=settlement_id,
            from_status=current,
            to_status=target_status,
        )
        return await self.get(settlement_id)

    # ------------------------------------------------------------------
    # reconciliation of ambiguous attempts
    # ------------------------------------------------------------------

    async def record_reconciled_payout(
        self, settlement_id: int, payout_id: str, reference: Optional[str] = None
    ) -> WeeklySettlement:
        """
        Resolve an ambiguous attempt whose payout exists at the gateway.

        Raises:
            StateTransitionError: If the settlement is not pending and flagged
        """
        now = utcnow()
        return await self._resolve_reconciliation(
            settlement_id,
            "record_reconciled_payout",
            {
                "status": PROCESSING,
                "payout_id": payout_id,
                "payout_reference": reference,
                "processing_at": now,
            },
            "settlement.processing",
            {"payout_id": payout_id, "payout_reference": reference, "reconciled": True},
        )

    async def clear_reconciliation(
        self, settlement_id: int, note: str = "no payout found at gateway"
    ) -> WeeklySettlement:
        """
        Resolve an ambiguous attempt that created no payout.

        The settlement stays pending and can be initiated again.

        Raises:
            StateTransitionError: If the settlement is not pending and flagged
        """
        return await self._resolve_reconciliation(
            settlement_id,
            "clear_reconciliation",
            {"payout_attempt_key": None},
            "payout.reconciliation_cleared",
            {"note": note},
        )

    async def flag_stale_attempt(self, settlement_id: int, attempt_key: str, reason: str) -> bool:
        """
        Hand an attempt that never recorded an outcome to reconciliation.

        Returns:
            bool: False if the attempt finished or was released meanwhile
        """
        correlation_id = str(uuid.uuid4())
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(WeeklySettlement)
                    .where(
                        WeeklySettlement.id == settlement_id,
                        WeeklySettlement.status == PENDING,
                        WeeklySettlement.payout_attempt_key == attempt_key,
                        WeeklySettlement.needs_reconciliation.is_(False),
                    )
                    .values(needs_reconciliation=True, updated_at=utcnow())
                )
                if result.rowcount:
                    record_event(
                        session,
                        settlement_id,
                        "payout.reconciliation_required",
                        {"attempt_key": attempt_key, "reason": reason},
                        correlation_id,
                    )
        if result.rowcount:
            logger.error(
                "payout_attempt_stale",
                settlement_id=settlement_id,
                attempt_key=attempt_key,
                reason=reason,
            )
        return bool(result.rowcount)

    async def _resolve_reconciliation(
        self,
        settlement_id: int,
        action: str,
        values: Dict[str, Any],
        event_type: str,
        event_data: Dict[str, Any],
    ) -> WeeklySettlement:
        correlation_id = str(uuid.uuid4())
        async with self.session_factory() as session:
            async with session.begin():
                settlement = await self._load(session, settlement_id)
                if settlement.status != PENDING:
                    raise StateTransitionError(settlement_id, action, settlement.status, (PENDING,))
                if not settlement.needs_reconciliation:
                    raise StateTransitionError(
                        settlement_id,
                        action,
                        settlement.status,
                        (PENDING,),
                        reason="settlement is not awaiting reconciliation",
                    )
                result = await session.execute(
                    update(WeeklySettlement)
                    .where(
                        WeeklySettlement.id == settlement_id,
                        WeeklySettlement.status == PENDING,
                        WeeklySettlement.needs_reconciliation.is_(True),
                    )
                    .values(needs_reconciliation=False, updated_at=utcnow(), **values)
                )
                if result.rowcount == 0:
                    raise StateTransitionError(
                        settlement_id,
                        action,
                        settlement.status,
                        (PENDING,),
                        reason="settlement was modified concurrently",
                    )
                record_event(
                    session,
                    settlement_id,
                    event_type,
                    {"attempt_key": settlement.payout_attempt_key, **event_data},
                    correlation_id,
                )

        if values.get("status") == PROCESSING:
            metrics.settlement_transitions_total.labels(
                from_status=PENDING, to_status=PROCESSING
            ).inc()
        logger.info("settlement_reconciled", settlement_id=settlement_id, action=action)
        return await self.get(settlement_id)

    # ------------------------------------------------------------------
    # gateway confirmations
    # ------------------------------------------------------------------

    async def apply_gateway_event(self, event: GatewayEvent) -> Optional[WeeklySettlement]:
        """
        Apply a webhook confirmation to the settlement holding its payout.

        Duplicate deliveries and events for unknown payouts are ignored.

        Returns:
            Optional[WeeklySettlement]: The updated settlement, if any
        """
        async with self.session_factory() as session:
            settlement = (
                await session.execute(
                    select(WeeklySettlement).where(WeeklySettlement.payout_id == event.payout_id)
                )
            ).scalar_one_or_none()

        if settlement is None:
            logger.warning(
                "gateway_event_for_unknown_payout",
                event_type=event.event_type,
                payout_id=event.payout_id,
            )
            return None

        correlation_id = event.event_id or str(uuid.uuid4())
        if event.event_type == "payout.processed":
            if settlement.status == COMPLETED:
                logger.info("gateway_event_duplicate", payout_id=event.payout_id)
                return settlement
            return await self.mark_completed(settlement.id, correlation_id=correlation_id)

        if event.event_type in FAILURE_EVENTS:
            if settlement.status == FAILED:
                logger.info("gateway_event_duplicate", payout_id=event.payout_id)
                return settlement
            if settlement.status == COMPLETED:
                logger.critical(
                    "payout_failure_after_completion",
                    settlement_id=settlement.id,
                    payout_id=event.payout_id,
                    event_type=event.event_type,
                )
                return settlement
            reason = event.failure_reason or f"gateway reported {event.event_type}"
            return await self.mark_failed(settlement.id, reason, correlation_id=correlation_id)

        logger.info("gateway_event_ignored", event_type=event.event_type)
        return None

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    async def get(self, settlement_id: int) -> WeeklySettlement:
        """
        Load a settlement.

        Raises:
            SettlementNotFoundError: If the settlement does not exist
        """
        async with self.session_factory() as session:
            return await self._load(session, settlement_id)

    @staticmethod
    async def _load(session: AsyncSession, settlement_id: int) -> WeeklySettlement:
        settlement = await session.get(WeeklySettlement, settlement_id, populate_existing=True)
        if settlement is None:
            raise SettlementNotFoundError(settlement_id)
        return settlement

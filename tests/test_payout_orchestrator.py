"""
Tests for the settlement payout lifecycle.
"""
import asyncio
import json
from decimal import Decimal
from typing import Any, List
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import select, update

from settlement_engine.core.exceptions import (
    PayoutAccountMissingError,
    SettlementNotFoundError,
    SettlementValidationError,
    StateTransitionError,
)
from settlement_engine.core.money import to_minor_units
from settlement_engine.core.payout_orchestrator import PayoutOrchestrator
from settlement_engine.core.reconciliation import ReconciliationEngine
from settlement_engine.core.settlement_store import SettlementStore
from settlement_engine.core.week_calculator import WeekRange
from settlement_engine.database.models import (
    Order,
    RestaurantPayoutAccount,
    SettlementEvent,
)
from settlement_engine.integrations.gateway import (
    GatewayAmbiguousError,
    GatewayError,
    GatewayErrorType,
    PayoutResult,
)
from settlement_engine.integrations.webhook_handler import (
    GatewayEvent,
    WebhookHandler,
    register_payout_handlers,
)


@pytest_asyncio.fixture
async def settlement_id(
    store: SettlementStore, seed_orders: Any, seed_payout_account: Any, at_ist: Any, week: WeekRange
) -> int:
    """Pending settlement for restaurant 101: gross 1000.00, net 900.00."""
    await seed_orders(
        [
            ("ord-1", 101, "delivered", "400.00", at_ist(7)),
            ("ord-2", 101, "delivered", "350.00", at_ist(8)),
            ("ord-3", 101, "delivered", "250.00", at_ist(9)),
        ]
    )
    await seed_payout_account(101)
    return (await store.upsert_week(week)).created[0]


async def _event_types(session_factory: Any, settlement_id: int) -> List[str]:
    async with session_factory() as session:
        stmt = (
            select(SettlementEvent.event_type)
            .where(SettlementEvent.settlement_id == settlement_id)
            .order_by(SettlementEvent.id)
        )
        return list((await session.execute(stmt)).scalars().all())


async def _account(session_factory: Any, restaurant_id: int) -> RestaurantPayoutAccount:
    async with session_factory() as session:
        stmt = select(RestaurantPayoutAccount).where(
            RestaurantPayoutAccount.restaurant_id == restaurant_id
        )
        return (await session.execute(stmt)).scalar_one()


class TestInitiate:
    """Payout initiation."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initiate_success(
        self, orchestrator: PayoutOrchestrator, gateway: AsyncMock, settlement_id: int
    ) -> None:
        """A pending settlement moves to processing with the gateway payout id."""
        settlement = await orchestrator.initiate(settlement_id)

        assert settlement.status == "processing"
        assert settlement.payout_id == "pout_test_123"
        assert settlement.processing_at is not None
        assert settlement.needs_reconciliation is False

        gateway.create_payee.assert_awaited_once()
        gateway.create_funding_destination.assert_awaited_once_with(
            "cont_test_123", "upi", {"vpa": "restaurant101@upi"}
        )
        args, kwargs = gateway.create_payout.call_args
        assert args == ("fa_test_123", 90000, "IMPS", "Settlement 202502")
        assert kwargs["idempotency_key"] == settlement.payout_attempt_key
        assert kwargs["reference_id"] == settlement.payout_attempt_key
        assert isinstance(args[1], int)

        assert await _event_types(orchestrator.session_factory, settlement_id) == [
            "settlement.created",
            "payout.attempt_started",
            "settlement.processing",
        ]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_identities_remembered(
        self, orchestrator: PayoutOrchestrator, gateway: AsyncMock, settlement_id: int
    ) -> None:
        """Contact and fund account ids are stored on the restaurant's account."""
        await orchestrator.initiate(settlement_id)

        account = await _account(orchestrator.session_factory, 101)
        assert account.gateway_contact_id == "cont_test_123"
        assert account.gateway_fund_account_id == "fa_test_123"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stored_identities_reused(
        self,
        orchestrator: PayoutOrchestrator,
        gateway: AsyncMock,
        store: SettlementStore,
        seed_orders: Any,
        seed_payout_account: Any,
        at_ist: Any,
        week: WeekRange,
    ) -> None:
        """Known fund accounts skip payee creation; the account's mode wins."""
        await seed_orders([("ord-9", 202, "delivered", "100.00", at_ist(7))])
        await seed_payout_account(
            202,
            method="bank_account",
            transfer_mode="NEFT",
            contact_id="cont_existing",
            fund_account_id="fa_existing",
        )
        settlement_id = (await store.upsert_week(week)).created[0]

        await orchestrator.initiate(settlement_id)

        gateway.create_payee.assert_not_called()
        gateway.create_funding_destination.assert_not_called()
        args, _ = gateway.create_payout.call_args
        assert args[:3] == ("fa_existing", 9000, "NEFT")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initiate_requires_pending(
        self, orchestrator: PayoutOrchestrator, gateway: AsyncMock, settlement_id: int
    ) -> None:
        """A processing settlement cannot be initiated again."""
        await orchestrator.initiate(settlement_id)
        gateway.reset_mock()

        with pytest.raises(StateTransitionError) as exc_info:
            await orchestrator.initiate(settlement_id)

        assert exc_info.value.current_status == "processing"
        gateway.create_payout.assert_not_called()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_payout_account(
        self,
        orchestrator: PayoutOrchestrator,
        gateway: AsyncMock,
        store: SettlementStore,
        seed_orders: Any,
        at_ist: Any,
        week: WeekRange,
    ) -> None:
        """No gateway call happens without a payout account."""
        await seed_orders([("ord-1", 303, "delivered", "100.00", at_ist(7))])
        settlement_id = (await store.upsert_week(week)).created[0]

        with pytest.raises(PayoutAccountMissingError):
            await orchestrator.initiate(settlement_id)

        settlement = await orchestrator.get(settlement_id)
        assert settlement.status == "pending"
        assert settlement.payout_attempt_key is None
        gateway.create_payee.assert_not_called()
        gateway.create_payout.assert_not_called()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_zero_net_rejected(
        self,
        orchestrator: PayoutOrchestrator,
        gateway: AsyncMock,
        store: SettlementStore,
        seed_orders: Any,
        seed_payout_account: Any,
        at_ist: Any,
        week: WeekRange,
    ) -> None:
        """Nothing is paid for a settlement with no positive net amount."""
        await seed_orders([("free-meal", 404, "delivered", "0.00", at_ist(7))])
        await seed_payout_account(404)
        settlement_id = (await store.upsert_week(week)).created[0]

        with pytest.raises(SettlementValidationError, match="no positive net"):
            await orchestrator.initiate(settlement_id)

        gateway.create_payout.assert_not_called()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_settlement(self, orchestrator: PayoutOrchestrator) -> None:
        """Unknown ids are reported as not found."""
        with pytest.raises(SettlementNotFoundError):
            await orchestrator.initiate(999)


class TestGatewayFailures:
    """Classification of gateway failures during initiation."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_permanent_rejection_fails_settlement(
        self, orchestrator: PayoutOrchestrator, gateway: AsyncMock, settlement_id: int
    ) -> None:
        """A clear rejection records the reason and fails the settlement."""
        gateway.create_payout.side_effect = GatewayError(
            "Invalid fund account", GatewayErrorType.PERMANENT, status_code=400
        )

        with pytest.raises(GatewayError):
            await orchestrator.initiate(settlement_id)

        settlement = await orchestrator.get(settlement_id)
        assert settlement.status == "failed"
        assert settlement.failure_reason == "Invalid fund account"
        assert settlement.failed_at is not None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transient_failure_leaves_pending(
        self, orchestrator: PayoutOrchestrator, gateway: AsyncMock, settlement_id: int
    ) -> None:
        """A request known not to have been processed can be retried."""
        gateway.create_payout.side_effect = GatewayError(
            "Service unavailable", GatewayErrorType.TRANSIENT, status_code=503
        )

        with pytest.raises(GatewayError):
            await orchestrator.initiate(settlement_id)

        settlement = await orchestrator.get(settlement_id)
        assert settlement.status == "pending"
        assert settlement.payout_attempt_key is None
        assert settlement.needs_reconciliation is False

        gateway.create_payout.side_effect = None
        settlement = await orchestrator.initiate(settlement_id)
        assert settlement.status == "processing"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payee_rejection_fails_settlement(
        self, orchestrator: PayoutOrchestrator, gateway: AsyncMock, settlement_id: int
    ) -> None:
        """A rejected fund account never reaches payout creation."""
        gateway.create_funding_destination.side_effect = GatewayError(
            "Invalid VPA", GatewayErrorType.PERMANENT, status_code=400
        )

        with pytest.raises(GatewayError):
            await orchestrator.initiate(settlement_id)

        assert (await orchestrator.get(settlement_id)).status == "failed"
        gateway.create_payout.assert_not_called()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_rejected_payout_status_fails_settlement(
        self, orchestrator: PayoutOrchestrator, gateway: AsyncMock, settlement_id: int
    ) -> None:
        """A payout created already rejected is a failure, not processing."""
        gateway.create_payout.return_value = PayoutResult(
            payout_id="pout_rejected",
            status="rejected",
            failure_reason="Beneficiary bank offline",
        )

        with pytest.raises(GatewayError):
            await orchestrator.initiate(settlement_id)

        settlement = await orchestrator.get(settlement_id)
        assert settlement.status == "failed"
        assert settlement.payout_id == "pout_rejected"
        assert settlement.failure_reason == "Beneficiary bank offline"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_ambiguous_outcome_flags_and_blocks(
        self, orchestrator: PayoutOrchestrator, gateway: AsyncMock, settlement_id: int
    ) -> None:
        """An unknown outcome is flagged and never blindly retried."""
        gateway.create_payout.side_effect = GatewayAmbiguousError("read timeout")

        with pytest.raises(GatewayAmbiguousError):
            await orchestrator.initiate(settlement_id)

        settlement = await orchestrator.get(settlement_id)
        assert settlement.status == "pending"
        assert settlement.needs_reconciliation is True
        assert settlement.payout_attempt_key is not None

        gateway.create_payout.side_effect = None
        with pytest.raises(StateTransitionError, match="reconciliation"):
            await orchestrator.initiate(settlement_id)
        with pytest.raises(StateTransitionError, match="reconciliation"):
            await orchestrator.mark_failed(settlement_id, "operator gave up")
        assert gateway.create_payout.await_count == 1
        assert "payout.reconciliation_required" in await _event_types(
            orchestrator.session_factory, settlement_id
        )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancelled_payout_request_flags_for_reconciliation(
        self,
        orchestrator: PayoutOrchestrator,
        gateway: AsyncMock,
        session_factory: Any,
        settlement_id: int,
    ) -> None:
        """A cancelled request may still have created a payout, so it is reconciled."""
        gateway.create_payout.side_effect = asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await orchestrator.initiate(settlement_id)

        settlement = await orchestrator.get(settlement_id)
        assert settlement.status == "pending"
        assert settlement.needs_reconciliation is True
        attempt_key = settlement.payout_attempt_key
        assert attempt_key is not None

        engine = ReconciliationEngine(session_factory, gateway, orchestrator, min_age_seconds=0)
        report = await engine.reconcile_pending()

        gateway.find_payouts.assert_awaited_once_with(attempt_key)
        assert report.cleared == [settlement_id]
        gateway.create_payout.side_effect = None
        assert (await orchestrator.initiate(settlement_id)).status == "processing"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unexpected_setup_error_releases_claim(
        self, orchestrator: PayoutOrchestrator, gateway: AsyncMock, settlement_id: int
    ) -> None:
        """Failures before the payout request leave the settlement retryable."""
        gateway.create_payee.side_effect = RuntimeError("connection pool exhausted")

        with pytest.raises(RuntimeError):
            await orchestrator.initiate(settlement_id)

        settlement = await orchestrator.get(settlement_id)
        assert settlement.status == "pending"
        assert settlement.payout_attempt_key is None
        assert settlement.needs_reconciliation is False
        gateway.create_payout.assert_not_called()

        gateway.create_payee.side_effect = None
        assert (await orchestrator.initiate(settlement_id)).status == "processing"


class TestTransitions:
    """Explicit lifecycle transitions."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_complete_processing(
        self, orchestrator: PayoutOrchestrator, settlement_id: int
    ) -> None:
        """processing -> completed."""
        await orchestrator.initiate(settlement_id)

        settlement = await orchestrator.mark_completed(settlement_id)

        assert settlement.status == "completed"
        assert settlement.completed_at is not None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_complete_requires_processing(
        self, orchestrator: PayoutOrchestrator, settlement_id: int
    ) -> None:
        """pending -> completed is not allowed."""
        with pytest.raises(StateTransitionError) as exc_info:
            await orchestrator.mark_completed(settlement_id)

        assert exc_info.value.current_status == "pending"
        assert (await orchestrator.get(settlement_id)).status == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fail_pending(self, orchestrator: PayoutOrchestrator, settlement_id: int) -> None:
        """pending -> failed records the reason."""
        settlement = await orchestrator.mark_failed(settlement_id, "restaurant closed")

        assert settlement.status == "failed"
        assert settlement.failure_reason == "restaurant closed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_terminal_states_are_final(
        self, orchestrator: PayoutOrchestrator, settlement_id: int
    ) -> None:
        """Neither completed nor failed can move again."""
        await orchestrator.initiate(settlement_id)
        await orchestrator.mark_completed(settlement_id)

        with pytest.raises(StateTransitionError):
            await orchestrator.mark_failed(settlement_id, "too late")
        with pytest.raises(StateTransitionError):
            await orchestrator.mark_completed(settlement_id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fail_requires_reason(self, orchestrator: PayoutOrchestrator) -> None:
        """A failure without a reason is rejected."""
        with pytest.raises(SettlementValidationError):
            await orchestrator.mark_failed(1, "  ")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transition_unknown_settlement(self, orchestrator: PayoutOrchestrator) -> None:
        """Unknown ids are reported as not found."""
        with pytest.raises(SettlementNotFoundError):
            await orchestrator.mark_completed(12345)


class TestReconciliationResolution:
    """Resolving flagged settlements."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_record_reconciled_payout(
        self, orchestrator: PayoutOrchestrator, gateway: AsyncMock, settlement_id: int
    ) -> None:
        """A payout found at the gateway moves the settlement to processing."""
        gateway.create_payout.side_effect = GatewayAmbiguousError("read timeout")
        with pytest.raises(GatewayAmbiguousError):
            await orchestrator.initiate(settlement_id)

        settlement = await orchestrator.record_reconciled_payout(settlement_id, "pout_found", "UTR123")

        assert settlement.status == "processing"
        assert settlement.payout_id == "pout_found"
        assert settlement.payout_reference == "UTR123"
        assert settlement.needs_reconciliation is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_clear_reconciliation_allows_retry(
        self, orchestrator: PayoutOrchestrator, gateway: AsyncMock, settlement_id: int
    ) -> None:
        """With no payout at the gateway, a fresh attempt is allowed."""
        gateway.create_payout.side_effect = GatewayAmbiguousError("read timeout")
        with pytest.raises(GatewayAmbiguousError):
            await orchestrator.initiate(settlement_id)
        first_key = (await orchestrator.get(settlement_id)).payout_attempt_key

        await orchestrator.clear_reconciliation(settlement_id)
        gateway.create_payout.side_effect = None
        settlement = await orchestrator.initiate(settlement_id)

        assert settlement.status == "processing"
        assert settlement.payout_attempt_key != first_key

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_resolution_requires_flag(
        self, orchestrator: PayoutOrchestrator, settlement_id: int
    ) -> None:
        """Only flagged settlements can be resolved."""
        with pytest.raises(StateTransitionError):
            await orchestrator.clear_reconciliation(settlement_id)


class TestGatewayEvents:
    """Webhook confirmations."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_processed_event_completes(
        self, orchestrator: PayoutOrchestrator, settlement_id: int
    ) -> None:
        """payout.processed completes the settlement; redelivery is harmless."""
        await orchestrator.initiate(settlement_id)
        event = GatewayEvent(event_id="evt_1", event_type="payout.processed", payout_id="pout_test_123")

        first = await orchestrator.apply_gateway_event(event)
        second = await orchestrator.apply_gateway_event(event)

        assert first.status == "completed"
        assert second.status == "completed"
        assert (await _event_types(orchestrator.session_factory, settlement_id)).count(
            "settlement.completed"
        ) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_event_fails(
        self, orchestrator: PayoutOrchestrator, settlement_id: int
    ) -> None:
        """payout.failed fails a processing settlement with the gateway's reason."""
        await orchestrator.initiate(settlement_id)
        event = GatewayEvent(
            event_type="payout.failed",
            payout_id="pout_test_123",
            failure_reason="Account closed",
        )

        settlement = await orchestrator.apply_gateway_event(event)

        assert settlement.status == "failed"
        assert settlement.failure_reason == "Account closed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reversal_after_completion_ignored(
        self, orchestrator: PayoutOrchestrator, settlement_id: int
    ) -> None:
        """Completed settlements never move backwards."""
        await orchestrator.initiate(settlement_id)
        await orchestrator.mark_completed(settlement_id)

        settlement = await orchestrator.apply_gateway_event(
            GatewayEvent(event_type="payout.reversed", payout_id="pout_test_123")
        )

        assert settlement.status == "completed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_payout_ignored(self, orchestrator: PayoutOrchestrator) -> None:
        """Events for payouts we never created are dropped."""
        event = GatewayEvent(event_type="payout.processed", payout_id="pout_other")

        assert await orchestrator.apply_gateway_event(event) is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_signed_webhook_reaches_orchestrator(
        self, orchestrator: PayoutOrchestrator, settlement_id: int
    ) -> None:
        """A verified payout.processed delivery completes the settlement."""
        await orchestrator.initiate(settlement_id)
        handler = WebhookHandler("whsec_test_fake_secret")
        register_payout_handlers(handler, orchestrator)
        payload = json.dumps(
            {
                "id": "evt_wired_1",
                "event": "payout.processed",
                "payload": {
                    "payout": {
                        "entity": {"id": "pout_test_123", "status": "processed", "utr": "UTR7"}
                    }
                },
            }
        ).encode()

        settlement = await handler.handle(payload, handler.sign(payload))

        assert settlement.id == settlement_id
        assert settlement.status == "completed"


class TestConcurrentInitiation:
    """Simultaneous initiate calls for one settlement."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_at_most_one_payout(
        self, orchestrator: PayoutOrchestrator, gateway: AsyncMock, settlement_id: int
    ) -> None:
        """Only one of ten concurrent initiations reaches the gateway."""
        results = await asyncio.gather(
            *(orchestrator.initiate(settlement_id) for _ in range(10)),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        rejections = [r for r in results if isinstance(r, StateTransitionError)]
        assert len(successes) == 1
        assert len(rejections) == 9
        assert gateway.create_payout.await_count == 1
        assert (await orchestrator.get(settlement_id)).status == "processing"

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_complete_and_fail(
        self, orchestrator: PayoutOrchestrator, settlement_id: int
    ) -> None:
        """Exactly one of two conflicting transitions wins."""
        await orchestrator.initiate(settlement_id)

        results = await asyncio.gather(
            orchestrator.mark_completed(settlement_id),
            orchestrator.mark_failed(settlement_id, "bank rejected"),
            return_exceptions=True,
        )

        assert sum(isinstance(r, StateTransitionError) for r in results) == 1
        final = await orchestrator.get(settlement_id)
        assert final.status in ("completed", "failed")


class TestAggregationDuringPayout:
    """Weekly aggregation running while a payout attempt holds the row."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_late_order_does_not_change_amount_in_flight(
        self,
        orchestrator: PayoutOrchestrator,
        gateway: AsyncMock,
        store: SettlementStore,
        seed_orders: Any,
        at_ist: Any,
        week: WeekRange,
        settlement_id: int,
    ) -> None:
        """The stored net is the amount that was sent; the late order is reported."""
        runs = []

        async def create_payout(*args: Any, **kwargs: Any) -> PayoutResult:
            await seed_orders([("ord-4", 101, "delivered", "200.00", at_ist(10))])
            runs.append(await store.upsert_week(week))
            return PayoutResult(
                payout_id="pout_test_123", status="processing", amount_minor_units=args[1]
            )

        gateway.create_payout.side_effect = create_payout

        settlement = await orchestrator.initiate(settlement_id)

        paid = gateway.create_payout.call_args.args[1]
        assert paid == 90000
        assert settlement.status == "processing"
        assert settlement.order_count == 3
        assert settlement.net_amount == Decimal("900.00")
        assert to_minor_units(settlement.net_amount) == paid
        assert runs[0].frozen == [settlement_id]
        assert runs[0].recomputed == []
        assert runs[0].late_orders == {settlement_id: ["ord-4"]}
        assert await store.linked_order_ids(settlement_id) == ["ord-1", "ord-2", "ord-3"]

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_cancelled_orders_do_not_zero_amount_in_flight(
        self,
        orchestrator: PayoutOrchestrator,
        gateway: AsyncMock,
        store: SettlementStore,
        session_factory: Any,
        week: WeekRange,
        settlement_id: int,
    ) -> None:
        """A claimed row is not emptied when its orders disappear mid-payout."""
        runs = []

        async def create_payout(*args: Any, **kwargs: Any) -> PayoutResult:
            async with session_factory() as session:
                async with session.begin():
                    await session.execute(
                        update(Order).where(Order.restaurant_id == 101).values(status="cancelled")
                    )
            runs.append(await store.upsert_week(week))
            return PayoutResult(payout_id="pout_test_123", status="processing")

        gateway.create_payout.side_effect = create_payout

        settlement = await orchestrator.initiate(settlement_id)

        assert runs[0].recomputed == []
        assert settlement.status == "processing"
        assert settlement.net_amount == Decimal("900.00")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_flagged_settlement_is_frozen(
        self,
        orchestrator: PayoutOrchestrator,
        gateway: AsyncMock,
        store: SettlementStore,
        seed_orders: Any,
        at_ist: Any,
        week: WeekRange,
        settlement_id: int,
    ) -> None:
        """Amounts stay put while an ambiguous attempt awaits reconciliation."""
        gateway.create_payout.side_effect = GatewayAmbiguousError("read timeout")
        with pytest.raises(GatewayAmbiguousError):
            await orchestrator.initiate(settlement_id)

        await seed_orders([("ord-4", 101, "delivered", "200.00", at_ist(10))])
        result = await store.upsert_week(week)

        assert result.frozen == [settlement_id]
        assert result.late_orders == {settlement_id: ["ord-4"]}
        settlement = await orchestrator.get(settlement_id)
        assert settlement.net_amount == Decimal("900.00")
        assert settlement.needs_reconciliation is True

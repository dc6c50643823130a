# tests/test_fulfillment.py
# Orchestrator state machine, cart building and failure handling

import asyncio
from decimal import Decimal

import pytest

from conftest import FakeDownstream
from pipeline.fulfillment import (
    FulfillmentOrchestrator,
    FulfillmentPolicy,
    build_cart,
    build_notes,
    determine_success,
    resolve_item_type,
    sanitize_reference,
)
from pipeline.normalizer import normalize_notification
from schemas.checkout import (
    ErrorCode,
    GatewayMeta,
    NormalizedNotification,
    NotificationStatus,
    SessionLine,
    SessionStatus,
)
from services.mindbody_client import DownstreamError


def paid_notification(session_id="sess_1", **extra):
    body = {"sessionId": session_id, "result-code": "00", "transaction-id": "TX1", "id": "evt_1"}
    body.update(extra)
    return normalize_notification(body=body)


class TestHelpers:

    def test_determine_success_indicators(self):
        assert determine_success(NormalizedNotification(success_flag=True))
        for code in ("00", "0", "000", "100"):
            assert determine_success(NormalizedNotification(result_code=code))
        for text in ("succeeded", "success", "approved", "1"):
            assert determine_success(NormalizedNotification(result_text=text))
        assert not determine_success(NormalizedNotification(result_code="05"))
        assert not determine_success(NormalizedNotification(result_text="0"))
        assert not determine_success(NormalizedNotification(success_flag=False, transaction_id="TX"))

    def test_lenient_fallback_needs_transaction_only(self):
        only_txn = NormalizedNotification(transaction_id="TX1")
        assert determine_success(only_txn, lenient=True)
        assert not determine_success(only_txn, lenient=False)
        assert not determine_success(NormalizedNotification(), lenient=True)
        assert not determine_success(NormalizedNotification(transaction_id="TX1", result_text="declined"))

    def test_sanitize_reference(self):
        assert sanitize_reference("TX-1_a b/c") == "TX-1_abc"
        assert sanitize_reference("x" * 40) == "x" * 30
        assert sanitize_reference("///") is None
        assert sanitize_reference(None) is None

    def test_resolve_item_type(self):
        assert resolve_item_type("product") == "Product"
        assert resolve_item_type("Package") == "PricingOption"
        assert resolve_item_type("pricingoption") == "PricingOption"
        assert resolve_item_type(None) == "Service"
        assert resolve_item_type("class") == "Service"

    def test_build_notes(self):
        n = normalize_notification(body={
            "transaction-id": "TX1", "auth": "A9", "maskedPAN": "****4242", "result-code": "00", "result": "Approved",
        })
        assert build_notes(n, "os_1_abc") == (
            "Gateway=Cayman | TxnId=TX1 | Auth=A9 | Last4=4242 | ResultCode=00 | Result=approved | OrderId=os_1_abc"
        )
        assert build_notes(NormalizedNotification(), None) == "Gateway=Cayman"

    def test_build_cart_prices_match_session(self, make_session):
        session = make_session(lines=[
            SessionLine(product_id="42", name="Drop-in Class", unit_price=Decimal("19.99"), quantity=2),
            SessionLine(product_id="SKU-9", name="Water", unit_price=Decimal("2.5"), quantity=1, type="product"),
        ])
        cart = build_cart(session, "1001", NormalizedNotification(session_id="sess_1"))

        assert cart.customer_id == "1001"
        assert cart.total == Decimal("42.48")
        assert [(i.type, i.item_id, i.quantity, i.price) for i in cart.items] == [
            ("Service", 42, 2, Decimal("19.99")),
            ("Product", "SKU-9", 1, Decimal("2.50")),
        ]
        assert cart.reference == "sess_1"

    def test_reference_prefers_transaction_then_order(self, make_session):
        session = make_session(gateway_meta=GatewayMeta(order_id="os_1700000000000_sess_1"))
        with_txn = build_cart(session, "1", NormalizedNotification(transaction_id="TX/77"))
        without_txn = build_cart(session, "1", NormalizedNotification())
        assert with_txn.reference == "TX77"
        assert without_txn.reference == "os_1700000000000_sess_1"


class TestFulfillmentOrchestrator:

    @pytest.fixture
    def orchestrator(self, store, downstream):
        return FulfillmentOrchestrator(store, downstream)

    @pytest.mark.asyncio
    async def test_successful_notification_posts_one_sale(self, orchestrator, store, downstream, make_session):
        await store.save(make_session())

        result = await orchestrator.process(paid_notification())

        assert result.status == NotificationStatus.PAID
        assert result.receipt_id == 555
        session = await store.get("sess_1")
        assert session.status == SessionStatus.PAID
        assert session.client_id == "1001"
        assert session.gateway_meta.transaction_id == "TX1"

        assert downstream.customer_calls == [("ada@example.com", "Ada", "Lovelace")]
        cart = downstream.checkout_calls[0]
        assert cart.reference == "TX1"
        assert cart.total == Decimal("39.98")
        assert cart.items[0].item_id == 42
        assert cart.items[0].quantity == 2
        assert "TxnId=TX1" in cart.notes

    @pytest.mark.asyncio
    async def test_redelivery_is_a_no_op(self, orchestrator, store, downstream, make_session):
        await store.save(make_session())
        await orchestrator.process(paid_notification())

        again = await orchestrator.process(paid_notification())

        assert again.status == NotificationStatus.ALREADY_PAID
        assert len(downstream.checkout_calls) == 1

    @pytest.mark.asyncio
    async def test_gateway_failure_marks_session_failed(self, orchestrator, store, downstream, make_session):
        await store.save(make_session())

        result = await orchestrator.process(normalize_notification(body={"sessionId": "sess_1", "result": "0"}))

        assert result.status == NotificationStatus.FAILED
        assert result.error_code == ErrorCode.GATEWAY_REPORTED_FAILURE
        assert (await store.get("sess_1")).status == SessionStatus.FAILED
        assert downstream.calls == 0

    @pytest.mark.asyncio
    async def test_failed_session_stays_failed(self, orchestrator, store, downstream, make_session):
        await store.save(make_session(status=SessionStatus.FAILED))

        result = await orchestrator.process(paid_notification())

        assert result.status == NotificationStatus.FAILED
        assert result.detail == "session already failed"
        assert downstream.calls == 0

    @pytest.mark.asyncio
    async def test_processing_session_is_reported(self, orchestrator, store, downstream, make_session):
        await store.save(make_session(status=SessionStatus.PROCESSING))
        result = await orchestrator.process(paid_notification())
        assert result.status == NotificationStatus.PROCESSING
        assert downstream.calls == 0

    @pytest.mark.asyncio
    async def test_unknown_session(self, orchestrator, store, downstream):
        result = await orchestrator.process(paid_notification("does_not_exist"))
        assert result.status == NotificationStatus.NO_SESSION
        assert result.error_code == ErrorCode.NO_SESSION
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_missing_session_id(self, orchestrator, store, downstream, make_session):
        await store.save(make_session())
        result = await orchestrator.process(normalize_notification(body={"result-code": "00", "transaction-id": "TX1"}))
        assert result.status == NotificationStatus.MISSING_SESSION
        assert (await store.get("sess_1")).status == SessionStatus.CREATED
        assert downstream.calls == 0

    @pytest.mark.asyncio
    async def test_non_success_without_session_is_ignored(self, orchestrator, store, downstream, make_session):
        await store.save(make_session())
        result = await orchestrator.process(normalize_notification(body={"id": "evt_8", "result": "declined"}))
        assert result.status == NotificationStatus.IGNORED
        assert result.error_code is None
        assert (await store.get("sess_1")).status == SessionStatus.CREATED
        assert downstream.calls == 0

    @pytest.mark.asyncio
    async def test_paid_outcome_survives_logging_failure(self, orchestrator, store, downstream, make_session, monkeypatch):
        import pipeline.fulfillment as fulfillment

        class BrokenLogger:
            def info(self, event, **kw):
                if event == "session_paid":
                    raise UnicodeEncodeError("utf-8", "\ud800", 0, 1, "surrogates not allowed")

            def warning(self, event, **kw):
                pass

            error = exception = warning

        monkeypatch.setattr(fulfillment, "logger", BrokenLogger())
        await store.save(make_session())

        result = await orchestrator.process(paid_notification())

        assert result.status == NotificationStatus.PAID
        assert result.receipt_id == 555
        assert (await store.get("sess_1")).status == SessionStatus.PAID
        assert len(downstream.checkout_calls) == 1

    @pytest.mark.asyncio
    async def test_lenient_policy_can_be_disabled(self, store, downstream, make_session):
        await store.save(make_session())
        strict = FulfillmentOrchestrator(store, downstream, FulfillmentPolicy(lenient_success=False))

        result = await strict.process(normalize_notification(body={"sessionId": "sess_1", "transactionId": "TX1"}))

        assert result.status == NotificationStatus.FAILED
        assert downstream.calls == 0

    @pytest.mark.asyncio
    async def test_lenient_policy_accepts_bare_transaction(self, orchestrator, store, downstream, make_session):
        await store.save(make_session())
        result = await orchestrator.process(normalize_notification(body={"sessionId": "sess_1", "transactionId": "TX1"}))
        assert result.status == NotificationStatus.PAID

    @pytest.mark.asyncio
    async def test_strict_amount_mismatch(self, store, downstream, make_session):
        await store.save(make_session())
        strict = FulfillmentOrchestrator(store, downstream, FulfillmentPolicy(strict_amount_match=True))

        result = await strict.process(paid_notification(amount="10.00"))

        assert result.status == NotificationStatus.FAILED
        assert result.error_code == ErrorCode.AMOUNT_MISMATCH
        assert downstream.calls == 0

    @pytest.mark.asyncio
    async def test_strict_amount_match_passes(self, store, downstream, make_session):
        await store.save(make_session())
        strict = FulfillmentOrchestrator(store, downstream, FulfillmentPolicy(strict_amount_match=True))
        result = await strict.process(paid_notification(amount="39.98"))
        assert result.status == NotificationStatus.PAID

    @pytest.mark.asyncio
    async def test_known_client_id_skips_lookup(self, orchestrator, store, downstream, make_session):
        await store.save(make_session(customer=None, client_id="777"))

        result = await orchestrator.process(paid_notification())

        assert result.status == NotificationStatus.PAID
        assert downstream.customer_calls == []
        assert downstream.checkout_calls[0].customer_id == "777"

    @pytest.mark.asyncio
    async def test_customer_resolution_failure(self, orchestrator, store, downstream, make_session):
        await store.save(make_session())
        downstream.customer_error = DownstreamError("boom", status=500, status_text="Server Error", data={"x": 1})

        result = await orchestrator.process(paid_notification())

        assert result.status == NotificationStatus.FAILED
        assert result.error_code == ErrorCode.DOWNSTREAM_RESOLUTION_FAILURE
        assert result.downstream.status == 500
        assert (await store.get("sess_1")).status == SessionStatus.FAILED
        assert downstream.checkout_calls == []

    @pytest.mark.asyncio
    async def test_sale_failure_surfaces_downstream_detail(self, orchestrator, store, downstream, make_session):
        await store.save(make_session())
        downstream.checkout_error = DownstreamError(
            "Card declined", status=400, status_text="Bad Request", data={"Error": {"Message": "Card declined"}}
        )

        result = await orchestrator.process(paid_notification())

        assert result.status == NotificationStatus.FAILED
        assert result.error_code == ErrorCode.DOWNSTREAM_SALE_FAILURE
        assert "status 400" in result.detail
        assert result.downstream.data == {"Error": {"Message": "Card declined"}}
        session = await store.get("sess_1")
        assert session.status == SessionStatus.FAILED
        assert session.client_id == "1001"

        # terminal: no automatic retry on re-delivery
        again = await orchestrator.process(paid_notification())
        assert again.status == NotificationStatus.FAILED
        assert len(downstream.checkout_calls) == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_marks_failed(self, orchestrator, store, downstream, make_session):
        await store.save(make_session())
        downstream.checkout_error = RuntimeError("socket closed")

        result = await orchestrator.process(paid_notification())

        assert result.status == NotificationStatus.FAILED
        assert result.detail == "socket closed"
        assert (await store.get("sess_1")).status == SessionStatus.FAILED

    @pytest.mark.asyncio
    async def test_concurrent_notifications_post_one_sale(self, store, make_session):
        slow = FakeDownstream(delay=0.01)
        orchestrator = FulfillmentOrchestrator(store, slow)
        await store.save(make_session())

        results = await asyncio.gather(*(orchestrator.process(paid_notification()) for _ in range(5)))

        statuses = [r.status for r in results]
        assert statuses.count(NotificationStatus.PAID) == 1
        assert len(slow.checkout_calls) == 1
        assert set(statuses) <= {NotificationStatus.PAID, NotificationStatus.PROCESSING, NotificationStatus.ALREADY_PAID}

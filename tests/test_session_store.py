# tests/test_session_store.py
# Session model invariants and the in-memory store state machine

import asyncio
from decimal import Decimal

import pytest
from pydantic import ValidationError

from schemas.checkout import Session, SessionLine, SessionStatus
from storage.session_store import InvalidTransitionError


class TestSessionModel:

    def test_total_is_computed_from_lines(self, make_session):
        session = make_session()
        assert session.total == Decimal("39.98")
        assert session.status == SessionStatus.CREATED

    def test_supplied_total_must_match_lines(self, make_session):
        assert make_session(total=Decimal("39.98")).total == Decimal("39.98")
        with pytest.raises(ValidationError):
            make_session(total=Decimal("40.00"))

    def test_qty_is_accepted_for_quantity(self):
        line = SessionLine.model_validate({"productId": 42, "name": "Drop-in", "unitPrice": 10, "qty": 3})
        assert line.quantity == 3
        assert line.product_id == "42"

    def test_lines_are_validated(self, make_session):
        with pytest.raises(ValidationError):
            make_session(lines=[])
        with pytest.raises(ValidationError):
            SessionLine(product_id="1", name="x", unit_price=Decimal("-1"), quantity=1)
        with pytest.raises(ValidationError):
            SessionLine(product_id="1", name="x", unit_price=Decimal("1"), quantity=0)

    def test_customer_required_without_client_id(self, make_session):
        with pytest.raises(ValidationError):
            make_session(customer=None)
        assert make_session(customer=None, client_id=77).client_id == "77"

    def test_public_form_is_camel_case(self, make_session):
        public = make_session().to_public()
        assert public["id"] == "sess_1"
        assert public["total"] == 39.98
        assert public["lines"][0]["unitPrice"] == 19.99
        assert "gatewayMeta" in public

    def test_status_transitions(self):
        assert SessionStatus.CREATED.can_transition_to(SessionStatus.PROCESSING)
        assert SessionStatus.CREATED.can_transition_to(SessionStatus.FAILED)
        assert not SessionStatus.CREATED.can_transition_to(SessionStatus.PAID)
        assert not SessionStatus.PAID.can_transition_to(SessionStatus.FAILED)
        assert not SessionStatus.FAILED.can_transition_to(SessionStatus.CREATED)


class TestInMemorySessionStore:

    @pytest.mark.asyncio
    async def test_save_and_get(self, store, make_session):
        await store.save(make_session())
        session = await store.get("sess_1")
        assert session is not None
        assert session.total == Decimal("39.98")
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_compare_and_set(self, store, make_session):
        await store.save(make_session())

        swapped, session = await store.compare_and_set_status(
            "sess_1", SessionStatus.CREATED, SessionStatus.PROCESSING
        )
        assert swapped is True
        assert session.status == SessionStatus.PROCESSING

        swapped, session = await store.compare_and_set_status(
            "sess_1", SessionStatus.CREATED, SessionStatus.PROCESSING
        )
        assert swapped is False
        assert session.status == SessionStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_compare_and_set_missing_session(self, store):
        swapped, session = await store.compare_and_set_status(
            "nope", SessionStatus.CREATED, SessionStatus.PROCESSING
        )
        assert swapped is False
        assert session is None

    @pytest.mark.asyncio
    async def test_concurrent_claims_have_one_winner(self, store, make_session):
        await store.save(make_session())
        results = await asyncio.gather(*(
            store.compare_and_set_status("sess_1", SessionStatus.CREATED, SessionStatus.PROCESSING)
            for _ in range(10)
        ))
        assert [swapped for swapped, _ in results].count(True) == 1

    @pytest.mark.asyncio
    async def test_illegal_transition_raises(self, store, make_session):
        await store.save(make_session())
        with pytest.raises(InvalidTransitionError):
            await store.compare_and_set_status("sess_1", SessionStatus.CREATED, SessionStatus.PAID)
        with pytest.raises(InvalidTransitionError):
            await store.update("sess_1", {"status": "paid"})

    @pytest.mark.asyncio
    async def test_paid_session_is_immutable(self, store, make_session):
        await store.save(make_session(status=SessionStatus.PAID))
        with pytest.raises(InvalidTransitionError):
            await store.update("sess_1", {"client_id": "9"})
        with pytest.raises(InvalidTransitionError):
            await store.save(make_session())

    @pytest.mark.asyncio
    async def test_immutable_fields_cannot_be_patched(self, store, make_session):
        await store.save(make_session())
        with pytest.raises(InvalidTransitionError):
            await store.update("sess_1", {"total": Decimal("1.00")})

    @pytest.mark.asyncio
    async def test_gateway_meta_is_merged_and_client_id_kept(self, store, make_session):
        session = make_session()
        session = session.model_copy(update={"gateway_meta": session.gateway_meta.model_copy(update={"order_id": "os_1"})})
        await store.save(session)

        await store.update("sess_1", {"client_id": 1001, "gateway_meta": {"transaction_id": "TX1"}})
        updated = await store.update("sess_1", {"client_id": None, "gateway_meta": {"auth_code": "A1"}})

        assert updated.client_id == "1001"
        assert updated.gateway_meta.order_id == "os_1"
        assert updated.gateway_meta.transaction_id == "TX1"
        assert updated.gateway_meta.auth_code == "A1"
        assert updated.updated_at >= updated.created_at

    @pytest.mark.asyncio
    async def test_list_by_status(self, store, make_session):
        await store.save(make_session("a"))
        await store.save(make_session("b", status=SessionStatus.PROCESSING))
        processing = await store.list_by_status(SessionStatus.PROCESSING)
        assert [s.id for s in processing] == ["b"]
        assert len(store) == 2

    def test_session_id_defaults_to_uuid_hex(self, make_session):
        session = Session(
            customer=make_session().customer,
            lines=make_session().lines,
        )
        assert len(session.id) == 32

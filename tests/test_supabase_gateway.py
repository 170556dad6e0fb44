"""
Tests for SupabaseGateway class
"""
from datetime import date
from unittest.mock import Mock, patch

import pytest

from models import DraftExpense, DraftStatus, PaymentMethod
from supabase_gateway import SupabaseGateway, sanitize_filter_term


class MockResult:
    def __init__(self, data):
        self.data = data


def make_query(data):
    """Query chain where every builder method returns the same mock"""
    query = Mock()
    for method in ("select", "insert", "update", "eq", "neq", "ilike", "or_", "gte", "lte", "order", "limit"):
        getattr(query, method).return_value = query
    query.execute.return_value = MockResult(data)
    return query


class TestSupabaseGateway:
    """Tests for SupabaseGateway"""

    @pytest.fixture
    def gateway(self):
        """Create a SupabaseGateway instance with mocked client"""
        with patch('supabase_gateway.create_client') as mock_create_client:
            mock_client = Mock()
            mock_create_client.return_value = mock_client
            gateway = SupabaseGateway(
                url="https://test.supabase.co",
                service_key="test_key"
            )
            gateway._client = mock_client
            return gateway

    def test_create_draft_sync(self, gateway, sample_draft_row):
        query = make_query([sample_draft_row])
        gateway._client.table.return_value = query
        draft = DraftExpense(
            user_id=sample_draft_row["user_id"],
            amount=15990,
            merchant_name="Lider",
            merchant_id=3,
            date=date(2024, 3, 15),
            payment_method=PaymentMethod.CREDIT,
        )

        stored = gateway._create_draft_sync(draft)

        gateway._client.table.assert_called_once_with("expenses")
        payload = query.insert.call_args[0][0]
        assert payload["date"] == "2024-03-15"
        assert payload["status"] == "PENDING"
        assert payload["payment_method"] == "Credit"
        assert stored.id == 7
        assert stored.merchant.name == "Lider"
        assert stored.card.name == "Visa Falabella"

    def test_create_draft_sync_raises_on_error(self, gateway):
        query = make_query([])
        query.execute.side_effect = RuntimeError("boom")
        gateway._client.table.return_value = query
        draft = DraftExpense(user_id=1, amount=10, merchant_name="X", date=date(2024, 1, 1))

        with pytest.raises(RuntimeError):
            gateway._create_draft_sync(draft)

    def test_find_latest_pending_sync(self, gateway, sample_draft_row):
        query = make_query([sample_draft_row])
        gateway._client.table.return_value = query

        draft = gateway._find_latest_pending_sync(sample_draft_row["user_id"])

        assert draft.id == 7
        assert draft.status == DraftStatus.PENDING
        query.eq.assert_any_call("status", "PENDING")
        query.order.assert_called_once_with("created_at", desc=True)
        query.limit.assert_called_once_with(1)

    def test_find_latest_pending_sync_none(self, gateway):
        gateway._client.table.return_value = make_query([])
        assert gateway._find_latest_pending_sync(1) is None

    def test_find_latest_pending_sync_propagates_errors(self, gateway):
        query = make_query([])
        query.execute.side_effect = RuntimeError("network")
        gateway._client.table.return_value = query
        with pytest.raises(RuntimeError):
            gateway._find_latest_pending_sync(1)

    def test_transition_status_guarded(self, gateway, sample_draft_row):
        query = make_query([sample_draft_row])
        gateway._client.table.return_value = query

        assert gateway._transition_status_sync(7, DraftStatus.CONFIRMED) is True
        query.update.assert_called_once_with({"status": "CONFIRMED"})
        query.eq.assert_any_call("id", 7)
        query.eq.assert_any_call("status", "PENDING")

    def test_transition_status_no_row(self, gateway):
        gateway._client.table.return_value = make_query([])
        assert gateway._transition_status_sync(7, DraftStatus.REJECTED) is False

    def test_update_draft_empty_fields(self, gateway):
        assert gateway._update_draft_sync(7, {}) is False
        gateway._client.table.assert_not_called()

    def test_reject_pending_drafts(self, gateway, sample_draft_row):
        query = make_query([sample_draft_row, dict(sample_draft_row, id=8)])
        gateway._client.table.return_value = query
        assert gateway._reject_pending_drafts_sync(sample_draft_row["user_id"]) == 2
        query.neq.assert_not_called()

    def test_reject_pending_drafts_keeps_new_draft(self, gateway, sample_draft_row):
        query = make_query([sample_draft_row])
        gateway._client.table.return_value = query

        assert gateway._reject_pending_drafts_sync(sample_draft_row["user_id"], except_id=9) == 1

        query.eq.assert_any_call("status", "PENDING")
        query.neq.assert_called_once_with("id", 9)

    def test_fetch_confirmed_expenses_with_range(self, gateway, sample_draft_row):
        query = make_query([dict(sample_draft_row, status="CONFIRMED")])
        gateway._client.table.return_value = query

        result = gateway._fetch_confirmed_expenses_sync(
            1, start_date=date(2024, 3, 1), end_date=date(2024, 3, 31)
        )

        assert len(result) == 1
        query.gte.assert_called_once_with("date", "2024-03-01")
        query.lte.assert_called_once_with("date", "2024-03-31")

    def test_search_merchants_single_term(self, gateway):
        query = make_query([{"id": 1, "name": "Lider Express"}])
        gateway._client.table.return_value = query

        result = gateway._search_merchants_sync(["Lider"])

        assert [m.name for m in result] == ["Lider Express"]
        query.ilike.assert_any_call("name", "Lider%")
        query.ilike.assert_any_call("name", "%Lider%")
        query.or_.assert_not_called()

    def test_search_merchants_prefix_rows_first(self, gateway):
        query = make_query([])
        query.execute.side_effect = [
            MockResult([{"id": 40, "name": "Lider"}]),
            MockResult([{"id": 2, "name": "Super Lider"}, {"id": 40, "name": "Lider"}]),
        ]
        gateway._client.table.return_value = query

        result = gateway._search_merchants_sync(["lider"], limit=2)

        assert [m.id for m in result] == [40, 2]
        query.limit.assert_called_with(2)

    def test_search_merchants_several_terms(self, gateway):
        query = make_query([])
        gateway._client.table.return_value = query

        gateway._search_merchants_sync(["cruz", "verde"])

        query.or_.assert_called_once_with("name.ilike.*cruz*,name.ilike.*verde*")

    def test_search_merchants_sanitizes(self, gateway):
        assert gateway._search_merchants_sync(["(*)", ""]) == []
        gateway._client.table.assert_not_called()

    def test_find_merchant_by_issuer(self, gateway):
        query = make_query([{"id": 3, "name": "Lider", "issuer_id": "76123456-7"}])
        gateway._client.table.return_value = query

        merchant = gateway._find_merchant_by_issuer_sync("76123456-7")

        assert merchant.id == 3
        gateway._client.table.assert_called_once_with("merchants")
        query.eq.assert_called_once_with("issuer_id", "76123456-7")

    def test_create_credit_card(self, gateway):
        query = make_query([{"id": 2, "user_id": 1, "name": "Visa", "last4": "1234"}])
        gateway._client.table.return_value = query

        card = gateway._create_credit_card_sync(1, "Visa", "1234", 25, 5)

        assert card.name == "Visa"
        assert card.last4 == "1234"
        assert query.insert.call_args[0][0]["closing_day"] == 25

    @pytest.mark.asyncio
    async def test_async_wrapper(self, gateway, sample_draft_row):
        gateway._client.table.return_value = make_query([sample_draft_row])
        draft = await gateway.get_draft(7)
        assert draft.id == 7
        assert draft.card.last4 == "1234"


def test_sanitize_filter_term():
    assert sanitize_filter_term("Lider (Express), *50%*") == "Lider  Express    50"
    assert sanitize_filter_term(None) == ""

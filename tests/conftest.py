"""
Pytest configuration and fixtures
"""
import copy
import io
import os
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, Mock

import pytest
from aiogram.types import Chat, Message as TgMessage, User
from PIL import Image

from models import CreditCard, DraftExpense, DraftStatus, Merchant, PaymentMethod

# Set test environment variables
os.environ.setdefault("TESTING", "1")

TEST_USER_ID = 123456789


class InMemoryGateway:
    """
    Same async API as SupabaseGateway, backed by dicts.
    Status filters behave like the real conditional updates.
    """

    def __init__(self) -> None:
        self.merchants: List[Merchant] = []
        self.cards: List[CreditCard] = []
        self.drafts: Dict[int, DraftExpense] = {}
        self.mutations = 0
        self._next_id = 1
        self._clock = datetime(2024, 3, 15, 12, 0, 0)

    def _new_id(self) -> int:
        value = self._next_id
        self._next_id += 1
        return value

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def _joined(self, draft: DraftExpense) -> DraftExpense:
        result = copy.deepcopy(draft)
        result.merchant = next((m for m in self.merchants if m.id == draft.merchant_id), None)
        result.card = next((c for c in self.cards if c.id == draft.card_id), None)
        return result

    # helpers for tests
    def add_merchant(self, name: str, issuer_id: Optional[str] = None, category: Optional[str] = None) -> Merchant:
        merchant = Merchant(id=self._new_id(), name=name, issuer_id=issuer_id, category=category)
        self.merchants.append(merchant)
        return merchant

    def add_card(self, name: str, user_id: int = TEST_USER_ID) -> CreditCard:
        card = CreditCard(id=self._new_id(), user_id=user_id, name=name)
        self.cards.append(card)
        return card

    def add_draft(self, **overrides: Any) -> DraftExpense:
        values = {
            "user_id": TEST_USER_ID,
            "amount": 15990,
            "merchant_name": "Lider",
            "date": date(2024, 3, 15),
            "category": "Supermercado",
            "document_number": "12345",
        }
        values.update(overrides)
        draft = DraftExpense(**values)
        draft.id = self._new_id()
        draft.created_at = self._tick()
        self.drafts[draft.id] = draft
        return draft

    # drafts
    async def create_draft(self, draft: DraftExpense) -> DraftExpense:
        self.mutations += 1
        stored = copy.deepcopy(draft)
        stored.merchant = None
        stored.card = None
        stored.id = self._new_id()
        stored.created_at = self._tick()
        self.drafts[stored.id] = stored
        return copy.deepcopy(stored)

    async def get_draft(self, draft_id: int) -> Optional[DraftExpense]:
        draft = self.drafts.get(draft_id)
        return self._joined(draft) if draft else None

    async def find_latest_pending(self, user_id: int) -> Optional[DraftExpense]:
        pending = [
            d for d in self.drafts.values()
            if d.user_id == user_id and d.status == DraftStatus.PENDING
        ]
        if not pending:
            return None
        return self._joined(max(pending, key=lambda d: d.created_at))

    async def update_draft(self, draft_id: int, fields: Dict[str, Any]) -> bool:
        draft = self.drafts.get(draft_id)
        if not fields or draft is None or draft.status != DraftStatus.PENDING:
            return False
        self.mutations += 1
        for key, value in fields.items():
            if key == "payment_method":
                value = PaymentMethod.parse(value)
            elif key == "date" and isinstance(value, str):
                value = date.fromisoformat(value)
            setattr(draft, key, value)
        return True

    async def transition_status(self, draft_id: int, status: DraftStatus) -> bool:
        draft = self.drafts.get(draft_id)
        if draft is None or draft.status != DraftStatus.PENDING:
            return False
        self.mutations += 1
        draft.status = status
        return True

    async def reject_pending_drafts(self, user_id: int, except_id: Optional[int] = None) -> int:
        rejected = 0
        for draft in self.drafts.values():
            if draft.user_id == user_id and draft.status == DraftStatus.PENDING and draft.id != except_id:
                draft.status = DraftStatus.REJECTED
                rejected += 1
        if rejected:
            self.mutations += 1
        return rejected

    async def fetch_confirmed_expenses(
        self,
        user_id: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: int = 500,
    ) -> List[DraftExpense]:
        rows = [
            self._joined(d) for d in self.drafts.values()
            if d.user_id == user_id and d.status == DraftStatus.CONFIRMED
            and (start_date is None or d.date >= start_date)
            and (end_date is None or d.date <= end_date)
        ]
        rows.sort(key=lambda d: d.date, reverse=True)
        return rows[:limit]

    # merchants
    async def get_merchant(self, merchant_id: int) -> Optional[Merchant]:
        return next((m for m in self.merchants if m.id == merchant_id), None)

    async def find_merchant_by_issuer(self, issuer_id: str) -> Optional[Merchant]:
        return next((m for m in self.merchants if m.issuer_id == issuer_id), None)

    async def find_merchant_by_name(self, name: str) -> Optional[Merchant]:
        lowered = name.strip().lower()
        return next((m for m in self.merchants if m.name.lower() == lowered), None)

    async def search_merchants(self, terms: List[str], limit: int = 25) -> List[Merchant]:
        lowered = [t.lower() for t in terms if t]
        found = [m for m in self.merchants if any(t in m.name.lower() for t in lowered)]
        return sorted(found, key=lambda m: m.id)[:limit]

    async def create_merchant(
        self, name: str, issuer_id: Optional[str] = None, category: Optional[str] = None
    ) -> Merchant:
        self.mutations += 1
        return self.add_merchant(name, issuer_id, category)

    # cards
    async def list_credit_cards(self, user_id: int) -> List[CreditCard]:
        return [c for c in self.cards if c.user_id == user_id]

    async def search_credit_cards(self, user_id: int, term: str) -> List[CreditCard]:
        lowered = term.strip().lower()
        return [c for c in self.cards if c.user_id == user_id and lowered in c.name.lower()]

    async def create_credit_card(
        self,
        user_id: int,
        name: str,
        last4: Optional[str] = None,
        closing_day: Optional[int] = None,
        payment_day: Optional[int] = None,
    ) -> CreditCard:
        self.mutations += 1
        card = CreditCard(
            id=self._new_id(), user_id=user_id, name=name,
            last4=last4, closing_day=closing_day, payment_day=payment_day,
        )
        self.cards.append(card)
        return card


def build_ted_payload(
    issuer: str = "76123456-7",
    folio: str = "12345",
    fecha: str = "2024-03-15",
    monto: str = "15990",
    tipo: str = "39",
    receptor: Optional[str] = "66666666-6",
) -> str:
    rr = f"<RR>{receptor}</RR>" if receptor is not None else ""
    return (
        '<TED version="1.0"><DD>'
        f"<RE>{issuer}</RE><TD>{tipo}</TD><F>{folio}</F><FE>{fecha}</FE>"
        f"{rr}<RSR>CLIENTE</RSR><MNT>{monto}</MNT><IT1>VARIOS</IT1>"
        '<CAF version="1.0"><DA><RE>76123456-7</RE></DA></CAF>'
        "<TSTED>2024-03-15T10:15:00</TSTED></DD>"
        '<FRMT algoritmo="SHA1withRSA">c2lnbmF0dXJl</FRMT></TED>'
    )


@pytest.fixture
def gateway():
    """In-memory gateway shared by engine tests"""
    return InMemoryGateway()


@pytest.fixture
def extractor():
    """Mock OpenAI extractor"""
    mock = Mock()
    mock.extract = AsyncMock(return_value={})
    mock.interpret = AsyncMock(return_value={})
    return mock


@pytest.fixture
def ted_payload():
    return build_ted_payload()


@pytest.fixture
def image_bytes():
    """Small white PNG, 200x100"""
    buffer = io.BytesIO()
    Image.new("RGB", (200, 100), "white").save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def mock_user():
    """Create a mock Telegram user"""
    user = Mock(spec=User)
    user.id = TEST_USER_ID
    user.username = "test_user"
    user.first_name = "Test"
    user.last_name = "User"
    user.is_bot = False
    return user


@pytest.fixture
def mock_chat():
    """Create a mock Telegram chat"""
    chat = Mock(spec=Chat)
    chat.id = TEST_USER_ID
    chat.type = "private"
    return chat


@pytest.fixture
def mock_message(mock_user, mock_chat):
    """Create a mock Telegram message"""
    message = Mock(spec=TgMessage)
    message.message_id = 1
    message.from_user = mock_user
    message.chat = mock_chat
    message.text = None
    message.photo = None
    message.document = None
    message.answer = AsyncMock()
    message.reply = AsyncMock()
    return message


@pytest.fixture
def sample_draft_row():
    """Sample expenses row joined with merchant and card"""
    return {
        "id": 7,
        "user_id": TEST_USER_ID,
        "amount": 15990,
        "merchant_name": "Lider",
        "merchant_id": 3,
        "category": "Supermercado",
        "date": "2024-03-15",
        "document_number": "12345",
        "payment_method": "Credit",
        "card_id": 2,
        "status": "PENDING",
        "created_at": "2024-03-15T12:00:00Z",
        "merchants": {"id": 3, "name": "Lider", "issuer_id": "76123456-7", "category": "Supermercado"},
        "credit_cards": {"id": 2, "user_id": TEST_USER_ID, "name": "Visa Falabella", "last4": "1234"},
    }


@pytest.fixture
def ted_factory():
    """Builds TED payloads with custom fields"""
    return build_ted_payload


@pytest.fixture
def user_id():
    return TEST_USER_ID

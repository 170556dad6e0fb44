"""
Receipt handler - ingesta de fotos: PDF417 primero, visión como respaldo,
y creación del borrador PENDING.
"""
import asyncio
from typing import Any, Dict, Optional
import logging

# Importaciones desde la raíz del proyecto
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from ai_extractor import ExtractionError
from dte_reader import DteReader, ImageConversionError, convert_heic_if_needed
from models import CreditCard, DraftExpense, PaymentMethod, TransactionRecord, parse_amount, parse_date
from handlers.merchant_resolver import MerchantResolver
from handlers.message_formatter import PROCESSING_ERROR_TEXT, MessageFormatter
from handlers.reconciliation_handler import ReconciliationHandler


DEFAULT_CATEGORY = "Otros"
TEXT_FIELDS = ("merchant", "rut", "receipt_number", "category", "payment_method", "card_name", "date")


def record_to_expense_data(record: TransactionRecord) -> Dict[str, Any]:
    """TED -> mismo formato que entrega el extractor de visión."""
    return {
        "merchant": None,  # se resuelve por RUT
        "rut": record.issuer_id,
        "receipt_number": record.document_number,
        "amount": record.total_amount,
        "date": record.date.isoformat(),
        "category": None,
        "payment_method": None,
        "card_name": None,
    }


def _scalar_text(value: Any) -> Optional[str]:
    """str/int/float -> texto sin espacios. Listas, dicts, bool y vacíos -> None."""
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        return None
    text = str(value).strip()
    return text or None


def normalize_expense_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """Respuesta del extractor de visión con los campos de texto como str o None."""
    normalized = dict(data)
    for key in TEXT_FIELDS:
        normalized[key] = _scalar_text(data.get(key))
    return normalized


def match_card(cards, card_name: Optional[str]) -> Optional[CreditCard]:
    """Primera tarjeta cuyo nombre contiene el texto detectado (sin mayúsculas)."""
    if not card_name:
        return None
    needle = card_name.strip().lower()
    if not needle:
        return None
    for card in cards:
        if needle in card.name.lower():
            return card
    return None


class ReceiptHandler:
    """Procesa una imagen y deja un borrador pendiente de confirmación"""

    def __init__(
        self,
        supabase_gateway,
        extractor=None,
        reader: Optional[DteReader] = None,
        resolver: Optional[MerchantResolver] = None,
        formatter: Optional[MessageFormatter] = None,
        default_category: str = DEFAULT_CATEGORY,
    ):
        self.supabase = supabase_gateway
        self.extractor = extractor
        self.reader = reader or DteReader()
        self.resolver = resolver or MerchantResolver(supabase_gateway)
        self.formatter = formatter or MessageFormatter()
        self.default_category = default_category

    async def process_image(self, user_id: int, file_bytes: bytes, mime_type: str = "image/jpeg") -> str:
        logging.info(f"📸 Processing image for user={user_id} ({len(file_bytes)} bytes, {mime_type})")
        try:
            file_bytes, mime_type = convert_heic_if_needed(file_bytes, mime_type)
        except ImageConversionError as exc:
            logging.warning(f"HEIC conversion failed: {exc}")
            return f"⚠️ {exc}"

        expense_data = await self._extract(file_bytes, mime_type)
        if expense_data is None:
            return PROCESSING_ERROR_TEXT

        try:
            stored = await self._store_draft(user_id, expense_data)
        except Exception as exc:
            logging.exception(f"❌ Error storing draft for user={user_id}: {exc}")
            return PROCESSING_ERROR_TEXT
        issuer_id = stored.merchant.issuer_id or expense_data.get("rut")
        return self.formatter.format_draft_summary(stored, issuer_id=issuer_id)

    async def _store_draft(self, user_id: int, expense_data: Dict[str, Any]) -> DraftExpense:
        issuer_id = expense_data.get("rut")
        category = expense_data.get("category")
        merchant = await self.resolver.resolve_or_create(issuer_id, expense_data.get("merchant"), category)
        if not category and merchant.category:
            category = merchant.category

        payment_method = PaymentMethod.parse(expense_data.get("payment_method"))
        card = None
        if payment_method == PaymentMethod.CREDIT and expense_data.get("card_name"):
            cards = await self.supabase.list_credit_cards(user_id)
            card = match_card(cards, expense_data["card_name"])
            if card is None:
                logging.info(f"Credit card {expense_data['card_name']!r} not matched for user={user_id}")

        amount = parse_amount(expense_data.get("amount"))
        draft = DraftExpense(
            user_id=user_id,
            amount=amount if amount is not None else 0,
            merchant_name=merchant.name,
            merchant_id=merchant.id,
            category=category or self.default_category,
            date=parse_date(expense_data.get("date")),
            document_number=expense_data.get("receipt_number"),
            payment_method=payment_method,
            card_id=card.id if card else None,
        )
        stored = await self.supabase.create_draft(draft)
        # Un solo borrador activo por usuario: los anteriores quedan descartados
        # recién cuando el nuevo ya existe
        await self.supabase.reject_pending_drafts(user_id, except_id=stored.id)
        stored.merchant = merchant
        stored.card = card
        return stored

    async def _extract(self, file_bytes: bytes, mime_type: str) -> Optional[Dict[str, Any]]:
        """TED si se puede leer; si no, el extractor de visión. None = falló todo."""
        record = await asyncio.to_thread(self.reader.decode, file_bytes)
        if record is not None:
            logging.info(
                f"DTE detected: {record.document_type_name} folio={record.document_number} "
                f"amount={record.total_amount} rut={record.issuer_id}"
            )
            return record_to_expense_data(record)

        if self.extractor is None:
            logging.error("No PDF417 found and the vision extractor is not configured")
            return None
        try:
            data = await self.extractor.extract(file_bytes, mime_type)
        except ExtractionError as exc:
            logging.error(f"❌ Vision extraction failed: {exc}")
            return None
        if not isinstance(data, dict):
            logging.error(f"❌ Vision extractor returned {type(data).__name__}, expected an object")
            return None
        return normalize_expense_data(data)


class BoletaService:
    """Fachada con las dos operaciones públicas: imagen y texto"""

    def __init__(self, receipt_handler: ReceiptHandler, reconciliation_handler: ReconciliationHandler):
        self.receipts = receipt_handler
        self.reconciliation = reconciliation_handler

    @classmethod
    def build(cls, supabase_gateway, extractor, default_category: str = DEFAULT_CATEGORY) -> "BoletaService":
        resolver = MerchantResolver(supabase_gateway)
        formatter = MessageFormatter()
        return cls(
            ReceiptHandler(
                supabase_gateway,
                extractor=extractor,
                resolver=resolver,
                formatter=formatter,
                default_category=default_category,
            ),
            ReconciliationHandler(supabase_gateway, extractor, resolver=resolver, formatter=formatter),
        )

    async def process_image(self, user_id: int, file_bytes: bytes, mime_type: str = "image/jpeg") -> str:
        return await self.receipts.process_image(user_id, file_bytes, mime_type)

    async def process_text(self, user_id: int, text: str) -> str:
        return await self.reconciliation.process_text(user_id, text)

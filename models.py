"""
Modelos de datos de BoletaBot: registros DTE, borradores de gasto, comercios y tarjetas.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional


class DraftStatus(str, Enum):
    """Estado de un borrador de gasto."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"


class PaymentMethod(str, Enum):
    DEBIT = "Debit"
    CREDIT = "Credit"
    CASH = "Cash"
    TRANSFER = "Transfer"

    @classmethod
    def parse(cls, value: Any) -> Optional["PaymentMethod"]:
        """Acepta 'credit', 'Credit', PaymentMethod.CREDIT... y devuelve None si no calza."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        cleaned = value.strip().lower()
        for member in cls:
            if member.value.lower() == cleaned:
                return member
        return None


# Tipos de DTE más comunes (SII)
DTE_TYPE_NAMES = {
    33: "Factura Electrónica",
    34: "Factura Exenta",
    39: "Boleta Electrónica",
    41: "Boleta Exenta",
    52: "Guía de Despacho",
    56: "Nota de Débito",
    61: "Nota de Crédito",
}


@dataclass(frozen=True)
class TransactionRecord:
    """Datos extraídos del timbre electrónico (TED) de un DTE."""

    issuer_id: str
    counterparty_id: str
    date: date
    total_amount: int
    document_number: str
    document_type: int

    def __post_init__(self) -> None:
        if self.total_amount < 0:
            raise ValueError(f"total_amount must be >= 0, got {self.total_amount}")

    @property
    def document_type_name(self) -> str:
        return DTE_TYPE_NAMES.get(self.document_type, f"DTE {self.document_type}")


@dataclass
class Merchant:
    id: int
    name: str
    issuer_id: Optional[str] = None
    category: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Merchant":
        return cls(
            id=row["id"],
            name=row.get("name") or "",
            issuer_id=row.get("issuer_id"),
            category=row.get("category"),
            created_at=parse_timestamp(row.get("created_at")),
        )


@dataclass
class CreditCard:
    id: int
    user_id: int
    name: str
    last4: Optional[str] = None
    closing_day: Optional[int] = None
    payment_day: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CreditCard":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row.get("name") or "",
            last4=row.get("last4"),
            closing_day=row.get("closing_day"),
            payment_day=row.get("payment_day"),
        )


@dataclass
class DraftExpense:
    """
    Borrador de gasto a la espera de confirmación del usuario.
    Solo el motor de conciliación lo modifica después de creado.
    """

    user_id: int
    amount: int
    merchant_name: str
    date: date
    id: Optional[int] = None
    merchant_id: Optional[int] = None
    category: Optional[str] = None
    document_number: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    card_id: Optional[int] = None
    status: DraftStatus = DraftStatus.PENDING
    created_at: Optional[datetime] = None
    # Relaciones opcionales cargadas con joins
    merchant: Optional[Merchant] = field(default=None, compare=False)
    card: Optional[CreditCard] = field(default=None, compare=False)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DraftExpense":
        merchant_row = row.get("merchants")
        card_row = row.get("credit_cards")
        return cls(
            id=row.get("id"),
            user_id=row["user_id"],
            amount=int(row.get("amount") or 0),
            merchant_name=row.get("merchant_name") or "",
            merchant_id=row.get("merchant_id"),
            category=row.get("category"),
            date=parse_date(row.get("date")),
            document_number=row.get("document_number"),
            payment_method=PaymentMethod.parse(row.get("payment_method")),
            card_id=row.get("card_id"),
            status=DraftStatus(row.get("status") or DraftStatus.PENDING.value),
            created_at=parse_timestamp(row.get("created_at")),
            merchant=Merchant.from_row(merchant_row) if merchant_row else None,
            card=CreditCard.from_row(card_row) if card_row else None,
        )

    def to_payload(self) -> Dict[str, Any]:
        """Payload para insertar en la tabla de gastos."""
        return {
            "user_id": self.user_id,
            "amount": self.amount,
            "merchant_name": self.merchant_name,
            "merchant_id": self.merchant_id,
            "category": self.category,
            "date": self.date.isoformat(),
            "document_number": self.document_number,
            "payment_method": self.payment_method.value if self.payment_method else None,
            "card_id": self.card_id,
            "status": self.status.value,
        }

    def to_context(self) -> Dict[str, Any]:
        """Vista resumida del borrador que se envía al extractor de correcciones."""
        return {
            "merchant": self.merchant_name,
            "amount": self.amount,
            "category": self.category,
            "date": self.date.isoformat(),
            "receipt_number": self.document_number,
            "payment_method": self.payment_method.value if self.payment_method else None,
        }


def parse_date(raw_value: Any) -> date:
    """Convierte 'YYYY-MM-DD', ISO datetime o date en date. Sin valor -> hoy."""
    if isinstance(raw_value, datetime):
        return raw_value.date()
    if isinstance(raw_value, date):
        return raw_value
    if not raw_value:
        return date.today()
    value = str(raw_value).strip()
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return date.today()


def parse_timestamp(raw_value: Any) -> Optional[datetime]:
    if isinstance(raw_value, datetime):
        return raw_value
    if not raw_value:
        return None
    value = str(raw_value).strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def parse_amount(raw_value: Any) -> Optional[int]:
    """
    Monto en pesos como entero. Acepta 12990, 12990.0, "12.990", "$12.990".
    Devuelve None si no es un número válido o es negativo.
    """
    if raw_value is None or isinstance(raw_value, bool):
        return None
    if isinstance(raw_value, (int, float)):
        try:
            value = int(round(raw_value))
        except (ValueError, OverflowError):
            return None
    else:
        cleaned = str(raw_value).strip().replace("$", "").replace(" ", "")
        # Los pesos no llevan decimales: puntos y comas son separadores de miles
        cleaned = cleaned.replace(".", "").replace(",", "")
        if not cleaned.isdigit():
            return None
        value = int(cleaned)
    return value if value >= 0 else None

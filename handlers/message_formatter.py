"""
Message formatter - textos que ve el usuario (borradores, confirmaciones, resúmenes).
Todos los textos usan HTML de Telegram (<b>), los nombres se escapan.
"""
from collections import defaultdict
from datetime import date
from html import escape
from typing import Dict, List, Optional
import logging

# Importaciones desde la raíz del proyecto
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from models import CreditCard, DraftExpense, Merchant, PaymentMethod


MONTH_NAMES = [
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
]

NO_PENDING_TEXT = (
    "No hay gastos pendientes de confirmación. "
    "Envía una foto de un recibo para comenzar."
)
NOT_UNDERSTOOD_TEXT = (
    "🤔 No entendí la corrección. Intenta ser más explícito. "
    'Ej: "Usa tarjeta visa", "Monto 5000"'
)
PROCESSING_ERROR_TEXT = (
    "⚠️ No pude leer el documento. Intenta con una foto más nítida "
    "o envía el comprobante otra vez."
)
DISCARDED_TEXT = "❌ Gasto descartado."
GENERIC_ERROR_TEXT = "⚠️ Ocurrió un error procesando tu mensaje. Intenta de nuevo en unos minutos."


def truncate_message_for_telegram(text: str, max_length: int = 4000) -> str:
    """
    Corta el mensaje al largo máximo de Telegram (4096, se deja margen).
    """
    if len(text) <= max_length:
        return text
    truncated = text[:max_length - 50]
    # Intentamos cortar en el último salto de línea
    last_newline = truncated.rfind('\n')
    if last_newline > max_length - 200:
        truncated = truncated[:last_newline]
    return truncated + "\n\n... (mensaje recortado, demasiado largo)"


class MessageFormatter:
    """Formateador de mensajes del bot"""

    CURRENCY_SYMBOL = "$"

    def format_amount(self, amount: int) -> str:
        return f"{self.CURRENCY_SYMBOL}{amount}"

    def format_date(self, value: Optional[date]) -> str:
        if not value:
            return "N/A"
        return value.strftime("%d-%m-%Y")

    def _merchant_line(self, name: str, issuer_id: Optional[str]) -> str:
        rut = f" ({escape(issuer_id)})" if issuer_id else ""
        return f"🏪 <b>{escape(name)}</b>{rut}"

    def _card_line(self, draft: DraftExpense) -> Optional[str]:
        if draft.card:
            return f"💳 Tarjeta: <b>{escape(draft.card.name)}</b>"
        if draft.payment_method == PaymentMethod.CREDIT:
            return "💳 Crédito Detectado (Sin asignar)"
        return None

    def format_draft_summary(self, draft: DraftExpense, issuer_id: Optional[str] = None) -> str:
        """Resumen del borrador recién creado, con las instrucciones de respuesta."""
        lines = [
            "🧾 <b>Borrador Detectado</b>:",
            "",
            self._merchant_line(draft.merchant_name, issuer_id),
            f"📄 N°: {escape(draft.document_number or 'N/A')}",
            f"📅 {self.format_date(draft.date)}",
            f"💰 {self.format_amount(draft.amount)}",
            f"📂 {escape(draft.category or 'N/A')}",
        ]
        card_line = self._card_line(draft)
        if card_line:
            lines.append(card_line)
        lines.extend([
            "",
            "¿Es correcto? Responde:",
            "- <b>SI</b> para guardar",
            "- <b>NO</b> para descartar",
            '- O corrige (ej: "Usa tarjeta Visa")',
        ])
        return "\n".join(lines)

    def format_updated_draft(self, draft: DraftExpense) -> str:
        lines = [
            "✏️ <b>Gasto Actualizado</b>:",
            "",
            f"🏪 <b>{escape(draft.merchant_name)}</b>",
            f"📅 {self.format_date(draft.date)}",
            f"💰 {self.format_amount(draft.amount)}",
            f"📂 {escape(draft.category or 'N/A')}",
        ]
        card_line = self._card_line(draft)
        if card_line:
            lines.append(card_line)
        lines.extend(["", "¿Ahora está correcto? (Si/No/Corrección)"])
        return "\n".join(lines)

    def format_confirmation(self, draft: DraftExpense) -> str:
        merchant_name = draft.merchant.name if draft.merchant else draft.merchant_name
        issuer_id = draft.merchant.issuer_id if draft.merchant else None
        lines = [
            "✅ <b>Gasto Guardado Exitosamente</b>",
            "",
            f"📅 {self.format_date(draft.date)}",
            self._merchant_line(merchant_name, issuer_id),
            f"💰 {self.format_amount(draft.amount)}",
            f"📂 {escape(draft.category or 'N/A')}",
        ]
        if draft.card:
            lines.append(f"💳 {escape(draft.card.name)}")
        return "\n".join(lines)

    def format_merchant_selected(self, merchant: Merchant) -> str:
        return f"👌 Seleccionado: <b>{escape(merchant.name)}</b>.\n¿Todo listo? Responde <b>SI</b> para guardar."

    def format_candidates(self, term: str, candidates: List[Merchant]) -> str:
        lines = [f"🔎 Encontré varios comercios para \"<b>{escape(term)}</b>\":"]
        for index, merchant in enumerate(candidates, start=1):
            rut = f" ({escape(merchant.issuer_id)})" if merchant.issuer_id else ""
            lines.append(f"{index}. <b>{escape(merchant.name)}</b>{rut}")
        lines.append("")
        lines.append("Responde el <b>número</b> para seleccionar, o <b>SI</b> para guardar como nuevo.")
        lines.append("(Los demás cambios ya quedaron guardados)")
        return "\n".join(lines)

    def format_card_assigned(self, card: CreditCard) -> str:
        return f"💳 Tarjeta asignada: <b>{escape(card.name)}</b>"

    def format_ambiguous_cards(self, hint: str, cards: List[CreditCard]) -> str:
        lines = [f"💳 Encontré varias tarjetas para \"{escape(hint)}\":"]
        lines.extend(f"- {escape(card.name)}" for card in cards)
        lines.append("Por favor di el nombre completo de la tarjeta.")
        return "\n".join(lines)

    def format_card_not_found(self, hint: str, cards: List[CreditCard]) -> str:
        if not cards:
            return (
                f"❌ No encontré tarjeta \"{escape(hint)}\" y no tienes tarjetas registradas.\n"
                "Agrega una con /nueva_tarjeta &lt;nombre&gt;"
            )
        lines = [f"❌ No encontré tarjeta \"{escape(hint)}\". Tus tarjetas:"]
        lines.extend(f"- {escape(card.name)}" for card in cards)
        return "\n".join(lines)

    def format_cards(self, cards: List[CreditCard]) -> str:
        if not cards:
            return "💳 No tienes tarjetas registradas.\nAgrega una con /nueva_tarjeta &lt;nombre&gt;"
        lines = ["💳 <b>Tus tarjetas</b>:"]
        for card in cards:
            details = []
            if card.last4:
                details.append(f"****{escape(card.last4)}")
            if card.closing_day:
                details.append(f"cierre {card.closing_day}")
            if card.payment_day:
                details.append(f"pago {card.payment_day}")
            suffix = f" ({', '.join(details)})" if details else ""
            lines.append(f"• {escape(card.name)}{suffix}")
        return "\n".join(lines)

    def format_monthly_summary(self, expenses: List[DraftExpense], year: int, month: int) -> str:
        """
        Gastos confirmados del mes agrupados por categoría. Las compras con
        tarjeta de crédito no se suman: se pagan al mes siguiente.
        """
        period = f"{MONTH_NAMES[month - 1]} {year}"
        counted = [expense for expense in expenses if not expense.card_id]
        if not counted:
            logging.info(f"format_monthly_summary: no expenses for {period}")
            return f"📊 Resumen de {period}\n\nNo hay gastos confirmados en el período."

        by_category: Dict[str, int] = defaultdict(int)
        for expense in counted:
            by_category[expense.category or "Otros"] += expense.amount
        total = sum(by_category.values())

        lines = [f"📊 <b>Resumen de {period}</b>", f"💰 Total: {self.format_amount(total)}", ""]
        lines.append("📂 Por categoría:")
        for category, amount in sorted(by_category.items(), key=lambda item: (-item[1], item[0])):
            percentage = (amount / total * 100) if total > 0 else 0
            lines.append(f"  • {escape(category)}: {self.format_amount(amount)} ({percentage:.1f}%)")
        skipped = len(expenses) - len(counted)
        if skipped:
            lines.append("")
            lines.append(f"💳 {skipped} compra(s) con tarjeta de crédito no incluidas.")
        return "\n".join(lines)

    def format_recent_expenses(self, expenses: List[DraftExpense]) -> str:
        if not expenses:
            return "📋 Aún no tienes gastos confirmados."
        lines = ["📋 <b>Últimos gastos</b>:"]
        for expense in expenses:
            name = expense.merchant.name if expense.merchant else expense.merchant_name
            lines.append(
                f"• {self.format_date(expense.date)} - {escape(name)} - "
                f"{self.format_amount(expense.amount)} ({escape(expense.category or 'Otros')})"
            )
        return "\n".join(lines)

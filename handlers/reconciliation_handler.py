"""
Reconciliation handler - conversación de confirmación/corrección del borrador pendiente.

Cada mensaje se evalúa contra el borrador PENDING más reciente del usuario,
leído de la base en ese momento; no hay estado de sesión en memoria.
"""
from datetime import date
from typing import Any, Dict, Optional
import logging

# Importaciones desde la raíz del proyecto
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from models import DraftExpense, DraftStatus, PaymentMethod, parse_amount
from handlers.merchant_resolver import MerchantResolver
from handlers.message_formatter import (
    DISCARDED_TEXT,
    GENERIC_ERROR_TEXT,
    NO_PENDING_TEXT,
    NOT_UNDERSTOOD_TEXT,
    MessageFormatter,
)


CONFIRM_WORDS = {"si", "sí", "ok", "yes", "correcto", "save"}
REJECT_WORDS = {"no", "nop", "cancelar", "borrar", "del"}
CORRECTION_FIELDS = (
    "amount",
    "merchant",
    "category",
    "date",
    "receipt_number",
    "payment_method",
    "card_name",
)


def parse_selection(text: str) -> Optional[int]:
    """'2' -> 2. Cualquier otra cosa (incluido 0) -> None."""
    cleaned = text.strip()
    # isdigit() acepta "²", que int() no convierte
    if not cleaned.isdecimal():
        return None
    value = int(cleaned)
    return value if value > 0 else None


def filter_correction(raw_updates: Any) -> Dict[str, Any]:
    """Solo campos conocidos y con valor."""
    if not isinstance(raw_updates, dict):
        return {}
    return {
        key: value
        for key, value in raw_updates.items()
        if key in CORRECTION_FIELDS and value is not None and str(value).strip() != ""
    }


class ReconciliationHandler:
    """Máquina de estados del borrador: confirmar, descartar, elegir comercio o corregir"""

    def __init__(self, supabase_gateway, extractor, resolver: Optional[MerchantResolver] = None,
                 formatter: Optional[MessageFormatter] = None):
        self.supabase = supabase_gateway
        self.extractor = extractor
        self.resolver = resolver or MerchantResolver(supabase_gateway)
        self.formatter = formatter or MessageFormatter()

    async def process_text(self, user_id: int, text: str) -> str:
        try:
            return await self._dispatch(user_id, text)
        except Exception as exc:
            logging.exception(f"❌ Error processing text for user={user_id}: {exc}")
            return GENERIC_ERROR_TEXT

    async def _dispatch(self, user_id: int, text: str) -> str:
        clean_text = (text or "").strip().lower()
        draft = await self.supabase.find_latest_pending(user_id)
        if draft is None:
            logging.info(f"No pending draft for user={user_id}, text={clean_text!r}")
            return NO_PENDING_TEXT

        if clean_text in CONFIRM_WORDS:
            return await self._confirm(draft)
        if clean_text in REJECT_WORDS:
            return await self._reject(draft)

        selection = parse_selection(clean_text)
        if selection is not None:
            reply = await self._select_candidate(draft, selection)
            if reply is not None:
                return reply

        return await self._apply_correction(draft, text)

    async def _confirm(self, draft: DraftExpense) -> str:
        if draft.merchant_id is None:
            # Nombre libre sin comercio asociado: se crea (o reutiliza) al guardar
            merchant = await self.resolver.resolve_or_create(None, draft.merchant_name, draft.category)
            await self.supabase.update_draft(draft.id, {"merchant_id": merchant.id})

        changed = await self.supabase.transition_status(draft.id, DraftStatus.CONFIRMED)
        if not changed:
            logging.info(f"Draft id={draft.id} was no longer pending on confirm")
            return NO_PENDING_TEXT

        final_draft = await self.supabase.get_draft(draft.id)
        if final_draft is None:
            logging.warning(f"Confirmed draft id={draft.id} could not be re-read")
            final_draft = draft
        logging.info(f"✅ Draft id={draft.id} confirmed for user={draft.user_id}")
        return self.formatter.format_confirmation(final_draft)

    async def _reject(self, draft: DraftExpense) -> str:
        changed = await self.supabase.transition_status(draft.id, DraftStatus.REJECTED)
        if not changed:
            return NO_PENDING_TEXT
        logging.info(f"❌ Draft id={draft.id} rejected by user={draft.user_id}")
        return DISCARDED_TEXT

    async def _select_candidate(self, draft: DraftExpense, selection: int) -> Optional[str]:
        candidates = await self.resolver.find_candidates(draft.merchant_name)
        if selection > len(candidates):
            logging.info(
                f"Selection {selection} out of range ({len(candidates)} candidates), treating as correction"
            )
            return None
        selected = candidates[selection - 1]
        await self.supabase.update_draft(
            draft.id, {"merchant_id": selected.id, "merchant_name": selected.name}
        )
        return self.formatter.format_merchant_selected(selected)

    async def _apply_correction(self, draft: DraftExpense, text: str) -> str:
        if self.extractor is None:
            logging.error("Correction extractor is not configured")
            return NOT_UNDERSTOOD_TEXT
        updates = filter_correction(await self.extractor.interpret(draft, text))
        if not updates:
            return NOT_UNDERSTOOD_TEXT

        fields: Dict[str, Any] = {}
        notes = []
        payment_method = PaymentMethod.parse(updates.get("payment_method"))

        card_hint = updates.get("card_name")
        if card_hint:
            card_hint = str(card_hint).strip()
            cards = await self.supabase.search_credit_cards(draft.user_id, card_hint)
            if len(cards) > 1:
                return self.formatter.format_ambiguous_cards(card_hint, cards)
            if not cards:
                all_cards = await self.supabase.list_credit_cards(draft.user_id)
                return self.formatter.format_card_not_found(card_hint, all_cards)
            fields["card_id"] = cards[0].id
            if payment_method is None:
                payment_method = PaymentMethod.CREDIT
            notes.append(self.formatter.format_card_assigned(cards[0]))

        if payment_method is not None:
            fields["payment_method"] = payment_method.value
            if payment_method != PaymentMethod.CREDIT:
                fields["card_id"] = None

        if "amount" in updates:
            amount = parse_amount(updates["amount"])
            if amount is not None:
                fields["amount"] = amount
            else:
                logging.info(f"Ignoring invalid amount correction: {updates['amount']!r}")
        if "category" in updates:
            fields["category"] = str(updates["category"]).strip()
        if "date" in updates:
            try:
                fields["date"] = date.fromisoformat(str(updates["date"]).strip()[:10]).isoformat()
            except ValueError:
                logging.info(f"Ignoring invalid date correction: {updates['date']!r}")
        if "receipt_number" in updates:
            fields["document_number"] = str(updates["receipt_number"]).strip()

        merchant_term = str(updates.get("merchant") or "").strip()
        if merchant_term:
            fields["merchant_name"] = merchant_term
            fields["merchant_id"] = None

        if not fields:
            return NOT_UNDERSTOOD_TEXT

        updated = await self.supabase.update_draft(draft.id, fields)
        if not updated:
            logging.info(f"Draft id={draft.id} was no longer pending on correction")
            return NO_PENDING_TEXT
        logging.info(f"✏️ Draft id={draft.id} corrected: {sorted(fields)}")

        if merchant_term:
            candidates = await self.resolver.find_candidates(merchant_term)
            if len(candidates) > 1:
                return self.formatter.format_candidates(merchant_term, candidates)
            if len(candidates) == 1:
                await self.supabase.update_draft(
                    draft.id,
                    {"merchant_id": candidates[0].id, "merchant_name": candidates[0].name},
                )

        refreshed = await self.supabase.get_draft(draft.id)
        if refreshed is None:
            return "Error actualizando."
        summary = self.formatter.format_updated_draft(refreshed)
        if notes:
            return "\n".join(notes) + "\n\n" + summary
        return summary

"""
Supabase gateway - acceso a gastos (borradores), comercios y tarjetas de crédito.
Cada operación tiene una versión síncrona `_..._sync` que se ejecuta en un hilo.
"""
import asyncio
import json
import logging
import re
from datetime import date
from typing import Any, Dict, List, Optional

from models import CreditCard, DraftExpense, DraftStatus, Merchant

try:
    from supabase import Client, create_client
    SUPABASE_AVAILABLE = True
except ModuleNotFoundError:  # pragma: no cover - import guard
    Client = Any  # type: ignore
    create_client = None  # type: ignore
    SUPABASE_AVAILABLE = False


DRAFT_SELECT = "*, merchants(*), credit_cards(*)"
# Se trae más de lo que se muestra para poder ordenar por relevancia (por consulta)
MERCHANT_SEARCH_FETCH_LIMIT = 25
_FILTER_UNSAFE_CHARS = re.compile(r"[,()*%\\\"]")


def sanitize_filter_term(term: str) -> str:
    """Quita los caracteres que rompen la sintaxis de filtros de PostgREST."""
    return _FILTER_UNSAFE_CHARS.sub(" ", term or "").strip()


class SupabaseGateway:
    """Async helper around Supabase client used by BoletaBot."""

    def __init__(
        self,
        url: str,
        service_key: str,
        expenses_table: str = "expenses",
        merchants_table: str = "merchants",
        cards_table: str = "credit_cards",
    ) -> None:
        if not SUPABASE_AVAILABLE or create_client is None:
            raise RuntimeError("Supabase client is not installed. Run `pip install supabase`.")
        self._client: Client = create_client(url, service_key)
        self.expenses_table = expenses_table
        self.merchants_table = merchants_table
        self.cards_table = cards_table

    # ------------------------------------------------------------------
    # Borradores / gastos
    # ------------------------------------------------------------------

    def _create_draft_sync(self, draft: DraftExpense) -> DraftExpense:
        payload = draft.to_payload()
        try:
            result = self._client.table(self.expenses_table).insert(payload).execute()
        except Exception as exc:
            logging.exception(f"❌ Error inserting draft in {self.expenses_table}: {exc}")
            logging.error(f"Payload: {json.dumps(payload, ensure_ascii=False, default=str)}")
            raise
        if not result.data:
            raise RuntimeError(f"Supabase returned no row for insert into {self.expenses_table}")
        stored = DraftExpense.from_row(result.data[0])
        logging.info(f"✅ Draft created: id={stored.id} user={stored.user_id} amount={stored.amount}")
        return stored

    def _get_draft_sync(self, draft_id: int) -> Optional[DraftExpense]:
        try:
            result = (
                self._client.table(self.expenses_table)
                .select(DRAFT_SELECT)
                .eq("id", draft_id)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            logging.exception(f"Error fetching draft id={draft_id}: {exc}")
            return None
        if not result.data:
            return None
        return DraftExpense.from_row(result.data[0])

    def _find_latest_pending_sync(self, user_id: int) -> Optional[DraftExpense]:
        """El borrador PENDING más reciente del usuario (por created_at)."""
        try:
            result = (
                self._client.table(self.expenses_table)
                .select(DRAFT_SELECT)
                .eq("user_id", user_id)
                .eq("status", DraftStatus.PENDING.value)
                .order("created_at", desc=True)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            logging.exception(f"Error fetching pending draft for user={user_id}: {exc}")
            raise
        if not result.data:
            return None
        return DraftExpense.from_row(result.data[0])

    def _update_draft_sync(self, draft_id: int, fields: Dict[str, Any]) -> bool:
        if not fields:
            return False
        try:
            result = (
                self._client.table(self.expenses_table)
                .update(fields)
                .eq("id", draft_id)
                .eq("status", DraftStatus.PENDING.value)
                .execute()
            )
        except Exception as exc:
            logging.exception(f"❌ Error updating draft id={draft_id}: {exc}")
            logging.error(f"Fields: {json.dumps(fields, ensure_ascii=False, default=str)}")
            raise
        updated = bool(result.data)
        logging.info(f"Draft id={draft_id} updated={updated} fields={sorted(fields)}")
        return updated

    def _transition_status_sync(self, draft_id: int, status: DraftStatus) -> bool:
        """
        PENDING -> CONFIRMED/REJECTED. El filtro por status hace que repetir la
        transición no tenga efecto: devuelve False si el borrador ya no estaba pendiente.
        """
        try:
            result = (
                self._client.table(self.expenses_table)
                .update({"status": status.value})
                .eq("id", draft_id)
                .eq("status", DraftStatus.PENDING.value)
                .execute()
            )
        except Exception as exc:
            logging.exception(f"❌ Error moving draft id={draft_id} to {status.value}: {exc}")
            raise
        changed = bool(result.data)
        logging.info(f"Draft id={draft_id} -> {status.value} changed={changed}")
        return changed

    def _reject_pending_drafts_sync(self, user_id: int, except_id: Optional[int] = None) -> int:
        try:
            query = (
                self._client.table(self.expenses_table)
                .update({"status": DraftStatus.REJECTED.value})
                .eq("user_id", user_id)
                .eq("status", DraftStatus.PENDING.value)
            )
            if except_id is not None:
                query = query.neq("id", except_id)
            result = query.execute()
        except Exception as exc:
            logging.exception(f"❌ Error rejecting pending drafts for user={user_id}: {exc}")
            raise
        rejected = len(result.data) if result.data else 0
        if rejected:
            logging.info(f"Superseded {rejected} pending draft(s) for user={user_id}")
        return rejected

    def _fetch_confirmed_expenses_sync(
        self,
        user_id: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: int = 500,
    ) -> List[DraftExpense]:
        try:
            query = (
                self._client.table(self.expenses_table)
                .select(DRAFT_SELECT)
                .eq("user_id", user_id)
                .eq("status", DraftStatus.CONFIRMED.value)
            )
            if start_date:
                query = query.gte("date", start_date.isoformat())
            if end_date:
                query = query.lte("date", end_date.isoformat())
            result = query.order("date", desc=True).limit(limit).execute()
        except Exception as exc:
            logging.exception(f"Error fetching confirmed expenses for user={user_id}: {exc}")
            return []
        return [DraftExpense.from_row(row) for row in result.data or []]

    # ------------------------------------------------------------------
    # Comercios
    # ------------------------------------------------------------------

    def _get_merchant_sync(self, merchant_id: int) -> Optional[Merchant]:
        return self._first_merchant(lambda table: table.select("*").eq("id", merchant_id))

    def _find_merchant_by_issuer_sync(self, issuer_id: str) -> Optional[Merchant]:
        return self._first_merchant(lambda table: table.select("*").eq("issuer_id", issuer_id))

    def _find_merchant_by_name_sync(self, name: str) -> Optional[Merchant]:
        """Coincidencia exacta sin distinguir mayúsculas."""
        cleaned = sanitize_filter_term(name)
        if not cleaned:
            return None
        return self._first_merchant(
            lambda table: table.select("*").ilike("name", cleaned).order("id")
        )

    def _first_merchant(self, build_query) -> Optional[Merchant]:
        try:
            result = build_query(self._client.table(self.merchants_table)).limit(1).execute()
        except Exception as exc:
            logging.exception(f"Error fetching merchant: {exc}")
            return None
        if not result.data:
            return None
        return Merchant.from_row(result.data[0])

    def _search_merchants_sync(self, terms: List[str], limit: int = MERCHANT_SEARCH_FETCH_LIMIT) -> List[Merchant]:
        """
        Comercios cuyo nombre contiene cualquiera de los términos (OR, sin mayúsculas).
        Con un solo término se traen primero los que empiezan con él, así un nombre
        exacto o un prefijo no se pierde detrás de `limit` coincidencias internas.
        """
        cleaned = [term for term in (sanitize_filter_term(t) for t in terms) if term]
        if not cleaned:
            return []
        try:
            if len(cleaned) == 1:
                rows = self._query_merchants(lambda query: query.ilike("name", f"{cleaned[0]}%"), limit)
                rows += self._query_merchants(lambda query: query.ilike("name", f"%{cleaned[0]}%"), limit)
            else:
                rows = self._query_merchants(
                    lambda query: query.or_(",".join(f"name.ilike.*{term}*" for term in cleaned)), limit
                )
        except Exception as exc:
            logging.exception(f"Error searching merchants for {cleaned}: {exc}")
            return []
        merchants: Dict[Any, Merchant] = {}
        for row in rows:
            merchants.setdefault(row.get("id"), Merchant.from_row(row))
        return list(merchants.values())

    def _query_merchants(self, add_filter, limit: int) -> List[Dict[str, Any]]:
        query = add_filter(self._client.table(self.merchants_table).select("*"))
        result = query.order("id").limit(limit).execute()
        return list(result.data or [])

    def _create_merchant_sync(
        self, name: str, issuer_id: Optional[str] = None, category: Optional[str] = None
    ) -> Merchant:
        payload = {"name": name, "issuer_id": issuer_id, "category": category}
        try:
            result = self._client.table(self.merchants_table).insert(payload).execute()
        except Exception as exc:
            logging.exception(f"❌ Error creating merchant {name!r}: {exc}")
            raise
        if not result.data:
            raise RuntimeError(f"Supabase returned no row for insert into {self.merchants_table}")
        merchant = Merchant.from_row(result.data[0])
        logging.info(f"✅ Merchant created: id={merchant.id} name={merchant.name!r} issuer={issuer_id}")
        return merchant

    # ------------------------------------------------------------------
    # Tarjetas de crédito
    # ------------------------------------------------------------------

    def _list_credit_cards_sync(self, user_id: int) -> List[CreditCard]:
        try:
            result = (
                self._client.table(self.cards_table)
                .select("*")
                .eq("user_id", user_id)
                .order("id")
                .execute()
            )
        except Exception as exc:
            logging.exception(f"Error fetching credit cards for user={user_id}: {exc}")
            return []
        return [CreditCard.from_row(row) for row in result.data or []]

    def _search_credit_cards_sync(self, user_id: int, term: str) -> List[CreditCard]:
        cleaned = sanitize_filter_term(term)
        if not cleaned:
            return []
        try:
            result = (
                self._client.table(self.cards_table)
                .select("*")
                .eq("user_id", user_id)
                .ilike("name", f"%{cleaned}%")
                .order("id")
                .execute()
            )
        except Exception as exc:
            logging.exception(f"Error searching credit cards for user={user_id}: {exc}")
            return []
        return [CreditCard.from_row(row) for row in result.data or []]

    def _create_credit_card_sync(
        self,
        user_id: int,
        name: str,
        last4: Optional[str] = None,
        closing_day: Optional[int] = None,
        payment_day: Optional[int] = None,
    ) -> CreditCard:
        payload = {
            "user_id": user_id,
            "name": name,
            "last4": last4,
            "closing_day": closing_day,
            "payment_day": payment_day,
        }
        try:
            result = self._client.table(self.cards_table).insert(payload).execute()
        except Exception as exc:
            logging.exception(f"❌ Error creating credit card for user={user_id}: {exc}")
            raise
        if not result.data:
            raise RuntimeError(f"Supabase returned no row for insert into {self.cards_table}")
        card = CreditCard.from_row(result.data[0])
        logging.info(f"✅ Credit card created: id={card.id} user={user_id} name={name!r}")
        return card

    # ------------------------------------------------------------------
    # Async wrappers
    # ------------------------------------------------------------------

    async def create_draft(self, draft: DraftExpense) -> DraftExpense:
        return await asyncio.to_thread(self._create_draft_sync, draft)

    async def get_draft(self, draft_id: int) -> Optional[DraftExpense]:
        return await asyncio.to_thread(self._get_draft_sync, draft_id)

    async def find_latest_pending(self, user_id: int) -> Optional[DraftExpense]:
        return await asyncio.to_thread(self._find_latest_pending_sync, user_id)

    async def update_draft(self, draft_id: int, fields: Dict[str, Any]) -> bool:
        return await asyncio.to_thread(self._update_draft_sync, draft_id, fields)

    async def transition_status(self, draft_id: int, status: DraftStatus) -> bool:
        return await asyncio.to_thread(self._transition_status_sync, draft_id, status)

    async def reject_pending_drafts(self, user_id: int, except_id: Optional[int] = None) -> int:
        return await asyncio.to_thread(self._reject_pending_drafts_sync, user_id, except_id)

    async def fetch_confirmed_expenses(
        self,
        user_id: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: int = 500,
    ) -> List[DraftExpense]:
        return await asyncio.to_thread(
            self._fetch_confirmed_expenses_sync, user_id, start_date, end_date, limit
        )

    async def get_merchant(self, merchant_id: int) -> Optional[Merchant]:
        return await asyncio.to_thread(self._get_merchant_sync, merchant_id)

    async def find_merchant_by_issuer(self, issuer_id: str) -> Optional[Merchant]:
        return await asyncio.to_thread(self._find_merchant_by_issuer_sync, issuer_id)

    async def find_merchant_by_name(self, name: str) -> Optional[Merchant]:
        return await asyncio.to_thread(self._find_merchant_by_name_sync, name)

    async def search_merchants(self, terms: List[str], limit: int = MERCHANT_SEARCH_FETCH_LIMIT) -> List[Merchant]:
        return await asyncio.to_thread(self._search_merchants_sync, terms, limit)

    async def create_merchant(
        self, name: str, issuer_id: Optional[str] = None, category: Optional[str] = None
    ) -> Merchant:
        return await asyncio.to_thread(self._create_merchant_sync, name, issuer_id, category)

    async def list_credit_cards(self, user_id: int) -> List[CreditCard]:
        return await asyncio.to_thread(self._list_credit_cards_sync, user_id)

    async def search_credit_cards(self, user_id: int, term: str) -> List[CreditCard]:
        return await asyncio.to_thread(self._search_credit_cards_sync, user_id, term)

    async def create_credit_card(
        self,
        user_id: int,
        name: str,
        last4: Optional[str] = None,
        closing_day: Optional[int] = None,
        payment_day: Optional[int] = None,
    ) -> CreditCard:
        return await asyncio.to_thread(
            self._create_credit_card_sync, user_id, name, last4, closing_day, payment_day
        )

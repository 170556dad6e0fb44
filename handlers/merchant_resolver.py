"""
Merchant resolver - búsqueda difusa de comercios y resolve-or-create.
"""
from typing import List, Optional
import logging

# Importaciones desde la raíz del proyecto
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from models import Merchant


MAX_CANDIDATES = 5
MIN_TOKEN_LENGTH = 3
UNKNOWN_MERCHANT_NAME = "Comercio Desconocido"


def split_search_tokens(term: str) -> List[str]:
    """Palabras del término con 3 o más caracteres."""
    return [token for token in (term or "").split() if len(token) >= MIN_TOKEN_LENGTH]


def rank_by_term(merchants: List[Merchant], term: str) -> List[Merchant]:
    """Exacto, luego prefijo, luego substring; empates por id (orden de inserción)."""
    needle = term.strip().lower()

    def score(merchant: Merchant) -> int:
        name = merchant.name.strip().lower()
        if name == needle:
            return 0
        if name.startswith(needle):
            return 1
        return 2

    matching = [m for m in merchants if needle in m.name.lower()]
    return sorted(matching, key=lambda m: (score(m), m.id))


def rank_by_tokens(merchants: List[Merchant], tokens: List[str]) -> List[Merchant]:
    """Más tokens coincidentes primero; empates por id."""
    lowered = [token.lower() for token in tokens]
    scored = []
    for merchant in merchants:
        name = merchant.name.lower()
        hits = sum(1 for token in lowered if token in name)
        if hits:
            scored.append((hits, merchant))
    scored.sort(key=lambda pair: (-pair[0], pair[1].id))
    return [merchant for _, merchant in scored]


class MerchantResolver:
    """Resuelve nombres de comercio contra el catálogo"""

    def __init__(self, supabase_gateway, limit: int = MAX_CANDIDATES):
        self.supabase = supabase_gateway
        self.limit = limit

    async def find_candidates(self, term: Optional[str]) -> List[Merchant]:
        """
        Hasta `limit` comercios para el término. Primero se busca el término
        completo; si no hay nada, cualquiera de sus palabras de 3+ letras.
        """
        cleaned = (term or "").strip()
        if not cleaned:
            return []

        whole = await self.supabase.search_merchants([cleaned])
        ranked = rank_by_term(whole, cleaned)
        if ranked:
            logging.info(f"🔎 Merchant candidates for {cleaned!r}: {[m.name for m in ranked[: self.limit]]}")
            return ranked[: self.limit]

        tokens = split_search_tokens(cleaned)
        if not tokens:
            return []
        partial = await self.supabase.search_merchants(tokens)
        ranked = rank_by_tokens(partial, tokens)
        logging.info(
            f"🔎 Merchant candidates for tokens {tokens}: {[m.name for m in ranked[: self.limit]]}"
        )
        return ranked[: self.limit]

    async def resolve_or_create(
        self,
        issuer_id: Optional[str],
        name: Optional[str],
        category: Optional[str] = None,
    ) -> Merchant:
        """
        Busca por RUT, después por nombre exacto (sin mayúsculas) y si no hay
        coincidencia crea el comercio. Un comercio encontrado por nombre solo se
        descarta cuando ambos tienen RUT y son distintos.
        """
        issuer_id = (issuer_id or "").strip() or None
        display_name = (name or "").strip() or UNKNOWN_MERCHANT_NAME

        if issuer_id:
            merchant = await self.supabase.find_merchant_by_issuer(issuer_id)
            if merchant:
                logging.info(f"🏪 Merchant resolved by RUT {issuer_id}: {merchant.name} (id={merchant.id})")
                return merchant

        if name and name.strip():
            merchant = await self.supabase.find_merchant_by_name(display_name)
            if merchant and (not issuer_id or not merchant.issuer_id or merchant.issuer_id == issuer_id):
                logging.info(f"🏪 Merchant resolved by name: {merchant.name} (id={merchant.id})")
                return merchant
            if merchant:
                logging.info(
                    f"Merchant {merchant.name!r} has RUT {merchant.issuer_id}, not {issuer_id}; creating a new one"
                )

        return await self.supabase.create_merchant(display_name, issuer_id, category)

"""
Cliente mínimo de OpenAI Chat Completions: extracción desde imagen (fallback
cuando no hay PDF417) e interpretación de correcciones en texto libre.
"""
import asyncio
import base64
import json
import logging
import os
from datetime import datetime
from typing import Any, Dict
from zoneinfo import ZoneInfo

import requests

from models import DraftExpense


VISION_MODEL = os.getenv("RECEIPT_VISION_MODEL", "gpt-4o").strip()
CORRECTION_MODEL = os.getenv("RECEIPT_CORRECTION_MODEL", "gpt-4o").strip()
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
OPENAI_TEMPERATURE = float(os.getenv("OPENAI_TEMPERATURE", "0.1"))
DEFAULT_OPENAI_TIMEOUT = int(os.getenv("OPENAI_TIMEOUT", "120"))
RECEIPT_TIMEZONE = os.getenv("RECEIPT_TIMEZONE", "America/Santiago").strip()

VISION_SYSTEM_PROMPT = (
    "Eres un asistente contable que extrae datos de boletas, facturas y "
    "notificaciones bancarias chilenas. Respondes solo JSON."
)

VISION_PROMPT_TEMPLATE = """Hoy es {today}.

La imagen puede ser una boleta/factura chilena o un pantallazo de una notificación
bancaria o de una app de pagos. Si hay varias notificaciones, usa solo la más reciente
(la de más arriba).

Devuelve un objeto JSON con estas claves:
- "merchant": nombre del comercio, limpio (ej: "CMP LIDER" -> "Lider").
- "rut": RUT del emisor si se ve (formato XX.XXX.XXX-X), o null.
- "receipt_number": número de boleta, folio o N° de operación, o null.
- "amount": total en pesos chilenos como número entero, sin puntos.
- "date": fecha de la transacción en ISO 8601. "ayer" se calcula desde hoy; si solo hay hora, usa la fecha de hoy.
- "category": una de Comida, Supermercado, Transporte, Hogar, Salud, Otros.
- "payment_method": "Debit", "Credit", "Cash" o "Transfer", o null.
- "card_name": si es crédito, el nombre de la tarjeta o banco (ej: "Visa Falabella"), o null.

Si un dato no se puede leer, infiérelo si es razonable o déjalo en null."""

CORRECTION_SYSTEM_PROMPT = (
    "You update JSON expense data from short natural-language corrections written in Spanish."
)

CORRECTION_PROMPT_TEMPLATE = """Datos actuales del gasto: {current}
Instrucción del usuario: "{text}"

Devuelve SOLO las claves que cambian, en un objeto JSON:
- "amount": entero en pesos, sin puntos.
- "merchant": nombre del comercio.
- "category": categoría.
- "date": fecha YYYY-MM-DD.
- "receipt_number": número de boleta o folio.
- "payment_method": "Debit", "Credit", "Cash" o "Transfer".
- "card_name": nombre (o parte del nombre) de la tarjeta de crédito mencionada.
Si la instrucción no pide ningún cambio, devuelve {{}}."""


class ExtractionError(RuntimeError):
    """Raised when the vision extractor can not produce a usable answer."""


def build_data_url(file_bytes: bytes, mime_type: str) -> str:
    encoded = base64.b64encode(file_bytes).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def extract_choice_text(response_json: Dict[str, Any]) -> str:
    choices = response_json.get("choices")
    if not choices:
        raise ExtractionError("OpenAI response has no choices.")
    message = choices[0].get("message", {})
    refusal = message.get("refusal")
    if refusal:
        raise ExtractionError(f"OpenAI refused the request: {refusal}")
    content = message.get("content")
    if isinstance(content, list):
        content = "".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    if not isinstance(content, str):
        raise ExtractionError("Could not read text content from the model response.")
    stripped = content.strip()
    if not stripped:
        raise ExtractionError("Model returned an empty answer.")
    return stripped


def parse_json_object(text: str) -> Dict[str, Any]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ExtractionError(f"Model answer is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ExtractionError("Model answer is not a JSON object.")
    return data


class ReceiptExtractorAI:
    """Wrapper around OpenAI Chat Completions for receipt extraction and corrections."""

    def __init__(
        self,
        api_key: str,
        vision_model: str = VISION_MODEL,
        correction_model: str = CORRECTION_MODEL,
        base_url: str = OPENAI_BASE_URL,
        temperature: float = OPENAI_TEMPERATURE,
        timeout: int = DEFAULT_OPENAI_TIMEOUT,
        timezone: str = RECEIPT_TIMEZONE,
    ) -> None:
        if not api_key:
            raise ExtractionError("OPENAI_API_KEY is required for receipt extraction.")
        self.api_key = api_key
        self.vision_model = vision_model
        self.correction_model = correction_model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.timeout = timeout
        self.timezone = timezone
        self._session = requests.Session()

    async def extract(self, file_bytes: bytes, mime_type: str) -> Dict[str, Any]:
        """
        Envía la imagen al modelo y devuelve los campos detectados.
        Cualquier falla (red, timeout, respuesta inválida) termina en ExtractionError.
        """
        if not mime_type.startswith("image/"):
            raise ExtractionError(f"Unsupported mime type for vision extraction: {mime_type}")
        payload = self._build_vision_payload(build_data_url(file_bytes, mime_type))
        logging.info(f"Sending receipt image to OpenAI ({len(file_bytes) / 1024:.1f} KB, {mime_type})")
        try:
            response_json = await asyncio.to_thread(self._post_payload, payload)
        except requests.RequestException as exc:
            raise ExtractionError(f"OpenAI request failed: {exc}") from exc
        data = parse_json_object(extract_choice_text(response_json))
        logging.info(f"OpenAI vision result: {json.dumps(data, ensure_ascii=False)}")
        return data

    async def interpret(self, draft: DraftExpense, text: str) -> Dict[str, Any]:
        """Devuelve un dict con solo los campos a cambiar; ante cualquier error, {}."""
        logging.info(f"Parsing correction: {text!r}")
        payload = self._build_correction_payload(draft, text)
        try:
            response_json = await asyncio.to_thread(self._post_payload, payload)
            updates = parse_json_object(extract_choice_text(response_json))
        except (requests.RequestException, ExtractionError, ValueError) as exc:
            logging.exception(f"Error parsing correction: {exc}")
            return {}
        logging.debug(f"Correction result: {json.dumps(updates, ensure_ascii=False)}")
        return updates

    def _today(self) -> str:
        try:
            now = datetime.now(ZoneInfo(self.timezone))
        except (KeyError, ValueError):
            logging.warning(f"Unknown timezone {self.timezone!r}, using local time")
            now = datetime.now()
        return now.strftime("%Y-%m-%d %H:%M")

    def _build_vision_payload(self, data_url: str) -> Dict[str, Any]:
        return {
            "model": self.vision_model,
            "response_format": {"type": "json_object"},
            "temperature": self.temperature,
            "messages": [
                {"role": "system", "content": VISION_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": VISION_PROMPT_TEMPLATE.format(today=self._today())},
                        {"type": "image_url", "image_url": {"url": data_url}},
                    ],
                },
            ],
        }

    def _build_correction_payload(self, draft: DraftExpense, text: str) -> Dict[str, Any]:
        current = json.dumps(draft.to_context(), ensure_ascii=False)
        return {
            "model": self.correction_model,
            "response_format": {"type": "json_object"},
            "temperature": self.temperature,
            "messages": [
                {"role": "system", "content": CORRECTION_SYSTEM_PROMPT},
                {"role": "user", "content": CORRECTION_PROMPT_TEMPLATE.format(current=current, text=text)},
            ],
        }

    def _post_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        resp = self._session.post(url, headers=headers, json=payload, timeout=self.timeout)
        if resp.status_code >= 400:
            raise ExtractionError(f"OpenAI error {resp.status_code}: {resp.text[:500]}")
        return resp.json()

import asyncio
import calendar
import io
import json
import logging
import mimetypes
import os
from dataclasses import dataclass, field
from datetime import date
from html import escape
from pathlib import Path
from typing import Any, FrozenSet, Optional, Tuple

from aiogram import Bot, Dispatcher, F, Router
from aiogram.filters import Command, CommandObject, CommandStart
from aiogram.types import BotCommand, Message
from dotenv import load_dotenv

from ai_extractor import ExtractionError, ReceiptExtractorAI
from handlers.message_formatter import MessageFormatter, truncate_message_for_telegram
from handlers.receipt_handler import BoletaService
from supabase_gateway import SupabaseGateway


load_dotenv()
log_level_name = os.getenv("BOLETABOT_LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(message)s")
log_dir = Path(os.getenv("BOLETABOT_LOG_DIR", "logs"))
log_dir.mkdir(parents=True, exist_ok=True)
file_handler = logging.FileHandler(log_dir / "boletabot.log")
file_handler.setLevel(log_level)
file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
logging.getLogger().addHandler(file_handler)
logging.info("BoletaBot logging configured at %s", log_level_name)

DEFAULT_CATEGORY = os.getenv("DEFAULT_CATEGORY", "Otros").strip() or "Otros"
RECENT_EXPENSES_LIMIT = 10

HELP_TEXT = (
    "👋 ¡Hola! Registro tus gastos a partir de boletas y notificaciones.\n\n"
    "📸 Envía una foto de la boleta: leo el timbre electrónico (PDF417) "
    "o, si no se ve, el resto del documento.\n"
    "✅ Responde <b>SI</b> para guardar, <b>NO</b> para descartar, "
    "o corrige en texto libre (ej: \"Monto 5000\", \"Usa tarjeta Visa\").\n\n"
    "📋 Comandos:\n"
    "/tarjetas — tus tarjetas de crédito\n"
    "/nueva_tarjeta &lt;nombre&gt;[;últimos4;día cierre;día pago] — registrar tarjeta\n"
    "/resumen [MM-YYYY] — gastos del mes por categoría\n"
    "/gastos — últimos gastos guardados\n"
    "/ayuda — esta ayuda"
)


@dataclass(frozen=True)
class AllowList:
    """Usuarios de Telegram autorizados. Vacía = todos."""

    user_ids: FrozenSet[int] = field(default_factory=frozenset)

    @classmethod
    def parse(cls, raw: Optional[str]) -> "AllowList":
        """Acepta JSON ('[1, 2]') o CSV ('1,2')."""
        raw = (raw or "").strip()
        if not raw:
            return cls()
        try:
            if raw.startswith("["):
                values = json.loads(raw)
            else:
                values = [value.strip() for value in raw.split(",")]
            return cls(frozenset(int(value) for value in values if str(value).strip()))
        except (ValueError, TypeError) as exc:
            logging.error(f"Failed to parse ALLOWED_USER_IDS: {exc}")
            raise

    @classmethod
    def from_env(cls) -> "AllowList":
        return cls.parse(os.getenv("ALLOWED_USER_IDS"))

    def allows(self, user_id: Optional[int]) -> bool:
        if not self.user_ids:
            return True
        return user_id is not None and user_id in self.user_ids


def parse_month_argument(args: Optional[str], today: Optional[date] = None) -> Tuple[int, int]:
    """'MM-YYYY' -> (año, mes). Sin argumento, el mes actual."""
    today = today or date.today()
    if not args or not args.strip():
        return today.year, today.month
    month_str, _, year_str = args.strip().partition("-")
    month, year = int(month_str), int(year_str)
    if not 1 <= month <= 12:
        raise ValueError(f"Mes inválido: {month}")
    return year, month


def month_bounds(year: int, month: int) -> Tuple[date, date]:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def parse_card_command(args: Optional[str]) -> Tuple[str, Optional[str], Optional[int], Optional[int]]:
    """'Visa Falabella;1234;25;5' -> (nombre, last4, cierre, pago)."""
    parts = [part.strip() for part in (args or "").split(";")]
    name = parts[0] if parts else ""
    if not name:
        raise ValueError("Falta el nombre de la tarjeta")
    last4 = parts[1] if len(parts) > 1 and parts[1] else None
    if last4 is not None and not (len(last4) == 4 and last4.isdigit()):
        raise ValueError("Los últimos dígitos deben ser 4 números")
    days = []
    for raw_day in parts[2:4]:
        day = int(raw_day) if raw_day else None
        if day is not None and not 1 <= day <= 31:
            raise ValueError(f"Día inválido: {day}")
        days.append(day)
    while len(days) < 2:
        days.append(None)
    return name, last4, days[0], days[1]


def detect_mime_type(message: Message) -> str:
    if message.photo:
        return "image/jpeg"
    if message.document:
        if message.document.mime_type:
            return message.document.mime_type
        guessed, _ = mimetypes.guess_type(message.document.file_name or "")
        if guessed:
            return guessed
    return "application/octet-stream"


class BoletaBot:
    """Telegram bot: boletas por foto, confirmación y correcciones por texto."""

    def __init__(
        self,
        token: str,
        supabase_gateway: Optional[SupabaseGateway] = None,
        extractor: Optional[ReceiptExtractorAI] = None,
        allow_list: Optional[AllowList] = None,
        default_category: str = DEFAULT_CATEGORY,
    ) -> None:
        self.bot = Bot(token=token)
        self.dp = Dispatcher()
        self.router = Router(name="boletabot")
        self.supabase = supabase_gateway
        self.allow_list = allow_list or AllowList()
        self.formatter = MessageFormatter()
        self.service: Optional[BoletaService] = None
        if supabase_gateway is not None:
            self.service = BoletaService.build(supabase_gateway, extractor, default_category)
        self.dp.include_router(self.router)
        self._register_handlers()

    @classmethod
    def from_env(cls) -> "BoletaBot":
        token = os.getenv("BOLETABOT_BOT_TOKEN")
        supabase_url = os.getenv("SUPABASE_URL")
        supabase_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
        if not token:
            raise RuntimeError("BOLETABOT_BOT_TOKEN is required to run BoletaBot.")
        gateway = None
        if supabase_url and supabase_key:
            gateway = SupabaseGateway(url=supabase_url, service_key=supabase_key)
        else:
            logging.warning(
                "Supabase credentials not found. Receipt processing is disabled until configured."
            )
        extractor = None
        openai_key = os.getenv("OPENAI_API_KEY")
        if openai_key:
            try:
                extractor = ReceiptExtractorAI(api_key=openai_key)
            except ExtractionError as exc:
                logging.warning(f"OpenAI extractor disabled: {exc}")
        else:
            logging.warning("OPENAI_API_KEY not set: vision fallback and corrections are disabled.")
        return cls(
            token=token,
            supabase_gateway=gateway,
            extractor=extractor,
            allow_list=AllowList.from_env(),
        )

    async def run(self) -> None:
        logging.info("Starting BoletaBot")
        commands = [
            BotCommand(command="ayuda", description="Cómo usar el bot"),
            BotCommand(command="tarjetas", description="Tus tarjetas de crédito"),
            BotCommand(command="nueva_tarjeta", description="Registrar una tarjeta"),
            BotCommand(command="resumen", description="Resumen mensual por categoría"),
            BotCommand(command="gastos", description="Últimos gastos guardados"),
        ]
        await self.bot.set_my_commands(commands)
        logging.info("Bot commands menu configured")
        if self.allow_list.user_ids:
            logging.info(f"Allow-list active with {len(self.allow_list.user_ids)} user(s)")
        await self.dp.start_polling(
            self.bot, allowed_updates=self.dp.resolve_used_update_types()
        )

    def _is_allowed(self, message: Message) -> bool:
        user_id = message.from_user.id if message.from_user else None
        if self.allow_list.allows(user_id):
            return True
        logging.info(f"Ignoring message from unauthorized user={user_id}")
        return False

    async def _reply(self, message: Message, text: str) -> None:
        await message.answer(truncate_message_for_telegram(text), parse_mode="HTML")

    def _register_handlers(self) -> None:
        @self.router.message(CommandStart())
        async def handle_start(message: Message) -> None:
            if not self._is_allowed(message):
                return
            await self._reply(message, HELP_TEXT)

        @self.router.message(Command("ayuda"))
        async def handle_help(message: Message) -> None:
            if not self._is_allowed(message):
                return
            await self._reply(message, HELP_TEXT)

        @self.router.message(Command("tarjetas"))
        async def handle_cards(message: Message) -> None:
            await self._handle_cards(message)

        @self.router.message(Command("nueva_tarjeta"))
        async def handle_new_card(message: Message, command: CommandObject) -> None:
            await self._handle_new_card(message, command.args)

        @self.router.message(Command("resumen"))
        async def handle_summary(message: Message, command: CommandObject) -> None:
            await self._handle_summary(message, command.args)

        @self.router.message(Command("gastos"))
        async def handle_recent(message: Message) -> None:
            await self._handle_recent(message)

        @self.router.message(F.photo | F.document)
        async def handle_upload(message: Message) -> None:
            await self._handle_upload(message)

        @self.router.message(F.text & ~F.text.startswith("/"))
        async def handle_text(message: Message) -> None:
            await self._handle_text(message)

    async def _ensure_ready(self, message: Message) -> bool:
        if not self._is_allowed(message):
            return False
        if self.service is None or self.supabase is None:
            await message.answer("⚠️ Supabase no está configurado: no puedo guardar gastos todavía.")
            return False
        return True

    async def _handle_upload(self, message: Message) -> None:
        if not await self._ensure_ready(message):
            return
        mime_type = detect_mime_type(message)
        if not mime_type.startswith("image/"):
            await message.answer("📎 Envía una foto o imagen de la boleta (JPG, PNG o HEIC).")
            return
        file = await self._resolve_file(message)
        if file is None:
            await message.answer("No pude leer el archivo.")
            return
        await message.answer("⏳ Procesando la boleta...")
        file_bytes = await self._download_file(file.file_path)
        reply = await self.service.process_image(message.from_user.id, file_bytes, mime_type)
        await self._reply(message, reply)

    async def _handle_text(self, message: Message) -> None:
        if not await self._ensure_ready(message):
            return
        reply = await self.service.process_text(message.from_user.id, message.text or "")
        await self._reply(message, reply)

    async def _handle_cards(self, message: Message) -> None:
        if not await self._ensure_ready(message):
            return
        cards = await self.supabase.list_credit_cards(message.from_user.id)
        await self._reply(message, self.formatter.format_cards(cards))

    async def _handle_new_card(self, message: Message, args: Optional[str]) -> None:
        if not await self._ensure_ready(message):
            return
        try:
            name, last4, closing_day, payment_day = parse_card_command(args)
        except ValueError as exc:
            await self._reply(
                message,
                f"⚠️ {exc}.\nUso: /nueva_tarjeta &lt;nombre&gt;[;últimos4;día cierre;día pago]\n"
                "Ej: /nueva_tarjeta Visa Falabella;1234;25;5",
            )
            return
        card = await self.supabase.create_credit_card(
            message.from_user.id, name, last4, closing_day, payment_day
        )
        await self._reply(message, f"✅ Tarjeta registrada: <b>{escape(card.name)}</b>")

    async def _handle_summary(self, message: Message, args: Optional[str]) -> None:
        if not await self._ensure_ready(message):
            return
        try:
            year, month = parse_month_argument(args)
        except ValueError:
            await message.answer("⚠️ Formato de mes inválido. Usa /resumen MM-YYYY (ej: /resumen 03-2025)")
            return
        start_date, end_date = month_bounds(year, month)
        expenses = await self.supabase.fetch_confirmed_expenses(
            message.from_user.id, start_date=start_date, end_date=end_date
        )
        await self._reply(message, self.formatter.format_monthly_summary(expenses, year, month))

    async def _handle_recent(self, message: Message) -> None:
        if not await self._ensure_ready(message):
            return
        expenses = await self.supabase.fetch_confirmed_expenses(
            message.from_user.id, limit=RECENT_EXPENSES_LIMIT
        )
        await self._reply(message, self.formatter.format_recent_expenses(expenses))

    async def _resolve_file(self, message: Message) -> Optional[Any]:
        if message.photo:
            return await self.bot.get_file(message.photo[-1].file_id)
        if message.document:
            return await self.bot.get_file(message.document.file_id)
        return None

    async def _download_file(self, file_path: str) -> bytes:
        stream = await self.bot.download_file(file_path)
        buffer = io.BytesIO()
        buffer.write(stream.read())
        return buffer.getvalue()


async def main() -> None:
    bot = BoletaBot.from_env()
    await bot.run()


def run_cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run_cli()

"""
Tests for Telegram bot wiring
"""
from datetime import date
from unittest.mock import AsyncMock, Mock, patch

import pytest

from boleta_bot import (
    AllowList,
    BoletaBot,
    detect_mime_type,
    month_bounds,
    parse_card_command,
    parse_month_argument,
)


class TestAllowList:

    def test_empty_allows_everyone(self):
        assert AllowList.parse("").allows(1)
        assert AllowList.parse(None).allows(None)

    def test_json_and_csv(self):
        assert AllowList.parse("[1, 2]").user_ids == frozenset({1, 2})
        assert AllowList.parse(" 3, 4 ,").user_ids == frozenset({3, 4})

    def test_rejects_unknown_users(self):
        allow_list = AllowList.parse("1,2")
        assert allow_list.allows(2)
        assert not allow_list.allows(5)
        assert not allow_list.allows(None)

    def test_invalid_value(self):
        with pytest.raises(ValueError):
            AllowList.parse("abc")


class TestCommandParsing:

    def test_month_argument(self):
        assert parse_month_argument("03-2025") == (2025, 3)
        assert parse_month_argument(None, today=date(2024, 7, 1)) == (2024, 7)
        with pytest.raises(ValueError):
            parse_month_argument("13-2024")
        with pytest.raises(ValueError):
            parse_month_argument("marzo")

    def test_month_bounds(self):
        assert month_bounds(2024, 2) == (date(2024, 2, 1), date(2024, 2, 29))

    def test_card_command(self):
        assert parse_card_command("Visa Falabella;1234;25;5") == ("Visa Falabella", "1234", 25, 5)
        assert parse_card_command("Amex") == ("Amex", None, None, None)
        with pytest.raises(ValueError):
            parse_card_command("")
        with pytest.raises(ValueError):
            parse_card_command("Visa;12")
        with pytest.raises(ValueError):
            parse_card_command("Visa;1234;40")


class TestDetectMimeType:

    def test_photo(self, mock_message):
        mock_message.photo = [Mock()]
        assert detect_mime_type(mock_message) == "image/jpeg"

    def test_document(self, mock_message):
        mock_message.document = Mock(mime_type=None, file_name="boleta.png")
        assert detect_mime_type(mock_message) == "image/png"
        mock_message.document = Mock(mime_type="image/heic", file_name="x")
        assert detect_mime_type(mock_message) == "image/heic"


class TestBoletaBot:
    """Tests for message routing"""

    @pytest.fixture
    def bot(self, gateway, extractor):
        with patch('boleta_bot.Bot') as mock_bot_class:
            mock_bot_class.return_value = Mock()
            bot = BoletaBot(
                token="1234567890:ABCdefGHIjklMNOpqrsTUVwxyz",
                supabase_gateway=gateway,
                extractor=extractor,
            )
        bot.service.process_text = AsyncMock(return_value="respuesta")
        bot.service.process_image = AsyncMock(return_value="borrador")
        return bot

    @pytest.mark.asyncio
    async def test_text_goes_to_process_text(self, bot, mock_message):
        mock_message.text = "si"
        await bot._handle_text(mock_message)
        bot.service.process_text.assert_awaited_once_with(mock_message.from_user.id, "si")
        mock_message.answer.assert_awaited_once_with("respuesta", parse_mode="HTML")

    @pytest.mark.asyncio
    async def test_unauthorized_user_is_ignored(self, bot, mock_message):
        bot.allow_list = AllowList.parse("42")
        mock_message.text = "si"
        await bot._handle_text(mock_message)
        bot.service.process_text.assert_not_called()
        mock_message.answer.assert_not_called()

    @pytest.mark.asyncio
    async def test_photo_goes_to_process_image(self, bot, mock_message):
        mock_message.photo = [Mock(file_id="small"), Mock(file_id="big")]
        bot.bot.get_file = AsyncMock(return_value=Mock(file_path="photos/1.jpg"))
        bot._download_file = AsyncMock(return_value=b"jpeg-bytes")

        await bot._handle_upload(mock_message)

        bot.bot.get_file.assert_awaited_once_with("big")
        bot.service.process_image.assert_awaited_once_with(
            mock_message.from_user.id, b"jpeg-bytes", "image/jpeg"
        )
        mock_message.answer.assert_any_await("borrador", parse_mode="HTML")

    @pytest.mark.asyncio
    async def test_non_image_document_is_refused(self, bot, mock_message):
        mock_message.document = Mock(mime_type="application/pdf", file_name="x.pdf")
        await bot._handle_upload(mock_message)
        bot.service.process_image.assert_not_called()
        mock_message.answer.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_new_card_command(self, bot, gateway, mock_message):
        await bot._handle_new_card(mock_message, "Visa Falabella;1234")
        assert [c.name for c in gateway.cards] == ["Visa Falabella"]
        assert gateway.cards[0].last4 == "1234"
        text = mock_message.answer.call_args[0][0]
        assert "Tarjeta registrada" in text

    @pytest.mark.asyncio
    async def test_summary_command(self, bot, gateway, mock_message):
        from models import DraftStatus

        draft = gateway.add_draft(amount=5000, date=date(2024, 3, 2), category="Comida")
        draft.status = DraftStatus.CONFIRMED
        gateway.add_draft(amount=7000, date=date(2024, 4, 2))

        await bot._handle_summary(mock_message, "03-2024")

        text = mock_message.answer.call_args[0][0]
        assert "marzo 2024" in text
        assert "Total: $5000" in text

    @pytest.mark.asyncio
    async def test_bot_without_supabase(self, extractor, mock_message):
        with patch('boleta_bot.Bot'):
            bot = BoletaBot(token="1234567890:ABCdefGHIjklMNOpqrsTUVwxyz", extractor=extractor)
        mock_message.text = "si"
        await bot._handle_text(mock_message)
        assert "Supabase" in mock_message.answer.call_args[0][0]

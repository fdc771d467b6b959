"""
Telegram handlers and the relay that sends retrieved media back to chat.
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

from aiogram import Bot, Dispatcher
from aiogram.filters import Command
from aiogram.types import FSInputFile, InlineKeyboardButton, InlineKeyboardMarkup, Message

from errors import error_manager
from managers import DispatchCoordinator
from models import MediaFile, MediaKind, RetrievalJob
from utils import extract_urls, sanitize_user_input

logger = logging.getLogger(__name__)

LOADING_TEXT = "⏳ Yuklanmoqda..."


class TelegramRelay:
    """Relays the jobs of one incoming message back to its chat."""

    def __init__(self, bot: Bot, message: Message, caption: str, bot_username: Optional[str] = None):
        self.bot = bot
        self.message = message
        self.chat_id = message.chat.id
        self.reply_to = message.message_id
        self.caption = caption
        self.bot_username = bot_username
        self._loading: Dict[str, Any] = {}

    async def job_started(self, job: RetrievalJob) -> None:
        self._loading[job.job_id] = await self.bot.send_message(self.chat_id, LOADING_TEXT)

    async def job_finished(self, job: RetrievalJob) -> None:
        loading = self._loading.pop(job.job_id, None)
        if loading is not None:
            await self.bot.delete_message(self.chat_id, loading.message_id)

    async def job_failed(self, job: RetrievalJob, error: BaseException) -> None:
        await self.bot.send_message(
            self.chat_id,
            error_manager.to_user_message(error, url=job.link.url),
            reply_to_message_id=self.reply_to,
            parse_mode="HTML",
        )

    async def deliver(self, job: RetrievalJob, media: MediaFile) -> None:
        file = FSInputFile(media.path)
        if media.kind == MediaKind.VIDEO:
            sent = await self.bot.send_video(
                self.chat_id,
                video=file,
                caption=self.caption,
                reply_to_message_id=self.reply_to,
                supports_streaming=True,
            )
        else:
            sent = await self.bot.send_photo(
                self.chat_id,
                photo=file,
                caption=self.caption,
                reply_to_message_id=self.reply_to,
            )

        keyboard = self.share_keyboard(sent.message_id)
        if keyboard is None:
            return
        try:
            await self.bot.edit_message_reply_markup(
                chat_id=self.chat_id,
                message_id=sent.message_id,
                reply_markup=keyboard,
            )
        except Exception:
            logger.debug("Attaching share buttons failed", exc_info=True)

    def share_keyboard(self, message_id: int) -> Optional[InlineKeyboardMarkup]:
        """Share and add-to-group buttons for a sent media message."""
        if not self.bot_username:
            return None
        link = f"https://t.me/{self.bot_username}/{message_id}"
        share_url = f"https://t.me/share/url?url={quote(link, safe='')}"
        return InlineKeyboardMarkup(
            inline_keyboard=[
                [InlineKeyboardButton(text="📤 Ulashish", url=share_url)],
                [
                    InlineKeyboardButton(
                        text="👥 Guruhga qo'shish",
                        url=f"https://t.me/{self.bot_username}?startgroup=true",
                    )
                ],
            ]
        )


class BotHandlers:
    """Registers bot commands and the link-driven download flow."""

    def __init__(self, dp: Dispatcher, coordinator: DispatchCoordinator, bot_username: Optional[str] = None):
        self.dp = dp
        self.coordinator = coordinator
        self.bot_username = bot_username
        self._register_handlers()

    def _register_handlers(self) -> None:
        self.dp.message.register(self.handle_start, Command(commands=["start"]))
        self.dp.message.register(self.handle_help, Command(commands=["help"]))
        self.dp.message.register(self.handle_message)

    async def handle_start(self, message: Message) -> None:
        name = message.from_user.first_name if message.from_user else None
        text = (
            f"👋 Salom, {name or 'do‘stim'}!\n\n"
            "Menga havola yuboring, men video yoki rasmni yuklab beraman.\n\n"
            "Qo'llab-quvvatlanadi:\n"
            "• YouTube\n"
            "• Instagram\n"
            "• TikTok\n"
            "• Pinterest\n"
            "• Facebook\n"
            "• X (Twitter)"
        )
        await message.answer(text)

    async def handle_help(self, message: Message) -> None:
        text = (
            "📖 <b>Qanday foydalanish</b>\n\n"
            "1. Post yoki video havolasini yuboring.\n"
            "2. Bitta xabarda bir nechta havola bo'lishi mumkin.\n"
            "3. Fayl tayyor bo'lgach, u javob sifatida yuboriladi."
        )
        await message.answer(text, parse_mode="HTML")

    async def handle_message(self, message: Message) -> None:
        text = sanitize_user_input(message.text or message.caption or "")
        if not text or text.startswith("/"):
            return

        relay = TelegramRelay(
            bot=message.bot,
            message=message,
            caption=self.coordinator.config.caption,
            bot_username=self.bot_username,
        )
        jobs = await self.coordinator.dispatch(text, relay)
        if jobs:
            return

        # Group chats stay quiet; private chats get a hint when a link is unsupported.
        if message.chat.type == "private" and extract_urls(text):
            await message.answer(
                "❌ Havola qo'llab-quvvatlanmaydi. YouTube, Instagram, TikTok, "
                "Pinterest, Facebook yoki X havolasini yuboring."
            )

"""
Error types, logging setup and user-facing error messages.
"""

import html
import logging
from typing import Optional


def setup_logging(
    level: str = "INFO",
    format_string: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
) -> logging.Logger:
    """Configure root logging once and return module logger."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(numeric_level)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(format_string))
    root_logger.addHandler(console_handler)
    return logging.getLogger(__name__)


class RelayError(Exception):
    """Base class for retrieval and delivery failures."""


class UnsupportedLinkError(RelayError):
    """Link does not belong to any supported platform."""


class StrategyError(RelayError):
    """One retrieval strategy failed; the next one may still succeed."""

    def __init__(self, strategy: str, message: str):
        super().__init__(f"{strategy}: {message}")
        self.strategy = strategy
        self.message = message


class JobFailedError(RelayError):
    """Every strategy for a link was exhausted."""

    def __init__(self, url: str, last_error: Optional[BaseException] = None):
        reason = str(last_error) if last_error else "no strategy produced media"
        super().__init__(f"all strategies failed for {url}: {reason}")
        self.url = url
        self.last_error = last_error


class JobTimeoutError(RelayError):
    """Job did not finish within its time limit."""


class DeliveryError(RelayError):
    """A retrieved file could not be sent to the chat."""


class ErrorManager:
    """Convert internal exceptions to compact user-facing messages."""

    def to_user_message(self, error: BaseException, url: Optional[str] = None) -> str:
        if isinstance(error, JobTimeoutError):
            return "⏱️ <b>Kutish vaqti tugadi.</b>\nBirozdan so'ng qayta urinib ko'ring."

        if isinstance(error, UnsupportedLinkError):
            return (
                "❌ <b>Havola qo'llab-quvvatlanmaydi.</b>\n"
                "YouTube, Instagram, TikTok, Pinterest, Facebook yoki X havolasini yuboring."
            )

        if isinstance(error, DeliveryError):
            return "⚠️ <b>Faylni yuborib bo'lmadi.</b>"

        msg = str(error).lower()

        if "private" in msg or "login" in msg or "not available" in msg:
            return (
                "🔒 <b>Media mavjud emas.</b>\n"
                "Post yopiq, o'chirilgan yoki hududga cheklangan bo'lishi mumkin."
            )

        if "too large" in msg or "max_filesize" in msg or "request entity too large" in msg:
            return "❌ <b>Fayl Telegram uchun juda katta.</b>"

        if "no space" in msg or "disk" in msg:
            return "💾 <b>Diskda joy yetarli emas.</b>\nKeyinroq qayta urinib ko'ring."

        if isinstance(error, JobFailedError):
            return "⚠️ Yuklab bo'lmadi"

        safe_details = html.escape(str(error))[:350]
        return f"⚠️ <b>Yuklab bo'lmadi.</b>\n<code>{safe_details}</code>"


error_manager = ErrorManager()

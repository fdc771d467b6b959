"""
Unit tests for user-facing error messages.
"""

from errors import (
    DeliveryError,
    ErrorManager,
    JobFailedError,
    JobTimeoutError,
    StrategyError,
    UnsupportedLinkError,
)


def test_job_failed_names_last_error():
    error = JobFailedError("https://x.com/u/status/1", StrategyError("gallery-dl", "No results"))
    assert "gallery-dl: No results" in str(error)
    assert error.last_error.strategy == "gallery-dl"


def test_job_failed_without_cause():
    assert "no strategy produced media" in str(JobFailedError("https://youtu.be/q"))


def test_user_messages():
    manager = ErrorManager()
    assert "Kutish vaqti" in manager.to_user_message(JobTimeoutError("slow"))
    assert "qo'llab-quvvatlanmaydi" in manager.to_user_message(UnsupportedLinkError("x"))
    assert "yuborib" in manager.to_user_message(DeliveryError("x"))
    private = JobFailedError("u", StrategyError("yt-dlp", "ERROR: Private video"))
    assert "mavjud emas" in manager.to_user_message(private)


def test_unknown_error_is_escaped():
    message = ErrorManager().to_user_message(RuntimeError("<b>oops</b>"))
    assert "&lt;b&gt;oops&lt;/b&gt;" in message

"""
Configuration for the link-to-media relay bot.
"""

import os
import re
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from models import VIDEO_SUFFIXES, MediaKind, Platform, PlatformPolicy

load_dotenv()


def require_bot_token() -> str:
    """Return bot token or raise if it is not configured."""
    token = os.getenv("BOT_TOKEN", "").strip()
    if not token:
        raise RuntimeError("BOT_TOKEN muhit o'zgaruvchisini o'rnating")
    return token


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return tuple(item.strip().lower() for item in raw.split(",") if item.strip())


LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

DOWNLOADS_DIR: str = os.getenv("DOWNLOADS_DIR", "downloads")
COOKIES_DIR: str = os.getenv("COOKIES_DIR", ".")

MAX_CONCURRENT_DOWNLOADS: int = int(os.getenv("MAX_CONCURRENT_DOWNLOADS", "3"))
JOB_TIMEOUT_SECONDS: int = int(os.getenv("JOB_TIMEOUT_SECONDS", "600"))
COMMAND_TIMEOUT_SECONDS: int = int(os.getenv("COMMAND_TIMEOUT_SECONDS", "300"))
HTTP_TIMEOUT_SECONDS: int = int(os.getenv("HTTP_TIMEOUT_SECONDS", "120"))

YTDLP_BINARY: str = os.getenv("YTDLP_BINARY", "yt-dlp")
GALLERY_DL_BINARY: str = os.getenv("GALLERY_DL_BINARY", "gallery-dl")
FFMPEG_LOCATION: str = os.getenv("FFMPEG_LOCATION", "").strip()

# yt-dlp and gallery-dl are run with certificate checks off unless disabled here.
NO_CHECK_CERTIFICATE: bool = _env_bool("NO_CHECK_CERTIFICATE", True)

USER_AGENT: str = os.getenv(
    "USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/121.0.0.0 Safari/537.36",
)

REMOTE_API_KEY: str = os.getenv("REMOTE_API_KEY", "").strip()
REMOTE_API_HOST: str = os.getenv("REMOTE_API_HOST", "").strip()
YOUTUBE_API_URL: str = os.getenv("YOUTUBE_API_URL", "").strip()
INSTAGRAM_API_URL: str = os.getenv("INSTAGRAM_API_URL", "").strip()

RESOLVE_SHORT_LINKS: bool = _env_bool("RESOLVE_SHORT_LINKS", True)
SHORT_LINK_DOMAINS: Tuple[str, ...] = _env_list(
    "SHORT_LINK_DOMAINS",
    ("bit.ly", "t.co", "tinyurl.com", "goo.gl", "ow.ly", "is.gd", "cutt.ly", "rebrand.ly"),
)

BOT_CAPTION: str = os.getenv("BOT_CAPTION", "Bot orqali yuklab olindi")

# Slack applied to a job start time before scanning for its output files.
FRESHNESS_SLACK_SECONDS: float = 1.0

URL_RE: re.Pattern[str] = re.compile(r"https?://\S+", re.IGNORECASE)

VIDEO_EXTENSIONS: tuple[str, ...] = VIDEO_SUFFIXES
IMAGE_EXTENSIONS: tuple[str, ...] = (".jpg", ".jpeg", ".png", ".webp", ".gif", ".heic")

STRATEGY_YTDLP = "yt-dlp"
STRATEGY_GALLERY_DL = "gallery-dl"
STRATEGY_REMOTE_API = "remote-api"

BEST_FORMAT = "bestvideo+bestaudio/best"
CAPPED_720_FORMAT = "bestvideo[height<=720]+bestaudio/best[height<=720]/best"

BOTH_KINDS = frozenset({MediaKind.VIDEO, MediaKind.IMAGE})

# Order matters: the first policy whose marker occurs in the URL wins.
PLATFORM_POLICIES: Tuple[PlatformPolicy, ...] = (
    PlatformPolicy(
        platform=Platform.YOUTUBE,
        markers=("youtube", "youtu.be"),
        cookie_file="youtube.txt",
        format_selector=CAPPED_720_FORMAT,
        expected_kinds=frozenset({MediaKind.VIDEO}),
        strategies=(STRATEGY_YTDLP, STRATEGY_REMOTE_API),
    ),
    PlatformPolicy(
        platform=Platform.INSTAGRAM,
        markers=("instagram", "instagr"),
        cookie_file="instagram.txt",
        format_selector=BEST_FORMAT,
        expected_kinds=BOTH_KINDS,
        strategies=(STRATEGY_YTDLP, STRATEGY_GALLERY_DL, STRATEGY_REMOTE_API),
    ),
    PlatformPolicy(
        platform=Platform.TIKTOK,
        markers=("tiktok.com",),
        cookie_file="tiktok.txt",
        format_selector=BEST_FORMAT,
        expected_kinds=BOTH_KINDS,
        strategies=(STRATEGY_YTDLP, STRATEGY_GALLERY_DL),
    ),
    PlatformPolicy(
        platform=Platform.PINTEREST,
        markers=("pinterest", "pin.it"),
        cookie_file="pinterest.txt",
        format_selector=BEST_FORMAT,
        expected_kinds=BOTH_KINDS,
        strategies=(STRATEGY_YTDLP, STRATEGY_GALLERY_DL),
    ),
    PlatformPolicy(
        platform=Platform.FACEBOOK,
        markers=("facebook.com", "fb.watch"),
        cookie_file="facebook.txt",
        format_selector=BEST_FORMAT,
        expected_kinds=BOTH_KINDS,
        strategies=(STRATEGY_YTDLP, STRATEGY_GALLERY_DL),
    ),
    PlatformPolicy(
        platform=Platform.TWITTER,
        markers=("twitter.com", "x.com"),
        cookie_file="twitter.txt",
        format_selector=BEST_FORMAT,
        expected_kinds=BOTH_KINDS,
        strategies=(STRATEGY_YTDLP, STRATEGY_GALLERY_DL),
    ),
)


@dataclass
class RelayConfig:
    """Settings handed to the coordinator and engine by the composition root."""

    downloads_dir: str = DOWNLOADS_DIR
    cookies_dir: str = COOKIES_DIR
    max_concurrent: int = MAX_CONCURRENT_DOWNLOADS
    job_timeout: Optional[float] = JOB_TIMEOUT_SECONDS
    command_timeout: Optional[float] = COMMAND_TIMEOUT_SECONDS
    http_timeout: float = HTTP_TIMEOUT_SECONDS
    ytdlp_binary: str = YTDLP_BINARY
    gallery_dl_binary: str = GALLERY_DL_BINARY
    ffmpeg_location: str = FFMPEG_LOCATION
    no_check_certificate: bool = NO_CHECK_CERTIFICATE
    user_agent: str = USER_AGENT
    remote_api_key: str = REMOTE_API_KEY
    remote_api_host: str = REMOTE_API_HOST
    remote_api_urls: Dict[Platform, str] = field(default_factory=dict)
    resolve_short_links: bool = RESOLVE_SHORT_LINKS
    short_link_domains: Tuple[str, ...] = SHORT_LINK_DOMAINS
    caption: str = BOT_CAPTION
    policies: Tuple[PlatformPolicy, ...] = PLATFORM_POLICIES

    def policy_for(self, platform: Platform) -> Optional[PlatformPolicy]:
        for policy in self.policies:
            if policy.platform == platform:
                return policy
        return None

    def cookie_path(self, platform: Platform) -> Optional[str]:
        """Cookie file for the platform if one exists on disk."""
        policy = self.policy_for(platform)
        if policy is None or not policy.cookie_file:
            return None
        path = os.path.join(self.cookies_dir, policy.cookie_file)
        return path if os.path.isfile(path) else None


def load_config() -> RelayConfig:
    """Build RelayConfig from environment-derived module constants."""
    api_urls: Dict[Platform, str] = {}
    if YOUTUBE_API_URL:
        api_urls[Platform.YOUTUBE] = YOUTUBE_API_URL
    if INSTAGRAM_API_URL:
        api_urls[Platform.INSTAGRAM] = INSTAGRAM_API_URL
    return RelayConfig(
        max_concurrent=max(1, MAX_CONCURRENT_DOWNLOADS),
        remote_api_urls=api_urls,
    )

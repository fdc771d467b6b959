"""
Utilities for link extraction, external commands and file operations.
"""

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import aiofiles
import aiohttp

from config import (
    IMAGE_EXTENSIONS,
    PLATFORM_POLICIES,
    SHORT_LINK_DOMAINS,
    URL_RE,
    VIDEO_EXTENSIONS,
)
from models import CommandResult, Link, MediaFile, MediaKind, Platform, PlatformPolicy

logger = logging.getLogger(__name__)

MEDIA_URL_KEYS: Tuple[str, ...] = ("url", "download_url", "downloadUrl", "link", "video", "image")
MEDIA_LIST_KEYS: Tuple[str, ...] = ("medias", "media", "items", "links", "result", "data")
CONTENT_TYPE_EXTENSIONS: Dict[str, str] = {
    "video/mp4": ".mp4",
    "video/quicktime": ".mov",
    "video/x-matroska": ".mkv",
    "image/jpeg": ".jpg",
    "image/pjpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "image/heic": ".heic",
}


def extract_urls(text: str) -> List[str]:
    """Return every URL in text in order of appearance, duplicates kept."""
    if not text:
        return []
    return URL_RE.findall(text)


def detect_platform(url: str, policies: Sequence[PlatformPolicy] = PLATFORM_POLICIES) -> Platform:
    """Detect source platform by case-insensitive substring match."""
    if not url:
        return Platform.UNKNOWN

    low = url.lower()
    for policy in policies:
        if any(marker in low for marker in policy.markers):
            return policy.platform
    return Platform.UNKNOWN


def is_supported_url(url: str, policies: Sequence[PlatformPolicy] = PLATFORM_POLICIES) -> bool:
    return detect_platform(url, policies) != Platform.UNKNOWN


def extract_supported_links(
    text: str,
    policies: Sequence[PlatformPolicy] = PLATFORM_POLICIES,
) -> List[Link]:
    """URLs from text that belong to a supported platform."""
    links = []
    for url in extract_urls(text):
        platform = detect_platform(url, policies)
        if platform != Platform.UNKNOWN:
            links.append(Link(url=url, platform=platform))
    return links


def is_short_link(url: str, domains: Sequence[str] = SHORT_LINK_DOMAINS) -> bool:
    """True when URL host is a known link shortener."""
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        return False
    return any(host == domain or host.endswith("." + domain) for domain in domains)


def strip_tracking_params(url: str) -> str:
    """Remove common tracking query params from URL."""
    try:
        parsed = urlparse(url)
        query_params = parse_qs(parsed.query)
        clean_params = {
            key: value
            for key, value in query_params.items()
            if key.lower()
            not in {"utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content", "fbclid", "gclid"}
        }
        clean_query = urlencode(clean_params, doseq=True)
        return urlunparse(
            (parsed.scheme, parsed.netloc, parsed.path, parsed.params, clean_query, parsed.fragment)
        )
    except ValueError:
        return url


async def resolve_short_link(
    url: str,
    session: aiohttp.ClientSession,
    user_agent: Optional[str] = None,
) -> Optional[str]:
    """Follow redirects of a shortened URL and return the destination."""
    headers = {"User-Agent": user_agent} if user_agent else None
    try:
        try:
            async with session.head(
                url,
                allow_redirects=True,
                timeout=aiohttp.ClientTimeout(total=10),
                headers=headers,
            ) as resp:
                return strip_tracking_params(str(resp.url))
        except (aiohttp.ClientError, asyncio.TimeoutError):
            async with session.get(
                url,
                allow_redirects=True,
                timeout=aiohttp.ClientTimeout(total=12),
                headers=headers,
            ) as resp:
                return strip_tracking_params(str(resp.url))
    except (aiohttp.ClientError, asyncio.TimeoutError) as error:
        logger.warning("Short link resolution failed for %s: %s", url, error)
        return None


async def run_command(
    name: str,
    args: Sequence[str],
    timeout: Optional[float] = None,
) -> CommandResult:
    """
    Run an external command and capture stdout and stderr as one text.

    A non-zero exit, a missing executable and a timeout are reported through
    the returned CommandResult. On timeout or cancellation the child is killed.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            name,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as error:
        logger.error("Cannot start %s: %s", name, error)
        return CommandResult(output=str(error), returncode=None)

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill_process(process)
        logger.warning("%s timed out after %ss", name, timeout)
        return CommandResult(output=f"{name} timed out after {timeout}s", returncode=None, timed_out=True)
    except asyncio.CancelledError:
        await _kill_process(process)
        raise

    return CommandResult(
        output=stdout.decode("utf-8", errors="replace") if stdout else "",
        returncode=process.returncode,
    )


async def _kill_process(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=5)
    except asyncio.TimeoutError:
        logger.warning("Process %s did not exit after kill", process.pid)


def files_created_after(root: str, cutoff: float, marker: Optional[str] = None) -> List[str]:
    """
    Regular files under root modified strictly after cutoff, sorted by path.

    When marker is given only paths (relative to root) containing it are
    returned, so concurrent jobs sharing root do not pick up each other's files.
    """
    base = Path(root)
    if not base.is_dir():
        return []

    found = []
    for entry in base.rglob("*"):
        try:
            if not entry.is_file() or entry.stat().st_mtime <= cutoff:
                continue
        except OSError:
            continue
        if marker and marker not in str(entry.relative_to(base)):
            continue
        found.append(str(entry))
    return sorted(found)


def is_media_file(path: str) -> bool:
    return Path(path).suffix.lower() in VIDEO_EXTENSIONS + IMAGE_EXTENSIONS


def media_kind_for(path: str) -> MediaKind:
    return MediaFile.from_path(path).kind


def remove_files(paths: Iterable[str]) -> None:
    """Delete files, ignoring ones that are already gone."""
    for path in paths:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as error:
            logger.warning("Could not remove %s: %s", path, error)


def remove_empty_dirs(root: str, path: str) -> None:
    """Remove empty directories from path upwards, stopping at root."""
    base = Path(root).resolve()
    current = Path(path).resolve()
    while current != base and base in current.parents:
        try:
            current.rmdir()
        except OSError:
            break
        current = current.parent


async def download_file_async(
    url: str,
    filepath: str,
    session: aiohttp.ClientSession,
    timeout: float = 300,
    headers: Optional[dict] = None,
) -> Optional[str]:
    """Download direct file URL to local path and return its Content-Type."""
    async with session.get(
        url,
        headers=headers,
        timeout=aiohttp.ClientTimeout(total=timeout),
    ) as response:
        response.raise_for_status()
        async with aiofiles.open(filepath, "wb") as file:
            async for chunk in response.content.iter_chunked(8192):
                await file.write(chunk)
        return response.headers.get("Content-Type")


def extract_media_urls(payload: Any) -> List[str]:
    """
    Pull direct media URLs out of a remote API JSON payload.

    Accepts either a single URL under a known key or lists of items (strings
    or objects) under a known list key; nested containers are searched too.
    """
    urls: List[str] = []

    def _walk(node: Any) -> None:
        if isinstance(node, str):
            if node.startswith(("http://", "https://")) and node not in urls:
                urls.append(node)
            return
        if isinstance(node, list):
            for item in node:
                _walk(item)
            return
        if not isinstance(node, dict):
            return
        for key in MEDIA_URL_KEYS:
            value = node.get(key)
            if isinstance(value, str):
                _walk(value)
        for key in MEDIA_LIST_KEYS:
            value = node.get(key)
            if isinstance(value, (list, dict)):
                _walk(value)

    _walk(payload)
    return urls


def guess_extension(url: str, content_type: Optional[str] = None) -> str:
    """File extension for a downloaded media URL."""
    mime = (content_type or "").lower().split(";", 1)[0].strip()
    if mime in CONTENT_TYPE_EXTENSIONS:
        return CONTENT_TYPE_EXTENSIONS[mime]
    if mime.startswith("video/"):
        return ".mp4"
    if mime.startswith("image/"):
        return "." + mime.split("/", 1)[1]

    suffix = Path(urlparse(url).path).suffix.lower()
    if suffix in VIDEO_EXTENSIONS + IMAGE_EXTENSIONS:
        return suffix
    return ".mp4" if ".mp4" in url.lower() else ".jpg"


def sanitize_user_input(text: str, max_length: int = 4096) -> str:
    """Remove control chars and trim length."""
    if not text:
        return ""
    sanitized = re.sub(r"[\x00-\x08\x0b-\x1f\x7f-\x9f]", "", text)
    return sanitized.strip()[:max_length]

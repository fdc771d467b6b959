"""
Data models for the media relay bot.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import FrozenSet, List, Optional, Tuple

VIDEO_SUFFIXES: Tuple[str, ...] = (".mp4", ".mov", ".mkv")


class Platform(Enum):
    """Supported media source platforms."""

    YOUTUBE = "YouTube"
    INSTAGRAM = "Instagram"
    TIKTOK = "TikTok"
    PINTEREST = "Pinterest"
    FACEBOOK = "Facebook"
    TWITTER = "Twitter/X"
    UNKNOWN = "Unknown"


class MediaKind(Enum):
    """What a relayed file is sent as."""

    VIDEO = "video"
    IMAGE = "image"


class JobStatus(Enum):
    """Lifecycle states for a single retrieval job."""

    QUEUED = "queued"
    WAITING = "waiting"
    DOWNLOADING = "downloading"
    SENDING = "sending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Link:
    """URL extracted from a message together with its platform."""

    url: str
    platform: Platform


@dataclass
class MediaFile:
    """A file produced by a job; .mp4/.mov/.mkv are videos, anything else an image."""

    path: str
    kind: MediaKind

    @classmethod
    def from_path(cls, path: str) -> "MediaFile":
        suffix = Path(path).suffix.lower()
        kind = MediaKind.VIDEO if suffix in VIDEO_SUFFIXES else MediaKind.IMAGE
        return cls(path=str(path), kind=kind)


@dataclass(frozen=True)
class PlatformPolicy:
    """Per-platform retrieval settings: markers, cookies, quality, strategy order."""

    platform: Platform
    markers: Tuple[str, ...]
    cookie_file: str
    format_selector: str
    expected_kinds: FrozenSet[MediaKind]
    strategies: Tuple[str, ...]


@dataclass
class RetrievalJob:
    """Runtime info for one link's download attempt."""

    job_id: str
    link: Link
    strategies: Tuple[str, ...] = ()
    status: JobStatus = JobStatus.QUEUED
    created_at: float = field(default_factory=time.time)
    start_ts: Optional[float] = None
    end_ts: Optional[float] = None
    files: List[MediaFile] = field(default_factory=list)
    media_kind: Optional[MediaKind] = None
    strategy_used: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def platform(self) -> Platform:
        return self.link.platform

    @property
    def succeeded(self) -> bool:
        return self.strategy_used is not None and bool(self.files)


@dataclass
class CommandResult:
    """Combined output and exit status of one external command."""

    output: str
    returncode: Optional[int]
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

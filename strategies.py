"""
Retrieval strategies: yt-dlp, gallery-dl and a remote metadata API.

Each strategy writes into the shared downloads directory and marks its
output with the job ID, either in the file name or in a per-job folder.
"""

import asyncio
import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import aiohttp

from config import (
    FRESHNESS_SLACK_SECONDS,
    STRATEGY_GALLERY_DL,
    STRATEGY_REMOTE_API,
    STRATEGY_YTDLP,
    RelayConfig,
)
from errors import StrategyError
from models import CommandResult, RetrievalJob
from utils import (
    download_file_async,
    extract_media_urls,
    files_created_after,
    guess_extension,
    is_media_file,
    run_command,
)

logger = logging.getLogger(__name__)

Runner = Callable[[str, Sequence[str], Optional[float]], Awaitable[CommandResult]]
SessionFactory = Callable[[], aiohttp.ClientSession]


def job_files(downloads_dir: str, job: RetrievalJob) -> List[str]:
    """Files written for this job since it started."""
    started = job.start_ts if job.start_ts is not None else job.created_at
    return files_created_after(downloads_dir, started - FRESHNESS_SLACK_SECONDS, marker=job.job_id)


def _tail(output: str, limit: int = 300) -> str:
    text = (output or "").strip()
    if not text:
        return "no output"
    last_lines = " | ".join(text.splitlines()[-3:])
    return last_lines[-limit:]


class RetrievalStrategy:
    """One way of fetching media for a link."""

    name = "base"

    def __init__(self, config: RelayConfig):
        self.config = config

    def is_available(self, job: RetrievalJob) -> bool:
        return True

    async def attempt(self, job: RetrievalJob) -> None:
        raise NotImplementedError


class YtDlpStrategy(RetrievalStrategy):
    """Primary extractor, run as a yt-dlp subprocess."""

    name = STRATEGY_YTDLP

    def __init__(self, config: RelayConfig, runner: Runner = run_command):
        super().__init__(config)
        self.runner = runner

    def output_template(self, job: RetrievalJob) -> str:
        return os.path.join(self.config.downloads_dir, f"{job.job_id}_%(title).80s_%(id)s.%(ext)s")

    def build_args(self, job: RetrievalJob) -> List[str]:
        policy = self.config.policy_for(job.platform)
        if policy is None:
            raise StrategyError(self.name, f"no policy for {job.platform.value}")

        args = [
            "--no-playlist",
            "--no-warnings",
            "--no-mtime",
            "-f", policy.format_selector,
            "--merge-output-format", "mp4",
            "--user-agent", self.config.user_agent,
            "-o", self.output_template(job),
        ]
        if self.config.no_check_certificate:
            args.append("--no-check-certificate")
        if self.config.ffmpeg_location:
            args.extend(["--ffmpeg-location", self.config.ffmpeg_location])

        cookie_file = self.config.cookie_path(job.platform)
        if cookie_file:
            args.extend(["--cookies", cookie_file])

        args.append(job.link.url)
        return args

    async def attempt(self, job: RetrievalJob) -> None:
        result = await self.runner(
            self.config.ytdlp_binary,
            self.build_args(job),
            self.config.command_timeout,
        )
        logger.debug("yt-dlp output for job %s:\n%s", job.job_id, result.output)
        if not result.ok:
            raise StrategyError(self.name, _tail(result.output))


class GalleryDlStrategy(RetrievalStrategy):
    """Gallery-style extractor for image posts and carousels."""

    name = STRATEGY_GALLERY_DL

    def __init__(self, config: RelayConfig, runner: Runner = run_command):
        super().__init__(config)
        self.runner = runner

    def job_dir(self, job: RetrievalJob) -> str:
        return os.path.join(self.config.downloads_dir, job.job_id)

    def build_args(self, job: RetrievalJob) -> List[str]:
        args = ["--no-mtime", "-D", self.job_dir(job), "--user-agent", self.config.user_agent]
        if self.config.no_check_certificate:
            args.append("--no-check-certificate")

        cookie_file = self.config.cookie_path(job.platform)
        if cookie_file:
            args.extend(["--cookies", cookie_file])

        args.append(job.link.url)
        return args

    async def attempt(self, job: RetrievalJob) -> None:
        result = await self.runner(
            self.config.gallery_dl_binary,
            self.build_args(job),
            self.config.command_timeout,
        )
        logger.debug("gallery-dl output for job %s:\n%s", job.job_id, result.output)
        if result.ok:
            return

        # gallery-dl exits non-zero when one item of a post fails; keep what it got.
        fetched = [path for path in job_files(self.config.downloads_dir, job) if is_media_file(path)]
        if not fetched:
            raise StrategyError(self.name, _tail(result.output))
        logger.warning(
            "gallery-dl exited with %s for job %s but fetched %d file(s)",
            result.returncode,
            job.job_id,
            len(fetched),
        )


class RemoteApiStrategy(RetrievalStrategy):
    """Third-party metadata API returning direct media URLs."""

    name = STRATEGY_REMOTE_API

    def __init__(self, config: RelayConfig, session_factory: Optional[SessionFactory] = None):
        super().__init__(config)
        self.session_factory = session_factory or aiohttp.ClientSession

    def is_available(self, job: RetrievalJob) -> bool:
        return bool(self.config.remote_api_key and self.config.remote_api_urls.get(job.platform))

    def _headers(self) -> Dict[str, str]:
        headers = {
            "X-RapidAPI-Key": self.config.remote_api_key,
            "User-Agent": self.config.user_agent,
            "Accept": "application/json",
        }
        if self.config.remote_api_host:
            headers["X-RapidAPI-Host"] = self.config.remote_api_host
        return headers

    async def fetch_media_urls(self, session: aiohttp.ClientSession, job: RetrievalJob) -> List[str]:
        api_url = self.config.remote_api_urls[job.platform]
        async with session.get(
            api_url,
            params={"url": job.link.url},
            headers=self._headers(),
            timeout=aiohttp.ClientTimeout(total=self.config.http_timeout),
        ) as response:
            if response.status != 200:
                raise StrategyError(self.name, f"API responded with HTTP {response.status}")
            payload: Any = await response.json(content_type=None)
        return extract_media_urls(payload)

    async def attempt(self, job: RetrievalJob) -> None:
        try:
            async with self.session_factory() as session:
                media_urls = await self.fetch_media_urls(session, job)
                if not media_urls:
                    raise StrategyError(self.name, "API response has no media URL")

                for index, media_url in enumerate(media_urls, start=1):
                    # Content-Type decides the suffix, so the name is only known afterwards.
                    stem = os.path.join(self.config.downloads_dir, f"{job.job_id}_{index}")
                    content_type = await download_file_async(
                        url=media_url,
                        filepath=stem + ".part",
                        session=session,
                        timeout=self.config.http_timeout,
                        headers={"User-Agent": self.config.user_agent},
                    )
                    os.replace(stem + ".part", stem + guess_extension(media_url, content_type))
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as error:
            raise StrategyError(self.name, str(error) or type(error).__name__) from error


def build_strategies(
    config: RelayConfig,
    runner: Runner = run_command,
    session_factory: Optional[SessionFactory] = None,
) -> Dict[str, RetrievalStrategy]:
    """Strategy instances keyed by the names used in platform policies."""
    strategies: List[RetrievalStrategy] = [
        YtDlpStrategy(config, runner),
        GalleryDlStrategy(config, runner),
        RemoteApiStrategy(config, session_factory),
    ]
    return {strategy.name: strategy for strategy in strategies}

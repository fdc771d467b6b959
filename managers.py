"""
Admission control, the per-link fallback chain and message dispatch.
"""

import asyncio
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set, Union

import aiohttp

from config import RelayConfig
from errors import (
    DeliveryError,
    JobFailedError,
    JobTimeoutError,
    RelayError,
    StrategyError,
    UnsupportedLinkError,
)
from models import JobStatus, Link, MediaFile, MediaKind, Platform, PlatformPolicy, RetrievalJob
from strategies import RetrievalStrategy, Runner, build_strategies, job_files
from utils import (
    detect_platform,
    extract_urls,
    is_media_file,
    is_short_link,
    media_kind_for,
    remove_empty_dirs,
    remove_files,
    resolve_short_link,
    run_command,
)

logger = logging.getLogger(__name__)


class PermitPool:
    """Fixed number of permits; one permit authorises one running job."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._semaphore = asyncio.BoundedSemaphore(capacity)
        self._in_use = 0

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def available(self) -> int:
        return self.capacity - self._in_use

    async def acquire(self) -> None:
        """Wait until a permit is free and take it."""
        await self._semaphore.acquire()
        self._in_use += 1

    def release(self) -> None:
        if self._in_use == 0:
            raise ValueError("release() called more times than acquire()")
        self._in_use -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()


class FallbackChainEngine:
    """
    Runs the strategy list of a link's platform until one yields media.

    A strategy counts as successful when at least one file it wrote has a
    media extension of a kind the platform is expected to produce. Files of
    failed strategies and non-media leftovers are deleted before returning.
    """

    def __init__(
        self,
        config: RelayConfig,
        strategies: Optional[Dict[str, RetrievalStrategy]] = None,
        runner: Runner = run_command,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self.config = config
        self.strategies = strategies if strategies is not None else build_strategies(
            config, runner=runner, session_factory=session_factory
        )

    def new_job(self, link: Link) -> RetrievalJob:
        policy = self.config.policy_for(link.platform)
        return RetrievalJob(
            job_id=uuid.uuid4().hex,
            link=link,
            strategies=policy.strategies if policy else (),
        )

    async def run(self, job: RetrievalJob) -> RetrievalJob:
        policy = self.config.policy_for(job.platform)
        if policy is None:
            raise UnsupportedLinkError(f"unsupported link: {job.link.url}")

        os.makedirs(self.config.downloads_dir, exist_ok=True)
        job.start_ts = time.time()
        job.status = JobStatus.DOWNLOADING
        try:
            return await self._run_chain(job, policy)
        except BaseException as error:
            self.discard(job)
            job.status = JobStatus.FAILED
            job.end_ts = time.time()
            job.error_message = str(error) or type(error).__name__
            raise

    async def _run_chain(self, job: RetrievalJob, policy: PlatformPolicy) -> RetrievalJob:
        last_error: Optional[Exception] = None

        for name in job.strategies:
            strategy = self.strategies.get(name)
            if strategy is None or not strategy.is_available(job):
                logger.debug("Skipping strategy %s for job %s", name, job.job_id)
                continue

            logger.info("Job %s: trying %s for %s", job.job_id, name, job.link.url)
            try:
                await strategy.attempt(job)
            except StrategyError as error:
                logger.warning("Job %s: %s", job.job_id, error)
                last_error = error
                self.discard(job)
                continue

            produced = job_files(self.config.downloads_dir, job)
            media = [
                path
                for path in produced
                if is_media_file(path) and media_kind_for(path) in policy.expected_kinds
            ]
            if not media:
                last_error = StrategyError(name, f"no {policy.platform.value} media among {len(produced)} file(s)")
                logger.warning("Job %s: %s", job.job_id, last_error)
                self.discard(job)
                continue

            remove_files(path for path in produced if path not in media)
            job.files = [MediaFile.from_path(path) for path in media]
            job.media_kind = (
                MediaKind.VIDEO
                if any(item.kind == MediaKind.VIDEO for item in job.files)
                else MediaKind.IMAGE
            )
            job.strategy_used = name
            logger.info(
                "Job %s: %s produced %d %s file(s)",
                job.job_id,
                name,
                len(job.files),
                job.media_kind.value,
            )
            return job

        raise JobFailedError(job.link.url, last_error)

    def discard(self, job: RetrievalJob) -> None:
        """Delete everything this job has written so far."""
        leftovers = job_files(self.config.downloads_dir, job)
        remove_files(leftovers)
        for path in leftovers:
            remove_empty_dirs(self.config.downloads_dir, os.path.dirname(path))
        remove_empty_dirs(self.config.downloads_dir, os.path.join(self.config.downloads_dir, job.job_id))


class DispatchCoordinator:
    """
    Turns one chat message into independent per-link jobs.

    Every job waits for a permit, runs the fallback chain, gives the permit
    back and then hands its files to the relay. Local files are removed after
    hand-off whether or not delivery worked.

    The relay is any object with the coroutines ``job_started(job)``,
    ``job_finished(job)``, ``deliver(job, media_file)`` and
    ``job_failed(job, error)``.
    """

    def __init__(
        self,
        config: RelayConfig,
        engine: Optional[FallbackChainEngine] = None,
        permits: Optional[PermitPool] = None,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self.config = config
        self.engine = engine or FallbackChainEngine(config)
        self.permits = permits or PermitPool(config.max_concurrent)
        self.session_factory = session_factory or aiohttp.ClientSession
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active_jobs(self) -> int:
        return self.permits.in_use

    @property
    def pending_jobs(self) -> int:
        return len(self._tasks)

    async def collect_links(self, text: str) -> List[Link]:
        """Supported links from text, short links resolved, in order of appearance."""
        items: List[Union[Link, str]] = []
        for url in extract_urls(text):
            platform = detect_platform(url, self.config.policies)
            if platform != Platform.UNKNOWN:
                items.append(Link(url=url, platform=platform))
            elif self.config.resolve_short_links and is_short_link(url, self.config.short_link_domains):
                items.append(url)

        short_urls = [item for item in items if isinstance(item, str)]
        if not short_urls:
            return [item for item in items if isinstance(item, Link)]

        async with self.session_factory() as session:
            resolved = await asyncio.gather(
                *(resolve_short_link(url, session, self.config.user_agent) for url in short_urls)
            )
        targets = dict(zip(short_urls, resolved))

        links = []
        for item in items:
            if isinstance(item, Link):
                links.append(item)
                continue
            target = targets.get(item)
            platform = detect_platform(target, self.config.policies) if target else Platform.UNKNOWN
            if platform == Platform.UNKNOWN:
                logger.info("Short link %s resolved to unsupported %s", item, target)
                continue
            links.append(Link(url=target, platform=platform))
        return links

    async def dispatch(self, text: str, relay: Any) -> List[RetrievalJob]:
        """Start one job per supported link in text and return the jobs."""
        links = await self.collect_links(text)
        jobs = []
        for link in links:
            job = self.engine.new_job(link)
            task = asyncio.create_task(self._run_job(job, relay), name=f"job-{job.job_id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            jobs.append(job)

        if jobs:
            logger.info("Dispatched %d job(s): %s", len(jobs), ", ".join(job.job_id for job in jobs))
        return jobs

    async def _run_job(self, job: RetrievalJob, relay: Any) -> None:
        await self._notify(relay.job_started, job)
        job.status = JobStatus.WAITING

        try:
            async with self.permits.permit():
                await self._retrieve(job)
        except asyncio.CancelledError:
            job.status = JobStatus.FAILED
            job.error_message = job.error_message or "cancelled"
            await self._notify(relay.job_finished, job)
            raise
        except RelayError as error:
            logger.warning("Job %s failed: %s", job.job_id, error)
            await self._fail(job, relay, error)
            return
        except Exception as error:
            logger.exception("Unexpected error in job %s", job.job_id)
            await self._fail(job, relay, error)
            return

        await self._notify(relay.job_finished, job)
        await self._deliver(job, relay)

    async def _retrieve(self, job: RetrievalJob) -> None:
        try:
            await asyncio.wait_for(self.engine.run(job), timeout=self.config.job_timeout)
        except asyncio.TimeoutError as error:
            raise JobTimeoutError(
                f"job {job.job_id} timed out after {self.config.job_timeout}s"
            ) from error

    async def _fail(self, job: RetrievalJob, relay: Any, error: BaseException) -> None:
        job.status = JobStatus.FAILED
        job.end_ts = job.end_ts or time.time()
        job.error_message = job.error_message or str(error)
        await self._notify(relay.job_finished, job)
        await self._notify(relay.job_failed, job, error)

    async def _deliver(self, job: RetrievalJob, relay: Any) -> None:
        job.status = JobStatus.SENDING
        failures = 0
        for media in job.files:
            try:
                await relay.deliver(job, media)
            except Exception:
                failures += 1
                logger.exception("Delivery of %s failed for job %s", media.path, job.job_id)
            finally:
                remove_files([media.path])
                remove_empty_dirs(self.config.downloads_dir, os.path.dirname(media.path))

        job.end_ts = time.time()
        if failures:
            job.status = JobStatus.FAILED
            job.error_message = f"{failures} of {len(job.files)} file(s) were not delivered"
            await self._notify(relay.job_failed, job, DeliveryError(job.error_message))
            return

        job.status = JobStatus.COMPLETED
        logger.info(
            "Job %s delivered %d file(s) in %.1fs",
            job.job_id,
            len(job.files),
            job.end_ts - (job.start_ts or job.created_at),
        )

    @staticmethod
    async def _notify(hook: Callable[..., Any], *args: Any) -> None:
        try:
            await hook(*args)
        except Exception:
            logger.warning("Relay hook %s failed", getattr(hook, "__name__", hook), exc_info=True)

    async def wait_idle(self) -> None:
        """Wait until every dispatched job has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel outstanding jobs and wait for them to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Job stopped with error: %s", result)

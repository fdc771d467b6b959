"""
Unit tests for retrieval strategies.
"""

import asyncio
import os

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer as LocalServer

from config import RelayConfig
from errors import StrategyError
from models import CommandResult, Link, MediaKind, Platform, RetrievalJob
from strategies import GalleryDlStrategy, RemoteApiStrategy, YtDlpStrategy, build_strategies
from utils import media_kind_for


def _config(tmp_path, **overrides):
    values = {
        "downloads_dir": str(tmp_path / "downloads"),
        "cookies_dir": str(tmp_path / "cookies"),
        "command_timeout": 5,
        "http_timeout": 5,
    }
    values.update(overrides)
    os.makedirs(values["downloads_dir"], exist_ok=True)
    os.makedirs(values["cookies_dir"], exist_ok=True)
    return RelayConfig(**values)


def _job(url, platform, job_id="job123"):
    job = RetrievalJob(job_id=job_id, link=Link(url=url, platform=platform))
    job.start_ts = job.created_at
    return job


def _value_after(args, flag):
    return args[args.index(flag) + 1]


class TestYtDlpArguments:
    """Test yt-dlp command construction."""

    def test_youtube_is_capped_at_720p(self, tmp_path):
        strategy = YtDlpStrategy(_config(tmp_path))
        args = strategy.build_args(_job("https://youtu.be/abc123DEFGH", Platform.YOUTUBE))

        assert "height<=720" in _value_after(args, "-f")
        assert "--no-playlist" in args
        assert _value_after(args, "--merge-output-format") == "mp4"
        assert "--no-check-certificate" in args
        assert "--user-agent" in args
        assert args[-1] == "https://youtu.be/abc123DEFGH"

    def test_output_template_embeds_job_id(self, tmp_path):
        config = _config(tmp_path)
        args = YtDlpStrategy(config).build_args(_job("https://x.com/u/status/1", Platform.TWITTER))

        template = _value_after(args, "-o")
        assert os.path.dirname(template) == config.downloads_dir
        assert os.path.basename(template).startswith("job123_")
        assert template.endswith(".%(ext)s")

    def test_other_platforms_use_best_available(self, tmp_path):
        args = YtDlpStrategy(_config(tmp_path)).build_args(
            _job("https://www.tiktok.com/@u/video/1", Platform.TIKTOK)
        )
        assert "height<=" not in _value_after(args, "-f")

    def test_cookie_file_only_when_present(self, tmp_path):
        config = _config(tmp_path)
        strategy = YtDlpStrategy(config)
        job = _job("https://www.instagram.com/p/abc/", Platform.INSTAGRAM)

        assert "--cookies" not in strategy.build_args(job)

        cookie_file = os.path.join(config.cookies_dir, "instagram.txt")
        with open(cookie_file, "w") as handle:
            handle.write("# Netscape HTTP Cookie File\n")
        assert _value_after(strategy.build_args(job), "--cookies") == cookie_file

    def test_certificate_check_can_be_enabled(self, tmp_path):
        strategy = YtDlpStrategy(_config(tmp_path, no_check_certificate=False))
        args = strategy.build_args(_job("https://youtu.be/q", Platform.YOUTUBE))
        assert "--no-check-certificate" not in args

    def test_nonzero_exit_raises_strategy_error(self, tmp_path):
        async def runner(name, args, timeout=None):
            return CommandResult(output="ERROR: Private video", returncode=1)

        strategy = YtDlpStrategy(_config(tmp_path), runner)
        with pytest.raises(StrategyError) as excinfo:
            asyncio.run(strategy.attempt(_job("https://youtu.be/q", Platform.YOUTUBE)))
        assert excinfo.value.strategy == "yt-dlp"
        assert "Private video" in str(excinfo.value)


class TestGalleryDl:
    """Test gallery-dl command construction and exit handling."""

    def test_per_job_directory(self, tmp_path):
        config = _config(tmp_path)
        args = GalleryDlStrategy(config).build_args(_job("https://pin.it/abc", Platform.PINTEREST))
        assert _value_after(args, "-D") == os.path.join(config.downloads_dir, "job123")
        assert args[-1] == "https://pin.it/abc"

    def test_nonzero_exit_with_files_is_tolerated(self, tmp_path):
        config = _config(tmp_path)

        async def runner(name, args, timeout=None):
            target = _value_after(args, "-D")
            os.makedirs(target, exist_ok=True)
            with open(os.path.join(target, "1.jpg"), "wb") as handle:
                handle.write(b"img")
            return CommandResult(output="[error] one item failed", returncode=4)

        job = _job("https://www.instagram.com/p/abc/", Platform.INSTAGRAM)
        asyncio.run(GalleryDlStrategy(config, runner).attempt(job))

    def test_nonzero_exit_without_files_fails(self, tmp_path):
        async def runner(name, args, timeout=None):
            return CommandResult(output="[error] No results", returncode=1)

        job = _job("https://www.instagram.com/p/abc/", Platform.INSTAGRAM)
        with pytest.raises(StrategyError):
            asyncio.run(GalleryDlStrategy(_config(tmp_path), runner).attempt(job))


class TestRemoteApi:
    """Test the remote metadata API strategy against a local server."""

    def test_unavailable_without_key_or_url(self, tmp_path):
        job = _job("https://youtu.be/q", Platform.YOUTUBE)
        assert not RemoteApiStrategy(_config(tmp_path)).is_available(job)
        assert not RemoteApiStrategy(_config(tmp_path, remote_api_key="k")).is_available(job)
        configured = _config(
            tmp_path,
            remote_api_key="k",
            remote_api_urls={Platform.YOUTUBE: "https://api.example/yt"},
        )
        assert RemoteApiStrategy(configured).is_available(job)

    def test_downloads_every_media_url(self, tmp_path):
        seen_headers = {}

        async def scenario():
            app = web.Application()

            async def api(request):
                seen_headers["key"] = request.headers.get("X-RapidAPI-Key")
                seen_headers["host"] = request.headers.get("X-RapidAPI-Host")
                base = str(request.url.origin())
                return web.json_response(
                    {"medias": [{"url": f"{base}/media/a.jpg"}, {"url": f"{base}/media/b.mp4"}]}
                )

            async def media(request):
                return web.Response(body=b"payload-" + request.match_info["name"].encode())

            app.router.add_get("/api", api)
            app.router.add_get("/media/{name}", media)

            server = LocalServer(app)
            await server.start_server()
            try:
                config = _config(
                    tmp_path,
                    remote_api_key="secret",
                    remote_api_host="api.example",
                    remote_api_urls={Platform.INSTAGRAM: str(server.make_url("/api"))},
                )
                job = _job("https://www.instagram.com/p/abc/", Platform.INSTAGRAM)
                await RemoteApiStrategy(config).attempt(job)
                return config
            finally:
                await server.close()

        config = asyncio.run(scenario())

        assert seen_headers["key"] == "secret"
        assert seen_headers["host"] == "api.example"
        assert sorted(os.listdir(config.downloads_dir)) == ["job123_1.jpg", "job123_2.mp4"]
        with open(os.path.join(config.downloads_dir, "job123_2.mp4"), "rb") as handle:
            assert handle.read() == b"payload-b.mp4"

    def test_extensionless_url_named_by_content_type(self, tmp_path):
        async def scenario():
            app = web.Application()

            async def api(request):
                base = str(request.url.origin())
                return web.json_response({"url": f"{base}/videoplayback?mime=video%2Fmp4&itag=22"})

            async def playback(request):
                return web.Response(body=b"\x00\x00\x00\x18ftypmp42", content_type="video/mp4")

            app.router.add_get("/api", api)
            app.router.add_get("/videoplayback", playback)

            server = LocalServer(app)
            await server.start_server()
            try:
                config = _config(
                    tmp_path,
                    remote_api_key="secret",
                    remote_api_urls={Platform.YOUTUBE: str(server.make_url("/api"))},
                )
                await RemoteApiStrategy(config).attempt(_job("https://youtu.be/q", Platform.YOUTUBE))
                return config
            finally:
                await server.close()

        config = asyncio.run(scenario())

        assert os.listdir(config.downloads_dir) == ["job123_1.mp4"]
        path = os.path.join(config.downloads_dir, "job123_1.mp4")
        assert media_kind_for(path) == MediaKind.VIDEO

    def test_http_error_becomes_strategy_error(self, tmp_path):
        async def scenario():
            app = web.Application()

            async def api(request):
                return web.json_response({"message": "quota exceeded"}, status=429)

            app.router.add_get("/api", api)
            server = LocalServer(app)
            await server.start_server()
            try:
                config = _config(
                    tmp_path,
                    remote_api_key="secret",
                    remote_api_urls={Platform.YOUTUBE: str(server.make_url("/api"))},
                )
                await RemoteApiStrategy(config).attempt(_job("https://youtu.be/q", Platform.YOUTUBE))
            finally:
                await server.close()

        with pytest.raises(StrategyError) as excinfo:
            asyncio.run(scenario())
        assert "429" in str(excinfo.value)


def test_build_strategies_names(tmp_path):
    strategies = build_strategies(_config(tmp_path))
    assert set(strategies) == {"yt-dlp", "gallery-dl", "remote-api"}

"""
Unit tests for data models.
"""

from models import (
    CommandResult,
    JobStatus,
    Link,
    MediaFile,
    MediaKind,
    Platform,
    RetrievalJob,
)


def test_retrieval_job_defaults():
    link = Link(url="https://youtu.be/abc", platform=Platform.YOUTUBE)
    job = RetrievalJob(job_id="j1", link=link)
    assert job.status == JobStatus.QUEUED
    assert job.platform == Platform.YOUTUBE
    assert job.start_ts is None
    assert job.end_ts is None
    assert job.files == []
    assert job.media_kind is None
    assert job.error_message is None
    assert not job.succeeded


def test_media_file_kind_by_extension():
    assert MediaFile.from_path("/tmp/a.MP4").kind == MediaKind.VIDEO
    assert MediaFile.from_path("/tmp/a.mov").kind == MediaKind.VIDEO
    assert MediaFile.from_path("/tmp/a.mkv").kind == MediaKind.VIDEO
    assert MediaFile.from_path("/tmp/a.jpg").kind == MediaKind.IMAGE
    assert MediaFile.from_path("/tmp/a.webp").kind == MediaKind.IMAGE


def test_command_result_ok():
    assert CommandResult(output="", returncode=0).ok
    assert not CommandResult(output="", returncode=1).ok
    assert not CommandResult(output="", returncode=None).ok
    assert not CommandResult(output="", returncode=0, timed_out=True).ok


def test_platform_enum_values():
    assert Platform.YOUTUBE.value == "YouTube"
    assert Platform.TWITTER.value == "Twitter/X"
    assert Platform.UNKNOWN.value == "Unknown"


def test_job_status_enum_values():
    assert JobStatus.QUEUED.value == "queued"
    assert JobStatus.WAITING.value == "waiting"
    assert JobStatus.DOWNLOADING.value == "downloading"
    assert JobStatus.SENDING.value == "sending"
    assert JobStatus.COMPLETED.value == "completed"
    assert JobStatus.FAILED.value == "failed"

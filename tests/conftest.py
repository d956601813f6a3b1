"""
VodPipe Test Configuration and Fixtures

Provides:
- In-memory fakes for the object store and the FFmpeg engine
- A recording event sink
- Pipeline components wired the way the app wires them
- Auto-generated test media for the FFmpeg integration tests
"""

import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from vodpipe.api import build_services, create_app
from vodpipe.config import VodPipeConfig
from vodpipe.errors import ExternalStorageError, TranscodeError
from vodpipe.events import EventPublisher
from vodpipe.jobs import PROCESS_VIDEO, REGENERATE_QUALITY, JobQueue, RetryPolicy
from vodpipe.models import EventMessage, UploadPart
from vodpipe.pipeline import TranscodeWorker
from vodpipe.storage import ObjectStore, StorageLayout
from vodpipe.store import InMemoryVideoStore
from vodpipe.transcoding import MediaInfo, QualityRung, TranscodeProgress
from vodpipe.uploads import UploadSessionManager


# =============================================================================
# FAKES
# =============================================================================

class FakeObjectStore(ObjectStore):
    """Object store kept in a dict. Flags make individual calls fail."""

    def __init__(self, bucket: str = "test-bucket"):
        self.bucket = bucket
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.open_uploads: Dict[str, str] = {}
        self.completed: List[Dict[str, Any]] = []
        self.aborted: List[str] = []
        self.fail_create = False
        self.fail_complete = False
        self.fail_uploads = False
        self._counter = 0

    async def create_multipart_upload(self, key, content_type, metadata=None):
        if self.fail_create:
            raise ExternalStorageError(f"Failed to initiate multipart upload for {key}")
        self._counter += 1
        upload_id = f"upload-{self._counter}"
        self.open_uploads[upload_id] = key
        return upload_id

    async def sign_part_upload_url(self, key, upload_id, part_number, ttl):
        return (
            f"https://{self.bucket}.s3.test/{key}"
            f"?uploadId={upload_id}&partNumber={part_number}&X-Amz-Expires={ttl}"
        )

    async def sign_download_url(self, key, ttl):
        return f"https://{self.bucket}.s3.test/{key}?X-Amz-Expires={ttl}"

    async def complete_multipart_upload(self, key, upload_id, parts: List[UploadPart]):
        if self.fail_complete:
            raise ExternalStorageError(f"Failed to complete multipart upload for {key}: InternalError")
        if self.open_uploads.get(upload_id) != key:
            raise ExternalStorageError(f"Failed to complete multipart upload for {key}: NoSuchUpload")
        del self.open_uploads[upload_id]
        self.completed.append({"key": key, "upload_id": upload_id, "parts": [p.part_number for p in parts]})
        self.objects[key] = b"\x00\x00\x00\x18ftypmp42 fake source"

    async def abort_multipart_upload(self, key, upload_id):
        self.open_uploads.pop(upload_id, None)
        self.aborted.append(upload_id)

    async def put_object(self, key, body, content_type):
        if self.fail_uploads:
            raise ExternalStorageError(f"Failed to upload {key}")
        self.objects[key] = body
        self.content_types[key] = content_type

    async def upload_file(self, path: Path, key):
        if self.fail_uploads:
            raise ExternalStorageError(f"Failed to upload {path.name} to {key}")
        self.objects[key] = Path(path).read_bytes()

    async def download_file(self, key, path: Path):
        if key not in self.objects:
            raise ExternalStorageError(f"Failed to download {key}: NoSuchKey")
        Path(path).write_bytes(self.objects[key])

    async def head_object(self, key):
        if key not in self.objects:
            return None
        return {"content_length": len(self.objects[key]), "content_type": self.content_types.get(key, "")}


class StubEngine:
    """
    Stands in for TranscodeEngine: writes tiny fake HLS output instead of
    running FFmpeg.
    """

    def __init__(self, duration: float = 30.0):
        self.media_info = MediaInfo(
            duration=duration, width=1920, height=1080, fps=30.0,
            video_codec="h264", bitrate=6_000_000, aspect_ratio="16:9",
            has_audio=True, audio_codec="aac",
        )
        self.fail_on_rung: Optional[str] = None
        self.fail_retryable = False
        self.failures_remaining = -1  # negative: fail every time
        self.encoded: List[str] = []
        self.sources: List[Path] = []

    async def inspect(self, source: Path) -> MediaInfo:
        self.sources.append(Path(source))
        return self.media_info

    async def generate_thumbnail(self, source, output_path: Path, media_info) -> Path:
        output_path.write_bytes(b"\xff\xd8\xff\xe0 fake jpeg")
        return output_path

    async def transcode_rung(self, source, output_dir: Path, rung: QualityRung, media_info, progress_callback=None):
        if rung.quality == self.fail_on_rung and self.failures_remaining != 0:
            self.failures_remaining -= 1
            raise TranscodeError(f"Transcoding {rung.quality} failed (exit code 1): boom", retryable=self.fail_retryable)

        output_dir.mkdir(parents=True, exist_ok=True)
        lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-TARGETDURATION:10", "#EXT-X-PLAYLIST-TYPE:VOD"]
        for i in range(3):
            name = f"segment_{i:05d}.ts"
            (output_dir / name).write_bytes(b"\x47" + bytes(187))
            lines.extend(["#EXTINF:10.000000,", name])
        lines.append("#EXT-X-ENDLIST")
        (output_dir / "index.m3u8").write_text("\n".join(lines) + "\n")

        if progress_callback:
            for percent in (25.0, 50.0, 99.9):
                progress_callback(TranscodeProgress(percent=percent, stage=f"hls_{rung.quality}"))

        self.encoded.append(rung.quality)
        return output_dir / "index.m3u8"


class EventRecorder:
    """Event sink remembering every message."""

    def __init__(self):
        self.messages: List[EventMessage] = []

    async def __call__(self, message: EventMessage) -> None:
        self.messages.append(message)

    def names(self) -> List[str]:
        return [m.event for m in self.messages]

    def of(self, event: str) -> List[Dict[str, Any]]:
        return [m.payload for m in self.messages if m.event == event]


# =============================================================================
# PIPELINE FIXTURES
# =============================================================================

@pytest.fixture
def config(tmp_path) -> VodPipeConfig:
    """Test configuration with scratch space under tmp_path and fast retries."""
    config = VodPipeConfig()
    config.storage.bucket = "test-bucket"
    config.transcoding.temp_directory = str(tmp_path / "scratch")
    config.jobs.max_workers = 2
    config.jobs.retry_base_delay = 0.01
    config.jobs.retry_max_delay = 0.05
    config.notifications.webhook_url = None
    config.notifications.reviewer_email = None
    config.logging.level = "WARNING"
    return config


@pytest.fixture
def store() -> InMemoryVideoStore:
    return InMemoryVideoStore()


@pytest.fixture
def object_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def engine() -> StubEngine:
    return StubEngine()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def events(config, recorder) -> EventPublisher:
    publisher = EventPublisher(config.notifications)
    publisher.register_sink(recorder, inline=True)
    return publisher


@pytest.fixture
def layout(config) -> StorageLayout:
    return StorageLayout(config.storage)


@pytest.fixture
def queue() -> JobQueue:
    return JobQueue(max_workers=2, retry_policy=RetryPolicy(max_attempts=3, base_delay=0.01, max_delay=0.05))


@pytest.fixture
def uploads(config, store, object_store, queue, events, layout) -> UploadSessionManager:
    return UploadSessionManager(config.storage, store, object_store, queue, events, layout)


@pytest.fixture
def worker(config, store, object_store, engine, events, layout, queue, uploads) -> TranscodeWorker:
    worker = TranscodeWorker(config.transcoding, store, object_store, engine, events, layout)
    queue.register_handler(PROCESS_VIDEO, worker.process, retry_hook=uploads.prepare_retry)
    queue.register_handler(REGENERATE_QUALITY, worker.regenerate_quality)
    return worker


@pytest.fixture
def api_client(config, store, object_store, engine, events):
    """TestClient over an app wired with the fakes; lifespan runs the queue."""
    services = build_services(config, store=store, object_store=object_store, engine=engine, events=events)
    app = create_app(config, services=services)
    with TestClient(app) as client:
        client.services = services
        yield client


# =============================================================================
# TEST MEDIA GENERATION
# =============================================================================

class TestMediaGenerator:
    """
    Generates test media files using FFmpeg.
    No external downloads - creates synthetic test videos.
    """

    __test__ = False

    def __init__(self, output_dir: Path):
        self.output_dir = output_dir
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self._ffmpeg = shutil.which("ffmpeg")

    @property
    def has_ffmpeg(self) -> bool:
        return self._ffmpeg is not None

    def generate_test_video(
        self,
        name: str = "test_video",
        duration: int = 3,
        width: int = 640,
        height: int = 360,
        fps: int = 25,
        audio: bool = True,
    ) -> Optional[Path]:
        """Color bars plus a sine tone; None if FFmpeg is unavailable or fails."""
        if not self.has_ffmpeg:
            return None

        output_path = self.output_dir / f"{name}.mp4"
        cmd = [
            self._ffmpeg, "-y",
            "-f", "lavfi", "-i", f"testsrc=duration={duration}:size={width}x{height}:rate={fps}",
        ]
        if audio:
            cmd.extend(["-f", "lavfi", "-i", f"sine=frequency=440:duration={duration}"])
        cmd.extend(["-c:v", "libx264", "-preset", "ultrafast", "-pix_fmt", "yuv420p"])
        if audio:
            cmd.extend(["-c:a", "aac", "-b:a", "128k"])
        cmd.append(str(output_path))

        try:
            result = subprocess.run(cmd, capture_output=True, timeout=60)
        except (subprocess.TimeoutExpired, OSError) as e:
            print(f"Failed to generate test video: {e}")
            return None

        if result.returncode == 0 and output_path.exists():
            return output_path
        return None


@pytest.fixture(scope="session")
def test_media_dir(tmp_path_factory) -> Path:
    return tmp_path_factory.mktemp("vodpipe_test_media")


@pytest.fixture(scope="session")
def quick_test_video(test_media_dir) -> Path:
    """Short generated video; skips when FFmpeg is not installed."""
    generator = TestMediaGenerator(test_media_dir)
    if not generator.has_ffmpeg:
        pytest.skip("FFmpeg not available for test media generation")
    path = generator.generate_test_video("test_quick")
    if path is None:
        pytest.skip("Failed to generate test video")
    return path


# =============================================================================
# SKIP CONDITIONS
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "requires_ffmpeg: marks tests that require FFmpeg"
    )


@pytest.fixture
def requires_ffmpeg():
    """Skip test if FFmpeg not available."""
    if not shutil.which("ffmpeg") or not shutil.which("ffprobe"):
        pytest.skip("FFmpeg not available")

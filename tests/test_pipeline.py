"""
Tests for the transcode worker, end to end over the fakes.
"""

import asyncio
from pathlib import Path

import pytest

from vodpipe import events as ev
from vodpipe.errors import (
    ConcurrencyConflict,
    ExternalStorageError,
    NotFoundError,
    PersistenceError,
    TranscodeError,
)
from vodpipe.models import ContentCategory, UploadPart, VideoQuality, VideoStatus
from vodpipe.pipeline import ProgressReporter, TranscodeWorker
from vodpipe.transcoding import get_rung


async def complete(uploads, recorder, category=ContentCategory.DAILY_CLASSES):
    """Upload a video through to UPLOADED; returns (video, job_id)."""
    started = await uploads.initiate("class.mp4", 1000, category)
    video = await uploads.complete_upload(
        started.video_id, started.upload_id, [UploadPart(part_number=1, etag="e1", size_bytes=1000)]
    )
    job_id = recorder.of(ev.UPLOAD_COMPLETED)[-1]["job_id"]
    return video, job_id


class TestTranscodeWorker:
    @pytest.mark.asyncio
    async def test_success_publishes_hls_and_marks_ready(
        self, uploads, worker, queue, store, object_store, engine, recorder, config
    ):
        video, job_id = await complete(uploads, recorder)

        await worker.process(queue.get_job(job_id))

        ready = await store.get(video.id)
        assert ready.status == VideoStatus.READY
        assert ready.progress == 100.0
        assert ready.processed_at is not None
        assert ready.upload_session is None
        assert ready.processing_error is None
        assert ready.processing_job_id == job_id
        assert ready.duration_seconds == 30.0
        assert ready.media_metadata.width == 1920
        assert ready.media_metadata.has_audio is True

        master_key = f"daily-classes/{video.id}/master.m3u8"
        assert ready.manifest.master_playlist_key == master_key
        assert ready.available_qualities == [
            VideoQuality.HD_1080P, VideoQuality.HD_720P, VideoQuality.SD_480P, VideoQuality.SD_360P,
        ]
        assert [v.playlist_key for v in ready.manifest.variants] == [
            f"daily-classes/{video.id}/{q}/index.m3u8" for q in ("1080p", "720p", "480p", "360p")
        ]

        master = object_store.objects[master_key].decode()
        assert master.startswith("#EXTM3U\n#EXT-X-VERSION:3\n")
        assert "#EXT-X-STREAM-INF:BANDWIDTH=5000000,RESOLUTION=1920x1080\n1080p/index.m3u8" in master
        assert object_store.content_types[master_key] == "application/x-mpegURL"
        assert f"daily-classes/{video.id}/360p/segment_00002.ts" in object_store.objects

        thumbnail_key = f"daily-classes/thumbnails/daily_classes/{video.id}_thumbnail.jpg"
        assert ready.thumbnail_key == thumbnail_key
        assert thumbnail_key in object_store.objects

        assert engine.encoded == ["1080p", "720p", "480p", "360p"]
        assert not (Path(config.transcoding.temp_directory) / job_id).exists()

    @pytest.mark.asyncio
    async def test_event_sequence_and_monotonic_progress(self, uploads, worker, queue, recorder):
        video, job_id = await complete(uploads, recorder)

        await worker.process(queue.get_job(job_id))

        names = [n for n in recorder.names() if n.startswith("video-processing")]
        assert names[0] == ev.PROCESSING_STARTED
        assert names[-1] == ev.PROCESSING_COMPLETED
        assert ev.PROCESSING_FAILED not in names

        progress = [p["progress"] for p in recorder.of(ev.PROCESSING_PROGRESS)]
        assert progress == sorted(progress)
        # every report but the final 100% advances by at least one point
        steps = progress[:-1]
        assert all(b - a >= 1.0 for a, b in zip(steps, steps[1:]))
        assert progress[-1] == 100.0

        completed = recorder.of(ev.PROCESSING_COMPLETED)[0]
        assert completed["master_playlist_key"] == f"daily-classes/{video.id}/master.m3u8"
        assert completed["available_qualities"] == ["1080p", "720p", "480p", "360p"]

    @pytest.mark.asyncio
    async def test_category_folder_routing(self, uploads, worker, queue, store, recorder):
        video, job_id = await complete(uploads, recorder, category=ContentCategory.MASTER_CLASSES)

        await worker.process(queue.get_job(job_id))

        ready = await store.get(video.id)
        assert ready.manifest.master_playlist_key == f"master-classes/{video.id}/master.m3u8"

    @pytest.mark.asyncio
    async def test_rung_failure_marks_error_without_manifest(
        self, uploads, worker, queue, store, object_store, engine, recorder, config
    ):
        engine.fail_on_rung = "720p"
        video, job_id = await complete(uploads, recorder)

        with pytest.raises(TranscodeError):
            await worker.process(queue.get_job(job_id))

        failed = await store.get(video.id)
        assert failed.status == VideoStatus.ERROR
        assert "720p" in failed.processing_error
        assert failed.manifest is None
        assert failed.available_qualities == []
        assert f"daily-classes/{video.id}/master.m3u8" not in object_store.objects
        assert not (Path(config.transcoding.temp_directory) / job_id).exists()

        payload = recorder.of(ev.PROCESSING_FAILED)[0]
        assert payload["video_id"] == video.id
        assert payload["retryable"] is False

    @pytest.mark.asyncio
    async def test_download_failure_marks_error(self, uploads, worker, queue, store, object_store, recorder):
        video, job_id = await complete(uploads, recorder)
        object_store.objects.clear()

        with pytest.raises(ExternalStorageError):
            await worker.process(queue.get_job(job_id))

        failed = await store.get(video.id)
        assert failed.status == VideoStatus.ERROR
        assert "Failed to download" in failed.processing_error

    @pytest.mark.asyncio
    async def test_publish_failure_marks_error(self, uploads, worker, queue, store, object_store, recorder):
        video, job_id = await complete(uploads, recorder)
        object_store.fail_uploads = True

        with pytest.raises(ExternalStorageError):
            await worker.process(queue.get_job(job_id))

        assert (await store.get(video.id)).status == VideoStatus.ERROR

    @pytest.mark.asyncio
    async def test_ready_write_failure_marks_error(self, uploads, worker, queue, store, recorder, monkeypatch):
        video, job_id = await complete(uploads, recorder)
        original_update = store.update

        async def update(video_id, mutator, expected_version=None):
            def guarded(v):
                mutator(v)
                if v.status == VideoStatus.READY:
                    raise PersistenceError("disk full")
            return await original_update(video_id, guarded, expected_version)

        monkeypatch.setattr(store, "update", update)

        with pytest.raises(PersistenceError):
            await worker.process(queue.get_job(job_id))

        failed = await store.get(video.id)
        assert failed.status == VideoStatus.ERROR
        assert failed.processing_error == "disk full"
        assert ev.PROCESSING_COMPLETED not in recorder.names()
        assert recorder.of(ev.PROCESSING_FAILED)[0]["video_id"] == video.id

    @pytest.mark.asyncio
    async def test_zero_duration_is_rejected(self, uploads, worker, queue, store, engine, recorder):
        engine.media_info.duration = 0
        video, job_id = await complete(uploads, recorder)

        with pytest.raises(TranscodeError):
            await worker.process(queue.get_job(job_id))

        assert (await store.get(video.id)).status == VideoStatus.ERROR
        assert engine.encoded == []

    @pytest.mark.asyncio
    async def test_job_for_non_uploaded_video_is_dropped(self, uploads, worker, queue, store, engine, recorder):
        video, job_id = await complete(uploads, recorder)
        await worker.process(queue.get_job(job_id))
        version = (await store.get(video.id)).version

        # Replaying the same job against a READY video does nothing
        await worker.process(queue.get_job(job_id))

        after = await store.get(video.id)
        assert after.status == VideoStatus.READY
        assert after.version == version
        assert engine.encoded.count("1080p") == 1

    @pytest.mark.asyncio
    async def test_unknown_video(self, worker, queue, uploads, recorder):
        video, job_id = await complete(uploads, recorder)
        job = queue.get_job(job_id)
        job.payload["video_id"] = "missing"

        with pytest.raises(NotFoundError):
            await worker.process(job)


class TestWorkerUnderQueue:
    @pytest.mark.asyncio
    async def test_retryable_failure_is_retried_to_ready(self, uploads, worker, queue, store, engine, recorder):
        engine.fail_on_rung = "480p"
        engine.fail_retryable = True
        engine.failures_remaining = 1

        video, job_id = await complete(uploads, recorder)
        job = queue.get_job(job_id)
        await queue.start()
        try:
            await asyncio.wait_for(queue.wait_idle(), timeout=5)
        finally:
            await queue.stop()

        ready = await store.get(video.id)
        assert ready.status == VideoStatus.READY
        assert ready.processing_error is None
        assert queue.stats.retried_jobs == 1
        assert queue.stats.successful_jobs == 1
        assert job.attempts == 2
        assert len(queue.jobs) == 0

        names = recorder.names()
        assert names.index(ev.PROCESSING_FAILED) < names.index(ev.REPROCESS_STARTED) < names.index(ev.PROCESSING_COMPLETED)
        assert recorder.of(ev.REPROCESS_STARTED)[0]["retry"] is True

    @pytest.mark.asyncio
    async def test_fatal_failure_is_not_retried(self, uploads, worker, queue, store, engine, recorder):
        engine.fail_on_rung = "1080p"

        video, job_id = await complete(uploads, recorder)
        job = queue.get_job(job_id)
        await queue.start()
        try:
            await asyncio.wait_for(queue.wait_idle(), timeout=5)
        finally:
            await queue.stop()

        assert (await store.get(video.id)).status == VideoStatus.ERROR
        assert queue.stats.failed_jobs == 1
        assert queue.stats.retried_jobs == 0
        assert job.attempts == 1

    @pytest.mark.asyncio
    async def test_retries_stop_at_max_attempts(self, uploads, worker, queue, store, engine, recorder):
        engine.fail_on_rung = "360p"
        engine.fail_retryable = True

        video, job_id = await complete(uploads, recorder)
        job = queue.get_job(job_id)
        await queue.start()
        try:
            await asyncio.wait_for(queue.wait_idle(), timeout=5)
        finally:
            await queue.stop()

        assert (await store.get(video.id)).status == VideoStatus.ERROR
        assert job.attempts == queue.retry_policy.max_attempts
        assert queue.stats.failed_jobs == 1


class TestRegenerateQuality:
    async def ready_video(self, uploads, worker, queue, recorder):
        video, job_id = await complete(uploads, recorder)
        await worker.process(queue.get_job(job_id))
        return video

    @pytest.mark.asyncio
    async def test_adds_missing_rung_in_ladder_order(
        self, uploads, worker, queue, store, object_store, engine, events, layout, config, recorder
    ):
        partial = TranscodeWorker(
            config.transcoding, store, object_store, engine, events, layout,
            ladder=[get_rung("1080p"), get_rung("360p")],
        )
        video = await self.ready_video(uploads, partial, queue, recorder)
        before = await store.get(video.id)
        assert [q.value for q in before.available_qualities] == ["1080p", "360p"]

        request = await uploads.regenerate_quality(video.id, "720p")
        await worker.regenerate_quality(queue.get_job(request.job_id))

        after = await store.get(video.id)
        assert after.status == VideoStatus.READY
        assert [q.value for q in after.available_qualities] == ["1080p", "720p", "360p"]
        assert after.version == before.version + 1
        assert f"daily-classes/{video.id}/720p/index.m3u8" in object_store.objects
        assert f"daily-classes/{video.id}/720p/segment_00000.ts" in object_store.objects

        master = object_store.objects[f"daily-classes/{video.id}/master.m3u8"].decode()
        uris = [line for line in master.splitlines() if line.endswith("index.m3u8")]
        assert uris == ["1080p/index.m3u8", "720p/index.m3u8", "360p/index.m3u8"]

        assert engine.encoded[-1] == "720p"
        assert not (Path(config.transcoding.temp_directory) / request.job_id).exists()
        assert recorder.of(ev.QUALITY_REGENERATED) == [{
            "video_id": video.id,
            "quality": "720p",
            "master_playlist_key": f"daily-classes/{video.id}/master.m3u8",
            "available_qualities": ["1080p", "720p", "360p"],
        }]

    @pytest.mark.asyncio
    async def test_replaces_existing_rung(self, uploads, worker, queue, store, engine, recorder):
        video = await self.ready_video(uploads, worker, queue, recorder)

        request = await uploads.regenerate_quality(video.id, "480p")
        await worker.regenerate_quality(queue.get_job(request.job_id))

        after = await store.get(video.id)
        assert [q.value for q in after.available_qualities] == ["1080p", "720p", "480p", "360p"]
        assert engine.encoded.count("480p") == 2

    @pytest.mark.asyncio
    async def test_failure_keeps_video_ready(self, uploads, worker, queue, store, object_store, engine, recorder):
        video = await self.ready_video(uploads, worker, queue, recorder)
        before = await store.get(video.id)
        master_key = before.manifest.master_playlist_key
        master = object_store.objects[master_key]
        engine.fail_on_rung = "720p"

        request = await uploads.regenerate_quality(video.id, "720p")
        with pytest.raises(TranscodeError):
            await worker.regenerate_quality(queue.get_job(request.job_id))

        after = await store.get(video.id)
        assert after.status == VideoStatus.READY
        assert after.manifest == before.manifest
        assert after.version == before.version
        assert object_store.objects[master_key] == master

        failed = recorder.of(ev.QUALITY_REGENERATION_FAILED)[0]
        assert failed["video_id"] == video.id
        assert failed["quality"] == "720p"
        assert "720p" in failed["error"]
        assert ev.QUALITY_REGENERATED not in recorder.names()

    @pytest.mark.asyncio
    async def test_missing_source(self, uploads, worker, queue, store, object_store, engine, recorder):
        video = await self.ready_video(uploads, worker, queue, recorder)
        del object_store.objects[video.source_object_key]
        encoded = list(engine.encoded)

        request = await uploads.regenerate_quality(video.id, "360p")
        with pytest.raises(ExternalStorageError, match="missing"):
            await worker.regenerate_quality(queue.get_job(request.job_id))

        assert (await store.get(video.id)).status == VideoStatus.READY
        assert engine.encoded == encoded

    @pytest.mark.asyncio
    async def test_video_reprocessed_before_job_runs(self, uploads, worker, queue, store, engine, recorder):
        video = await self.ready_video(uploads, worker, queue, recorder)
        request = await uploads.regenerate_quality(video.id, "360p")
        await uploads.reprocess(video.id)
        encoded = list(engine.encoded)

        await worker.regenerate_quality(queue.get_job(request.job_id))

        assert (await store.get(video.id)).status == VideoStatus.UPLOADED
        assert engine.encoded == encoded

    @pytest.mark.asyncio
    async def test_video_changed_while_encoding(self, uploads, worker, queue, store, engine, recorder):
        video = await self.ready_video(uploads, worker, queue, recorder)
        request = await uploads.regenerate_quality(video.id, "360p")
        original_encode = engine.transcode_rung

        async def encode_then_reprocess(*args, **kwargs):
            result = await original_encode(*args, **kwargs)
            await uploads.reprocess(video.id)
            return result

        engine.transcode_rung = encode_then_reprocess

        with pytest.raises(ConcurrencyConflict):
            await worker.regenerate_quality(queue.get_job(request.job_id))

        after = await store.get(video.id)
        assert after.status == VideoStatus.UPLOADED
        assert after.manifest is None

    @pytest.mark.asyncio
    async def test_runs_under_queue(self, uploads, worker, queue, store, recorder):
        await queue.start()
        try:
            video, _ = await complete(uploads, recorder)
            await asyncio.wait_for(queue.wait_idle(), timeout=5)
            await uploads.regenerate_quality(video.id, "1080p")
            await asyncio.wait_for(queue.wait_idle(), timeout=5)
        finally:
            await queue.stop()

        assert (await store.get(video.id)).status == VideoStatus.READY
        assert recorder.of(ev.QUALITY_REGENERATED)[0]["quality"] == "1080p"
        assert queue.stats.successful_jobs == 2
        assert len(queue.jobs) == 0


class TestProgressReporter:
    @pytest.mark.asyncio
    async def test_never_regresses_and_throttles(self, uploads, store, events, recorder):
        started = await uploads.initiate("a.mp4", 10, ContentCategory.STOCKS)
        await store.update(started.video_id, lambda v: setattr(v, "status", VideoStatus.PROCESSING))
        reporter = ProgressReporter(started.video_id, store, events, rung_count=4)

        for percent in (10.0, 10.5, 5.0, 30.0, 29.0, 30.4):
            await reporter.report(percent)

        assert [p["progress"] for p in recorder.of(ev.PROCESSING_PROGRESS)] == [10.0, 30.0]
        assert (await store.get(started.video_id)).progress == 30.0

    @pytest.mark.asyncio
    async def test_concurrent_reports_stay_monotonic(self, uploads, store, events, recorder, monkeypatch):
        started = await uploads.initiate("a.mp4", 10, ContentCategory.STOCKS)
        await store.update(started.video_id, lambda v: setattr(v, "status", VideoStatus.PROCESSING))
        original_update = store.update

        async def slow_update(video_id, mutator, expected_version=None):
            await asyncio.sleep(0)
            return await original_update(video_id, mutator, expected_version)

        monkeypatch.setattr(store, "update", slow_update)
        reporter = ProgressReporter(started.video_id, store, events, rung_count=4)

        percents = [40.0, 5.0, 75.0, 20.0, 100.0, 60.0, 90.0, 12.0]
        await asyncio.gather(*(reporter.report(p) for p in percents))

        emitted = [p["progress"] for p in recorder.of(ev.PROCESSING_PROGRESS)]
        assert emitted == sorted(set(emitted))
        assert emitted[-1] == 100.0
        assert reporter.last_percent == 100.0
        assert (await store.get(started.video_id)).progress == 100.0

    def test_overall_progress(self, store, events):
        reporter = ProgressReporter("v", store, events, rung_count=4)
        assert reporter.overall(0, 0.5) == 12.5
        assert reporter.overall(3, 1.0) == 100.0
        assert reporter.overall(1, 2.0) == 50.0

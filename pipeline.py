"""
Job pipeline: conversion -> derivatives -> metadata -> upload -> publication.

Stages for one job run strictly in order, each consuming the previous
stage's output. Any stage failure ends the job with a failed JobOutcome;
nothing raised inside a job escapes process(). Jobs that share a fileName
namespace are serialized, since they would write to the same working
directory.
"""

import logging
import os
import shutil
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, List, Optional

from pydantic import ValidationError

import paths
from db import JobStore, JobStoreError, utc_now
from derivatives import DerivativeGenerator
from errors import ConversionError, JobCancelledError, PipelineError, PublishError
from metadata import extract_metadata
from queue_service import ResultSink
from schema import DerivedMetadata, JobRequest, TranscodeResult
from transcode import Transcoder
from uploader import StorageUploader, get_preview_url, get_stream_url, get_transcoded_url

logger = logging.getLogger(__name__)


class NamespaceLocks:
    """One mutex per namespace key, discarded once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


@dataclass
class JobOutcome:
    job: JobRequest
    result: Optional[TranscodeResult] = None
    error: Optional[PipelineError] = None
    published: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.result is not None

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, JobCancelledError)


class JobPipeline:
    def __init__(self, transcoder: Transcoder, uploader: StorageUploader, sink: ResultSink,
                 work_dir: str, base_url: str, store: Optional[JobStore] = None,
                 locks: Optional[NamespaceLocks] = None):
        self.transcoder = transcoder
        self.derivatives = DerivativeGenerator(transcoder)
        self.uploader = uploader
        self.sink = sink
        self.work_dir = work_dir
        self.base_url = base_url.rstrip("/")
        self.store = store
        self.locks = locks or NamespaceLocks()

    def process(self, job: JobRequest, cancel: Optional[threading.Event] = None) -> JobOutcome:
        with self.locks.hold(job.file_name):
            try:
                result = self._run(job, cancel)
            except PipelineError as e:
                return self._fail(job, e)
            except Exception as e:
                logger.exception("[%s] Unexpected error", job.upload_id)
                return self._fail(job, PipelineError(f"Unexpected error: {e}"))

        published = self._publish(job, result)
        self._track(job, status="completed", stage=None, completed_at=utc_now(),
                    published=published, **result.model_dump(exclude={"user_id", "video_upload_id"}))
        logger.info("[%s] ✓ Job completed", job.upload_id)
        return JobOutcome(job, result=result, published=published)

    def _run(self, job: JobRequest, cancel: Optional[threading.Event]) -> TranscodeResult:
        workdir = paths.job_dir(self.work_dir, job.file_name)

        self._enter(job, "prepare", cancel)
        self._purge(workdir)

        self._enter(job, "conversion", cancel)
        ok, canonical = self.transcoder.convert_to_mp4(job.source_url, job.file_name, cancel)
        if not ok:
            self._check_cancel(job, "conversion", cancel)
            raise ConversionError(f"Conversion of {job.source_url} failed: {canonical}")
        logger.info("[%s] Converted: %s", job.upload_id, canonical)

        self._enter(job, "derivatives", cancel)
        self.derivatives.generate(canonical, job.file_name, cancel)

        self._enter(job, "metadata", cancel)
        meta = extract_metadata(canonical, self.transcoder)

        self._enter(job, "upload", cancel)
        self.uploader.upload_dir_and_remove(job.user_id, job.file_name, workdir)

        self._check_cancel(job, "publication", cancel)
        return self.build_result(job, meta)

    def build_result(self, job: JobRequest, meta: DerivedMetadata) -> TranscodeResult:
        try:
            return TranscodeResult(
                user_id=job.user_id,
                video_upload_id=job.upload_id,
                transcoded_url=get_transcoded_url(self.base_url, job.user_id, job.file_name),
                download_size=meta.size_bytes,
                stream_url=get_stream_url(self.base_url, job.user_id, job.file_name),
                preview_url=get_preview_url(self.base_url, job.user_id, job.file_name),
                duration=meta.duration,
            )
        except ValidationError as e:
            raise PipelineError(f"Incomplete result: {e}", stage="result") from e

    def _enter(self, job: JobRequest, stage: str, cancel: Optional[threading.Event]) -> None:
        self._check_cancel(job, stage, cancel)
        logger.info("[%s] Stage: %s", job.upload_id, stage)
        self._track(job, status="processing", stage=stage)

    @staticmethod
    def _check_cancel(job: JobRequest, stage: str, cancel: Optional[threading.Event]) -> None:
        if cancel is not None and cancel.is_set():
            raise JobCancelledError(f"Job {job.upload_id} cancelled at {stage}")

    @staticmethod
    def _purge(workdir: str) -> None:
        # leftovers of an earlier failed attempt are never reused
        try:
            if os.path.exists(workdir):
                shutil.rmtree(workdir)
            os.makedirs(workdir)
        except OSError as e:
            raise PipelineError(f"Cannot prepare {workdir}: {e}", stage="prepare") from e

    def _fail(self, job: JobRequest, error: PipelineError) -> JobOutcome:
        if isinstance(error, JobCancelledError):
            logger.warning("[%s] %s", job.upload_id, error)
            status = "cancelled"
        else:
            logger.error("[%s] ✗ Job failed at %s: %s", job.upload_id, error.stage, error)
            status = "failed"
        self._track(job, status=status, stage=error.stage, error=str(error),
                    completed_at=utc_now())
        return JobOutcome(job, error=error)

    def _publish(self, job: JobRequest, result: TranscodeResult) -> bool:
        try:
            self.sink.publish(result)
        except PublishError as e:
            # artifacts are already in storage; only the notification is lost
            logger.warning("[%s] %s", job.upload_id, e)
            return False
        return True

    def _track(self, job: JobRequest, **fields) -> None:
        if self.store is None:
            return
        fields.update(user_id=job.user_id, file_name=job.file_name, updated_at=utc_now())
        try:
            self.store.record(job.upload_id, fields)
        except JobStoreError as e:
            logger.warning("[%s] Job store update failed: %s", job.upload_id, e)

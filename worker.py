#!/usr/bin/env python3
"""
Worker daemon that consumes transcoding jobs and runs them through the pipeline.

Jobs run on a fixed-size thread pool. The main loop only pulls as many
messages as there are free slots, and settles (acks or dead-letters) every
message itself, so broker clients are never touched from pool threads.
Multiple workers can run in parallel against the same queue.
"""

import logging
import shutil
import signal
import sys
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Dict, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError
from kafka.errors import KafkaError
from pymongo.errors import PyMongoError

from config import Settings, load_settings
from db import JobStoreError, get_job_store
from errors import ConfigurationError, DecodeError
from log import setup_logging
from pipeline import JobOutcome, JobPipeline
from queue_service import JobSource, ResultSink, build_queue, decode_job
from schema import JobRequest
from transcode import FFmpegTranscoder
from uploader import S3Uploader, get_s3_client

logger = logging.getLogger(__name__)


class Worker:
    def __init__(self, source: JobSource, pipeline: JobPipeline, max_workers: int = 2):
        self.source = source
        self.pipeline = pipeline
        self.max_workers = max_workers
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="transcode")
        self._inflight: Dict[Future, Tuple[Dict[str, Any], JobRequest, threading.Event]] = {}
        self._stop = threading.Event()
        self._closed = False

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def run(self) -> None:
        logger.info("Worker ready (%d slots). Waiting for jobs...", self.max_workers)
        try:
            while not self._stop.is_set():
                self.run_once()
        finally:
            self.shutdown()

    def run_once(self, wait_timeout: float = 1.0) -> int:
        """One loop iteration: settle finished jobs, then fill free slots. Returns jobs fetched."""
        self.reap()
        free = self.max_workers - len(self._inflight)
        if free <= 0:
            wait(list(self._inflight), timeout=wait_timeout, return_when=FIRST_COMPLETED)
            return 0

        try:
            messages = self.source.fetch(free)
        except (KafkaError, RuntimeError) as e:
            logger.error("Fetching jobs failed: %s", e)
            self._stop.wait(wait_timeout)
            return 0

        for message in messages:
            self.dispatch(message)
        return len(messages)

    def dispatch(self, message: Dict[str, Any]) -> Optional[Future]:
        try:
            job = decode_job(message["body"])
        except DecodeError as e:
            logger.error("Rejected message %s: %s", message["receipt_handle"], e)
            self.source.dead_letter(message, str(e))
            return None

        logger.info("[%s] Received job: %s -> %s", job.upload_id, job.source_url, job.file_name)
        cancel = threading.Event()
        future = self.executor.submit(self.pipeline.process, job, cancel)
        self._inflight[future] = (message, job, cancel)
        return future

    def reap(self) -> int:
        done = [future for future in self._inflight if future.done()]
        for future in done:
            message, _, _ = self._inflight.pop(future)
            try:
                outcome = future.result()
            except Exception as e:
                logger.exception("Job for message %s crashed", message["receipt_handle"])
                self.source.dead_letter(message, f"crashed: {e}")
                continue
            self._settle(message, outcome)
        return len(done)

    def _settle(self, message: Dict[str, Any], outcome: JobOutcome) -> None:
        if outcome.succeeded:
            self.source.ack(message)
        elif outcome.cancelled:
            # left unacknowledged so the broker hands it out again
            logger.info("[%s] Cancelled, leaving message for redelivery", outcome.job.upload_id)
        else:
            self.source.dead_letter(message, f"{outcome.error.stage}: {outcome.error}")

    def stop(self, cancel_inflight: bool = True) -> None:
        self._stop.set()
        if cancel_inflight:
            for _, _, cancel in list(self._inflight.values()):
                cancel.set()

    def shutdown(self, cancel_inflight: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        self.stop(cancel_inflight)
        logger.info("Waiting for %d running jobs to stop...", len(self._inflight))
        self.executor.shutdown(wait=True)
        self.reap()


def build_worker(settings: Settings) -> Worker:
    for tool in (settings.ffmpeg_path, settings.ffprobe_path):
        if shutil.which(tool) is None:
            raise ConfigurationError(f"{tool} is not installed or not in PATH")

    inbound = build_queue(settings, settings.inbound_queue, consume=True)
    outbound = build_queue(settings, settings.outbound_queue)
    dead_letter = None
    if settings.dead_letter_queue:
        dead_letter = build_queue(settings, settings.dead_letter_queue)

    try:
        store = get_job_store(settings)
    except (JobStoreError, ClientError, BotoCoreError, PyMongoError) as e:
        raise ConfigurationError(f"Cannot open job store: {e}") from e

    s3_client = get_s3_client(settings)
    pipeline = JobPipeline(
        transcoder=FFmpegTranscoder(
            settings.work_dir,
            ffmpeg_path=settings.ffmpeg_path,
            ffprobe_path=settings.ffprobe_path,
            preview_seconds=settings.preview_seconds,
            s3_client=s3_client,
        ),
        uploader=S3Uploader(s3_client, settings.output_bucket, settings.output_prefix),
        sink=ResultSink(outbound),
        work_dir=settings.work_dir,
        base_url=settings.public_base_url,
        store=store,
    )
    source = JobSource(inbound, dead_letter, timeout_ms=settings.poll_timeout_ms)
    return Worker(source, pipeline, max_workers=settings.max_workers)


def main() -> int:
    try:
        settings = load_settings()
    except ConfigurationError as e:
        setup_logging()
        logger.error("%s", e)
        return 1

    setup_logging(settings.log_level)
    logger.info("Starting transcode worker...")
    logger.info("Queue backend: %s", settings.queue_backend)
    logger.info("Inbound: %s, outbound: %s", settings.inbound_queue, settings.outbound_queue)

    try:
        worker = build_worker(settings)
    except ConfigurationError as e:
        logger.error("Startup failed: %s", e)
        return 1

    signal.signal(signal.SIGTERM, lambda signum, frame: worker.stop())
    try:
        worker.run()
    except KeyboardInterrupt:
        logger.info("Shutting down worker...")
    finally:
        worker.source.close()
        worker.pipeline.sink.close()
        if worker.pipeline.store is not None:
            worker.pipeline.store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())

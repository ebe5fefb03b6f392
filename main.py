import logging
from functools import lru_cache
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from kafka.errors import KafkaError

from config import Settings, load_settings
from db import JobStore, JobStoreError, get_job_store, utc_now
from queue_service import QueueWrapper, build_queue
from schema import JobRequest, JobStatus

logger = logging.getLogger(__name__)

app = FastAPI(title="transcode-worker")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# -------------------- Dependencies --------------------

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


@lru_cache(maxsize=1)
def get_inbound_queue() -> QueueWrapper:
    settings = get_settings()
    return build_queue(settings, settings.inbound_queue)


@lru_cache(maxsize=1)
def get_store() -> Optional[JobStore]:
    return get_job_store(get_settings())


def require_store(store: Optional[JobStore] = Depends(get_store)) -> JobStore:
    if store is None:
        raise HTTPException(status_code=503, detail="Job tracking is not enabled (DB_BACKEND=none)")
    return store


# -------------------- API Endpoints --------------------

@app.post("/jobs", status_code=202)
def enqueue_job(job: JobRequest,
                queue: QueueWrapper = Depends(get_inbound_queue),
                store: Optional[JobStore] = Depends(get_store)):
    if store is not None:
        try:
            store.record(job.upload_id, {
                "user_id": job.user_id,
                "file_name": job.file_name,
                "status": "queued",
                "stage": None,
                "error": None,
                "created_at": utc_now(),
            })
        except JobStoreError as e:
            raise HTTPException(status_code=500, detail=str(e))

    try:
        queue.send(job.model_dump(by_alias=True))
    except (KafkaError, RuntimeError, ClientError, BotoCoreError) as e:
        logger.error("[%s] Failed to queue job: %s", job.upload_id, e)
        if store is not None:
            try:
                store.record(job.upload_id, {"status": "failed", "error": f"Failed to queue job: {e}"})
            except JobStoreError as store_error:
                logger.warning("[%s] Job store update failed: %s", job.upload_id, store_error)
        raise HTTPException(status_code=500, detail=f"Failed to queue job: {e}")

    return {"upload_id": job.upload_id, "status": "queued"}


@app.get("/jobs/{upload_id}", response_model=JobStatus)
def get_job_status(upload_id: str, store: JobStore = Depends(require_store)):
    try:
        job = store.get(upload_id)
    except JobStoreError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@app.get("/jobs")
def list_jobs(limit: int = 10, skip: int = 0, store: JobStore = Depends(require_store)):
    try:
        jobs = store.list_jobs(limit=limit, skip=skip)
    except JobStoreError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"jobs": jobs, "count": len(jobs)}

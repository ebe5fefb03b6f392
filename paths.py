"""Deterministic layout of a job's working directory and its stored copy."""

import os

PREVIEW_FILE = "preview.mp4"
MASTER_PLAYLIST = "master.m3u8"
RENDITION_PLAYLIST = "index.m3u8"
LOG_FILE = "transcode.log"


def canonical_file(file_name: str) -> str:
    return f"{file_name}.mp4"


def job_dir(work_dir: str, file_name: str) -> str:
    return os.path.join(work_dir, file_name)


def canonical_path(work_dir: str, file_name: str) -> str:
    return os.path.join(job_dir(work_dir, file_name), canonical_file(file_name))


def preview_path(work_dir: str, file_name: str) -> str:
    return os.path.join(job_dir(work_dir, file_name), PREVIEW_FILE)


def master_playlist_path(work_dir: str, file_name: str) -> str:
    return os.path.join(job_dir(work_dir, file_name), MASTER_PLAYLIST)


def rendition_dir(work_dir: str, file_name: str, label: str) -> str:
    return os.path.join(job_dir(work_dir, file_name), label)


def log_path(work_dir: str, file_name: str) -> str:
    return os.path.join(job_dir(work_dir, file_name), LOG_FILE)


def storage_prefix(prefix: str, user_id: str, file_name: str) -> str:
    """Object key prefix that mirrors job_dir in the bucket."""
    return f"{prefix}{user_id}/{file_name}/"

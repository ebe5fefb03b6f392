"""Shared stubs for the transcoding pipeline tests."""

import json
import os
import threading

import pytest

import paths
from config import Settings, load_settings
from db import JobStore
from errors import PublishError, UploadError
from pipeline import JobPipeline
from schema import JobRequest
from transcode import Transcoder

BASE_URL = "https://cdn.example.com/videos"


def make_job(file_name: str = "clip42", upload_id: str = "v1", user_id: str = "u1") -> JobRequest:
    return JobRequest(user_id=user_id, upload_id=upload_id,
                      source_url="/tmp/in.mov", file_name=file_name)


def make_message(body, handle: str) -> dict:
    if isinstance(body, dict):
        body = json.dumps(body)
    return {"body": body, "receipt_handle": handle}


def inbound(file_name: str = "clip42", upload_id: str = "v1", user_id: str = "u1") -> dict:
    return {"UserId": user_id, "VideoUploadId": upload_id, "Url": "/tmp/in.mov",
            "FileName": file_name}


class StubTranscoder(Transcoder):
    """
    Writes small placeholder files where ffmpeg would. Steps listed in fail
    (either "step" or ("step", file_name)) report failure instead.
    """

    def __init__(self, work_dir, duration="12.5", size=1024, fail=(), calls=None):
        self.work_dir = work_dir
        self.duration = duration
        self.size = size
        self.fail = set(fail)
        self.calls = calls if calls is not None else []

    def _step(self, step, file_name):
        self.calls.append((step, file_name))
        return step in self.fail or (step, file_name) in self.fail

    def _write(self, path, data=b"x"):
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)

    def convert_to_mp4(self, source, file_name, cancel=None):
        if self._step("convert", file_name):
            return False, "unsupported codec"
        path = paths.canonical_path(self.work_dir, file_name)
        self._write(path, b"\0" * self.size)
        return True, path

    def gen_short_clip(self, canonical, file_name, cancel=None):
        if self._step("short_clip", file_name):
            return False, "clip failed"
        self._write(paths.preview_path(self.work_dir, file_name))
        return True, paths.preview_path(self.work_dir, file_name)

    def gen_renditions(self, canonical, file_name, cancel=None):
        if self._step("renditions", file_name):
            return False, "renditions failed"
        rendition = paths.rendition_dir(self.work_dir, file_name, "360p")
        self._write(os.path.join(rendition, paths.RENDITION_PLAYLIST))
        return True, paths.job_dir(self.work_dir, file_name)

    def gen_master_playlist(self, file_name):
        if self._step("master_playlist", file_name):
            return False, "playlist failed"
        self._write(paths.master_playlist_path(self.work_dir, file_name), b"#EXTM3U\n")
        return True, paths.master_playlist_path(self.work_dir, file_name)

    def get_duration(self, path):
        self.calls.append(("duration", os.path.basename(path)))
        return self.duration


class StubUploader:
    def __init__(self, calls=None, fail=False):
        self.calls = calls if calls is not None else []
        self.fail = fail
        self.uploaded = {}

    def upload_dir_and_remove(self, user_id, file_name, local_dir):
        self.calls.append(("upload", file_name))
        if self.fail:
            raise UploadError(f"bucket unavailable for {file_name}")
        files = []
        for root, _, names in os.walk(local_dir):
            for name in names:
                files.append(os.path.relpath(os.path.join(root, name), local_dir))
        self.uploaded[(user_id, file_name)] = sorted(files)
        for root, dirs, names in os.walk(local_dir, topdown=False):
            for name in names:
                os.unlink(os.path.join(root, name))
            for name in dirs:
                os.rmdir(os.path.join(root, name))
        os.rmdir(local_dir)
        return len(files)


class RecordingSink:
    def __init__(self, calls=None, fail=False):
        self.calls = calls if calls is not None else []
        self.fail = fail
        self.results = []

    def publish(self, result):
        self.calls.append(("publish", result.video_upload_id))
        if self.fail:
            raise PublishError("broker went away")
        self.results.append(result)
        return {}

    def close(self):
        pass


class FakeQueue:
    def __init__(self, messages=(), fail_send=False):
        self.messages = list(messages)
        self.fail_send = fail_send
        self.sent = []
        self.deleted = []
        self.requested = []
        self._lock = threading.Lock()

    def receive(self, max_messages=10, timeout_ms=1000):
        with self._lock:
            self.requested.append(max_messages)
            batch = self.messages[:max_messages]
            self.messages = self.messages[max_messages:]
        return batch

    def send(self, message, **kwargs):
        if self.fail_send:
            raise RuntimeError("SQS send failed: throttled")
        self.sent.append(message)
        return {"message_id": str(len(self.sent))}

    def delete(self, receipt_handle):
        self.deleted.append(receipt_handle)
        return True

    def close(self):
        pass


class FakeStore(JobStore):
    def __init__(self):
        self.jobs = {}
        self.history = []

    def record(self, upload_id, fields):
        self.history.append((upload_id, dict(fields)))
        self.jobs.setdefault(upload_id, {"upload_id": upload_id}).update(fields)

    def get(self, upload_id):
        return self.jobs.get(upload_id)

    def list_jobs(self, limit=10, skip=0):
        items = sorted(self.jobs.values(), key=lambda d: d.get("created_at") or "", reverse=True)
        return items[skip:skip + limit]


@pytest.fixture
def work_dir(tmp_path):
    return str(tmp_path / "work")


@pytest.fixture
def calls():
    return []


@pytest.fixture
def make_pipeline(work_dir, calls):
    def factory(transcoder=None, uploader=None, sink=None, store=None):
        return JobPipeline(
            transcoder=transcoder or StubTranscoder(work_dir, calls=calls),
            uploader=uploader or StubUploader(calls=calls),
            sink=sink or RecordingSink(calls=calls),
            work_dir=work_dir,
            base_url=BASE_URL,
            store=store,
        )
    return factory


@pytest.fixture
def load_env(monkeypatch):
    """Load Settings from exactly the given environment variables."""
    def load(values):
        for name in Settings.model_fields:
            monkeypatch.delenv(name.upper(), raising=False)
        for key, value in values.items():
            monkeypatch.setenv(key, value)
        return load_settings(env_file=None)
    return load

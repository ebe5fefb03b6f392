import logging
import os
import shutil
from abc import ABC, abstractmethod
from urllib.parse import quote

import boto3
from botocore.exceptions import BotoCoreError, ClientError

import paths
from errors import ConfigurationError, UploadError

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".mp4": "video/mp4",
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
}


# -------------------- Public URLs --------------------

def _object_url(base_url: str, user_id: str, file_name: str, name: str) -> str:
    # user ids are opaque; web URLs get them percent-encoded, s3:// URLs keep the raw key
    if base_url.startswith(("http://", "https://")):
        user_id = quote(user_id, safe="")
    return f"{base_url}/{user_id}/{file_name}/{name}"


def get_transcoded_url(base_url: str, user_id: str, file_name: str) -> str:
    return _object_url(base_url, user_id, file_name, paths.canonical_file(file_name))


def get_stream_url(base_url: str, user_id: str, file_name: str) -> str:
    return _object_url(base_url, user_id, file_name, paths.MASTER_PLAYLIST)


def get_preview_url(base_url: str, user_id: str, file_name: str) -> str:
    return _object_url(base_url, user_id, file_name, paths.PREVIEW_FILE)


# -------------------- S3 Client --------------------

def get_s3_client(settings):
    if not settings.aws_access_key or not settings.aws_secret_access_key:
        raise ConfigurationError(
            "AWS credentials not found. Please set AWS_ACCESS_KEY and AWS_SECRET_ACCESS_KEY"
        )

    client_kwargs = {
        "aws_access_key_id": settings.aws_access_key,
        "aws_secret_access_key": settings.aws_secret_access_key,
        "region_name": settings.aws_region,
    }
    if settings.aws_session_token:
        client_kwargs["aws_session_token"] = settings.aws_session_token

    return boto3.client("s3", **client_kwargs)


class StorageUploader(ABC):
    @abstractmethod
    def upload_dir_and_remove(self, user_id: str, file_name: str, local_dir: str) -> int:
        """Push local_dir to storage, then delete it. Returns the number of files sent."""


class S3Uploader(StorageUploader):
    # ffmpeg log stays on the worker
    SKIP_FILES = {paths.LOG_FILE}

    def __init__(self, client, bucket: str, prefix: str = ""):
        self.client = client
        self.bucket = bucket
        self.prefix = prefix

    def _files(self, local_dir: str):
        for root, _, files in os.walk(local_dir):
            for name in sorted(files):
                if name in self.SKIP_FILES:
                    continue
                full = os.path.join(root, name)
                yield full, os.path.relpath(full, local_dir).replace(os.sep, "/")

    def upload_dir_and_remove(self, user_id, file_name, local_dir):
        if not os.path.isdir(local_dir):
            raise UploadError(f"Nothing to upload: {local_dir} does not exist")

        key_prefix = paths.storage_prefix(self.prefix, user_id, file_name)
        count = 0
        try:
            for full, relative in self._files(local_dir):
                extra = {}
                content_type = CONTENT_TYPES.get(os.path.splitext(full)[1])
                if content_type:
                    extra["ExtraArgs"] = {"ContentType": content_type}
                self.client.upload_file(full, self.bucket, key_prefix + relative, **extra)
                count += 1
        except (ClientError, BotoCoreError, OSError) as e:
            raise UploadError(
                f"Upload of {local_dir} to s3://{self.bucket}/{key_prefix} failed: {e}"
            ) from e

        logger.info("Uploaded %d files to s3://%s/%s", count, self.bucket, key_prefix)
        shutil.rmtree(local_dir, ignore_errors=True)
        return count

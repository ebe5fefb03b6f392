import logging
import math
import os

from errors import MetadataError
from schema import DerivedMetadata
from transcode import Transcoder

logger = logging.getLogger(__name__)

# values ffprobe prints when a container has no usable duration
DURATION_SENTINELS = {"", "N/A", "nan"}


def get_size(path: str) -> str:
    try:
        return str(os.stat(path).st_size)
    except OSError as e:
        raise MetadataError(f"Failed to get file size of {path}: {e}") from e


def get_duration(path: str, transcoder: Transcoder) -> str:
    duration = transcoder.get_duration(path).strip()
    if duration in DURATION_SENTINELS:
        raise MetadataError(f"No duration reported for {path}")
    try:
        seconds = float(duration)
    except ValueError as e:
        raise MetadataError(f"Unreadable duration {duration!r} for {path}") from e
    if not math.isfinite(seconds) or seconds < 0:
        raise MetadataError(f"Unusable duration {duration!r} for {path}")
    return duration


def extract_metadata(path: str, transcoder: Transcoder) -> DerivedMetadata:
    size = get_size(path)
    duration = get_duration(path, transcoder)
    logger.debug("%s: %s bytes, %s seconds", path, size, duration)
    return DerivedMetadata(size_bytes=size, duration=duration)

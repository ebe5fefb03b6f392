"""
ffmpeg-backed transcoding capability.

The pipeline only depends on the Transcoder interface; every call returns
(success, message) where message is the output location on success and the
tail of the ffmpeg log on failure.
"""

import logging
import os
import re
import subprocess
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import NamedTuple, Optional
from urllib.parse import urlparse

from botocore.exceptions import BotoCoreError, ClientError

import paths

logger = logging.getLogger(__name__)


class Rendition(NamedTuple):
    label: str
    width: int
    height: int
    video_bitrate: str
    audio_bitrate: str
    bandwidth: int


RENDITION_LADDER = (
    Rendition("360p", 640, 360, "800k", "96k", 896_000),
    Rendition("720p", 1280, 720, "2800k", "128k", 2_928_000),
    Rendition("1080p", 1920, 1080, "5000k", "192k", 5_192_000),
)

HLS_SEGMENT_SECONDS = 6


class Transcoder(ABC):
    @abstractmethod
    def convert_to_mp4(self, source: str, file_name: str,
                       cancel: Optional[threading.Event] = None) -> tuple[bool, str]:
        pass

    @abstractmethod
    def gen_short_clip(self, canonical: str, file_name: str,
                       cancel: Optional[threading.Event] = None) -> tuple[bool, str]:
        pass

    @abstractmethod
    def gen_renditions(self, canonical: str, file_name: str,
                       cancel: Optional[threading.Event] = None) -> tuple[bool, str]:
        pass

    @abstractmethod
    def gen_master_playlist(self, file_name: str) -> tuple[bool, str]:
        pass

    @abstractmethod
    def get_duration(self, path: str) -> str:
        """Duration in decimal seconds, or an empty string if it cannot be probed."""


# -------------------- Utility Functions --------------------

def is_s3_path(path: str) -> bool:
    return path.startswith("s3://")


def parse_s3_url(s3_url: str) -> tuple[str, str]:
    parsed = urlparse(s3_url)
    return parsed.netloc, parsed.path.lstrip("/")


def parse_timestamp(value: str) -> float:
    """Parse HH:MM:SS.ms to seconds, 0.0 when malformed."""
    try:
        hours, minutes, seconds = value.split(":")
        return float(hours) * 3600 + float(minutes) * 60 + float(seconds)
    except ValueError:
        return 0.0


# -------------------- FFmpeg Runner --------------------

DURATION_PATTERN = re.compile(r"Duration: (\d{2}:\d{2}:\d{2}\.\d{2})")
TIME_PATTERN = re.compile(r"time=(\d{2}:\d{2}:\d{2}\.\d{2})")


def run_ffmpeg(command: list, label: str, log_file_path: str,
               cancel: Optional[threading.Event] = None) -> tuple[bool, str]:
    """Run one ffmpeg command, appending its stderr to log_file_path."""
    try:
        process = subprocess.Popen(
            command,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
        )
    except OSError as e:
        return False, f"could not start {command[0]}: {e}"

    tail = deque(maxlen=20)
    total = 0.0
    last_progress = 0
    cancelled = False

    with open(log_file_path, "a") as log_file:
        for line in process.stderr:
            log_file.write(line)
            tail.append(line)

            if cancel is not None and cancel.is_set():
                process.terminate()
                cancelled = True
                break

            if not total:
                match = DURATION_PATTERN.search(line)
                if match:
                    total = parse_timestamp(match.group(1))
                continue

            match = TIME_PATTERN.search(line)
            if match:
                progress = min(int(parse_timestamp(match.group(1)) / total * 100), 99)
                if progress >= last_progress + 25:
                    logger.debug("%s: %d%%", label, progress)
                    last_progress = progress

    process.stderr.close()
    process.wait()

    if cancelled:
        return False, f"{label} cancelled"
    if process.returncode == 0:
        return True, "Success"
    return False, "".join(tail)


class FFmpegTranscoder(Transcoder):
    def __init__(self, work_dir: str, ffmpeg_path: str = "ffmpeg",
                 ffprobe_path: str = "ffprobe", preview_seconds: int = 10,
                 s3_client=None):
        self.work_dir = work_dir
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.preview_seconds = preview_seconds
        self.s3_client = s3_client

    def _fetch_source(self, source: str, file_name: str) -> str:
        """Local path or URL that ffmpeg can read the source from."""
        if not is_s3_path(source):
            return source
        if self.s3_client is None:
            raise ValueError(f"no S3 client configured to fetch {source}")
        bucket, key = parse_s3_url(source)
        local = os.path.join(paths.job_dir(self.work_dir, file_name),
                             "source" + os.path.splitext(key)[1])
        self.s3_client.download_file(bucket, key, local)
        return local

    def convert_to_mp4(self, source, file_name, cancel=None):
        os.makedirs(paths.job_dir(self.work_dir, file_name), exist_ok=True)
        output = paths.canonical_path(self.work_dir, file_name)

        try:
            local_source = self._fetch_source(source, file_name)
        except (ClientError, BotoCoreError, OSError, ValueError) as e:
            return False, f"could not fetch {source}: {e}"

        command = [
            self.ffmpeg_path, "-y", "-i", local_source,
            "-c:v", "libx264",
            "-pix_fmt", "yuv420p",
            "-profile:v", "high",
            "-level", "4.2",
            "-movflags", "+faststart",
            "-c:a", "aac",
            "-b:a", "192k",
            "-progress", "pipe:2",
            output,
        ]
        ok, message = run_ffmpeg(command, f"{file_name} convert",
                                 paths.log_path(self.work_dir, file_name), cancel)

        if local_source != source and os.path.exists(local_source):
            os.unlink(local_source)
        return (True, output) if ok else (False, message)

    def gen_short_clip(self, canonical, file_name, cancel=None):
        output = paths.preview_path(self.work_dir, file_name)
        command = [
            self.ffmpeg_path, "-y", "-ss", "0", "-i", canonical,
            "-t", str(self.preview_seconds),
            "-c:v", "libx264",
            "-preset", "fast",
            "-crf", "28",
            "-an",
            "-movflags", "+faststart",
            "-progress", "pipe:2",
            output,
        ]
        ok, message = run_ffmpeg(command, f"{file_name} preview",
                                 paths.log_path(self.work_dir, file_name), cancel)
        return (True, output) if ok else (False, message)

    def gen_renditions(self, canonical, file_name, cancel=None):
        for rung in RENDITION_LADDER:
            out_dir = paths.rendition_dir(self.work_dir, file_name, rung.label)
            os.makedirs(out_dir, exist_ok=True)
            command = [
                self.ffmpeg_path, "-y", "-i", canonical,
                "-vf", f"scale=-2:{rung.height}",
                "-c:v", "libx264",
                "-preset", "fast",
                "-b:v", rung.video_bitrate,
                "-maxrate", rung.video_bitrate,
                "-c:a", "aac",
                "-b:a", rung.audio_bitrate,
                "-hls_time", str(HLS_SEGMENT_SECONDS),
                "-hls_playlist_type", "vod",
                "-hls_segment_filename", os.path.join(out_dir, "segment_%03d.ts"),
                "-progress", "pipe:2",
                os.path.join(out_dir, paths.RENDITION_PLAYLIST),
            ]
            ok, message = run_ffmpeg(command, f"{file_name} {rung.label}",
                                     paths.log_path(self.work_dir, file_name), cancel)
            if not ok:
                return False, f"{rung.label}: {message}"
        return True, paths.job_dir(self.work_dir, file_name)

    def gen_master_playlist(self, file_name):
        lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
        for rung in RENDITION_LADDER:
            playlist = paths.rendition_dir(self.work_dir, file_name, rung.label)
            if not os.path.exists(os.path.join(playlist, paths.RENDITION_PLAYLIST)):
                return False, f"missing {rung.label} rendition playlist"
            lines.append(
                f"#EXT-X-STREAM-INF:BANDWIDTH={rung.bandwidth},"
                f"RESOLUTION={rung.width}x{rung.height}"
            )
            lines.append(f"{rung.label}/{paths.RENDITION_PLAYLIST}")

        output = paths.master_playlist_path(self.work_dir, file_name)
        try:
            with open(output, "w") as f:
                f.write("\n".join(lines) + "\n")
        except OSError as e:
            return False, str(e)
        return True, output

    def get_duration(self, path):
        try:
            result = subprocess.run(
                [
                    self.ffprobe_path, "-v", "error",
                    "-show_entries", "format=duration",
                    "-of", "default=noprint_wrappers=1:nokey=1",
                    path,
                ],
                capture_output=True,
                text=True,
                timeout=60,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("ffprobe failed for %s: %s", path, e)
            return ""
        if result.returncode != 0:
            logger.warning("ffprobe failed for %s: %s", path, result.stderr.strip())
            return ""
        return result.stdout.strip()

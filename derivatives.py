import logging
import threading
from typing import Optional

from errors import GenerationError, JobCancelledError
from transcode import Transcoder

logger = logging.getLogger(__name__)


class DerivativeGenerator:
    """
    Produces the preview clip, the bitrate ladder and the master playlist
    from a job's canonical file. The three outputs form one unit: the first
    failure stops generation and fails the stage.
    """

    def __init__(self, transcoder: Transcoder):
        self.transcoder = transcoder

    def generate(self, canonical: str, file_name: str,
                 cancel: Optional[threading.Event] = None) -> None:
        steps = (
            ("short clip", lambda: self.transcoder.gen_short_clip(canonical, file_name, cancel)),
            ("renditions", lambda: self.transcoder.gen_renditions(canonical, file_name, cancel)),
            ("master playlist", lambda: self.transcoder.gen_master_playlist(file_name)),
        )
        for name, step in steps:
            if cancel is not None and cancel.is_set():
                raise JobCancelledError(f"cancelled before {name} of {file_name}")
            ok, message = step()
            if not ok:
                if cancel is not None and cancel.is_set():
                    raise JobCancelledError(f"cancelled during {name} of {file_name}")
                raise GenerationError(f"{name} failed for {file_name}: {message}")
            logger.debug("%s: %s ready", file_name, name)

"""
Media merge stage: mux a synthesized audio clip into a video.

The video stream is copied untouched, audio is re-encoded to AAC and the
result is cut to the shorter input. Inputs the stage downloaded or decoded
are always removed before returning; the merged output is handed to the
caller, who deletes it with transcode.cleanup_media_file once consumed.
"""

import os
import asyncio
import logging
from typing import Optional, Union

from . import transcode
from .models import Completed, ErrorKind, Failed
from .transcode import MediaError, MediaRef

logger = logging.getLogger(__name__)

AUDIO_BITRATE = "192k"


def _audio_ext(ref: MediaRef) -> str:
    if isinstance(ref, str):
        head = ref[:64].lower()
        if head.startswith("data:audio/wav") or head.startswith("data:audio/x-wav"):
            return "wav"
        path = ref.split("?", 1)[0].lower()
        if not ref.startswith("data:") and path.endswith((".wav", ".m4a", ".aac", ".ogg")):
            return path.rsplit(".", 1)[-1]
    return "mp3"


def merge_args(video_path: str, audio_path: str, output_path: str) -> list[str]:
    return [
        "-i", video_path,
        "-i", audio_path,
        "-map", "0:v:0",
        "-map", "1:a:0",
        "-c:v", "copy",
        "-c:a", "aac",
        "-b:a", AUDIO_BITRATE,
        "-shortest",
        output_path,
    ]


async def merge_media(
    video_ref: MediaRef,
    audio_ref: MediaRef,
    temp_dir: Optional[str] = None,
    output_format: str = "mp4",
) -> Union[Completed, Failed]:
    """
    Merge a video and an audio asset into one file.

    Args:
        video_ref:     Video reference (URL, local or /temp/ path, data URI, bytes).
        audio_ref:     Audio reference, typically a data URI from the sound stage.
        temp_dir:      Overrides MEDIA_TEMP_DIR.
        output_format: Container extension of the merged file.

    Returns:
        Completed with the local path of the merged file and its probed
        duration, or Failed(ErrorKind.MERGE).
    """
    session_id = transcode.new_session_id()
    video_dest = transcode.temp_path(session_id, "video", "mp4", temp_dir)
    audio_dest = transcode.temp_path(session_id, "audio", _audio_ext(audio_ref), temp_dir)
    output_path = transcode.temp_path(session_id, "merged", output_format, temp_dir)
    succeeded = False

    logger.info(f"Merge {session_id}: starting")
    try:
        # Both fetches run to completion before any cleanup happens
        results = await asyncio.gather(
            transcode.materialize(video_ref, video_dest, temp_dir),
            transcode.materialize(audio_ref, audio_dest, temp_dir),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        (video_path, _), (audio_path, _) = results

        await transcode.run_ffmpeg(merge_args(video_path, audio_path, output_path))

        if not os.path.exists(output_path) or os.path.getsize(output_path) == 0:
            raise MediaError("ffmpeg produced no output")

        duration = await transcode.probe_duration(output_path)
        succeeded = True
        logger.info(f"Merge {session_id}: completed ({duration}s)")
        return Completed(asset_ref=output_path, duration_seconds=duration)

    except (MediaError, OSError) as e:
        logger.error(f"Merge {session_id} failed: {e}")
        return Failed(error_kind=ErrorKind.MERGE, message=f"Merge failed: {e}")
    except Exception as e:
        logger.error(f"Merge {session_id} raised unexpectedly: {e}", exc_info=True)
        return Failed(error_kind=ErrorKind.MERGE, message=f"Merge failed: {e}")

    finally:
        transcode.remove_files([video_dest, audio_dest])
        if not succeeded:
            transcode.remove_files([output_path])

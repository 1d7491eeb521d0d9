"""
Loop stage: replicate a finished clip end to end.

Uses the ffmpeg concat demuxer in stream-copy mode over a manifest listing
the same file N times, so nothing is re-encoded.
"""

import os
import logging
from typing import Optional, Union

from . import transcode
from .models import Completed, ErrorKind, Failed
from .transcode import MediaError

logger = logging.getLogger(__name__)


def _escape(path: str) -> str:
    return path.replace("'", "'\\''")


def build_manifest(path: str, multiplier: int) -> str:
    line = f"file '{_escape(os.path.abspath(path))}'"
    return "\n".join([line] * multiplier) + "\n"


async def loop_media(
    asset_ref: str,
    multiplier: int,
    temp_dir: Optional[str] = None,
    input_duration: Optional[float] = None,
) -> Union[Completed, Failed]:
    """
    Repeat an asset multiplier times.

    A multiplier of 1 or less is the identity: the same reference comes back
    and no subprocess runs.

    Args:
        asset_ref:      The asset to repeat.
        multiplier:     Number of copies.
        temp_dir:       Overrides MEDIA_TEMP_DIR.
        input_duration: Known duration of the asset; probed when omitted.

    Returns:
        Completed with the looped file path and a duration of input x N,
        or Failed(ErrorKind.LOOP).
    """
    if multiplier <= 1:
        return Completed(asset_ref=asset_ref, duration_seconds=input_duration)

    session_id = transcode.new_session_id()
    input_dest = transcode.temp_path(session_id, "input", "mp4", temp_dir)
    manifest_path = transcode.temp_path(session_id, "manifest", "txt", temp_dir)
    output_path = transcode.temp_path(session_id, "looped", "mp4", temp_dir)
    succeeded = False

    logger.info(f"Loop {session_id}: {multiplier}x")
    try:
        input_path, _ = await transcode.materialize(asset_ref, input_dest, temp_dir)

        with open(manifest_path, "w") as f:
            f.write(build_manifest(input_path, multiplier))

        await transcode.run_ffmpeg([
            "-f", "concat",
            "-safe", "0",
            "-i", manifest_path,
            "-c", "copy",
            output_path,
        ])

        if not os.path.exists(output_path) or os.path.getsize(output_path) == 0:
            raise MediaError("ffmpeg produced no output")

        base = input_duration if input_duration is not None else await transcode.probe_duration(input_path)
        duration = base * multiplier if base is not None else None
        succeeded = True
        logger.info(f"Loop {session_id}: completed ({duration}s)")
        return Completed(asset_ref=output_path, duration_seconds=duration)

    except (MediaError, OSError) as e:
        logger.error(f"Loop {session_id} failed: {e}")
        return Failed(error_kind=ErrorKind.LOOP, message=f"Loop failed: {e}")
    except Exception as e:
        logger.error(f"Loop {session_id} raised unexpectedly: {e}", exc_info=True)
        return Failed(error_kind=ErrorKind.LOOP, message=f"Loop failed: {e}")

    finally:
        transcode.remove_files([input_dest, manifest_path])
        if not succeeded:
            transcode.remove_files([output_path])

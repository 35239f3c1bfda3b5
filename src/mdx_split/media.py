"""
Audio extraction from video containers through the external ffmpeg tool.
"""

import asyncio
import logging
import os
import subprocess

from .exceptions import DecodeFailure
from .mdx_lib import SAMPLE_RATE

VIDEO_EXTENSIONS = {".mp4", ".mov", ".mkv", ".webm", ".avi", ".m4v"}

logger = logging.getLogger(__name__)


def is_video_path(path):
    return os.path.splitext(str(path))[1].lower() in VIDEO_EXTENSIONS


def check_ffmpeg_installed(ffmpeg="ffmpeg"):
    """Check if ffmpeg is installed."""
    try:
        subprocess.run([ffmpeg, "-version"], capture_output=True, check=True)
        return True
    except (subprocess.CalledProcessError, FileNotFoundError):
        return False


async def extract_audio(path, ffmpeg="ffmpeg"):
    """
    Extract the audio track of a video file as a stereo 44.1 kHz WAV blob.

    Args:
        path (str): Video file path
        ffmpeg (str): ffmpeg executable

    Returns:
        bytes: WAV file contents
    """
    cmd = [
        ffmpeg,
        "-nostdin",
        "-loglevel", "error",
        "-i", str(path),
        "-vn",
        "-ac", "2",
        "-ar", str(SAMPLE_RATE),
        "-f", "wav",
        "pipe:1",
    ]
    logger.info(f"Extracting audio from {path}")
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    except FileNotFoundError as e:
        raise DecodeFailure(f"Audio extraction requires ffmpeg ({ffmpeg} not found)") from e

    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip()
        raise DecodeFailure(f"ffmpeg could not extract audio from {path}: {detail}")
    if not stdout:
        raise DecodeFailure(f"ffmpeg produced no audio for {path}")
    return stdout

""" This file contains the Separator class, which splits a stereo mix into instrumental and vocal stems. """

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional

from .architectures.mdx_separator import MDXSeparator
from .config import load_settings, validate_settings
from .exceptions import SeparationCancelled, SeparationError
from .mdx_lib import FFT_SIZE, SAMPLE_RATE
from .mdx_lib.spec_utils import (
    Chunk,
    StereoSignal,
    decode_audio_to_stereo,
    encode_wav_stereo,
    invert_stem,
    load_audio,
    merge_chunks,
    save_audio,
    split_into_chunks,
)
from .media import check_ffmpeg_installed, extract_audio, is_video_path
from .model_gateway import create_gateway
from .progress import (
    STAGE_DOWNLOAD,
    STAGE_ENCODE,
    STAGE_EXTRACT,
    STAGE_SEPARATE,
    JobState,
    ProgressPublisher,
    scale,
)

INSTRUMENTAL_STEM = "Instrumental"
VOCALS_STEM = "Vocals"


@dataclass
class SeparationResult:
    state: JobState
    vocals: Optional[bytes] = None
    instrumental: Optional[bytes] = None
    error: Optional[Exception] = None
    # Decoded stems keyed by stem name, kept for writing to disk
    stems: Optional[Dict[str, StereoSignal]] = None

    @property
    def ok(self):
        return self.state is JobState.DONE


class Separator:
    """
    The Separator class splits a mixed stereo recording into an instrumental stem,
    estimated by the MDX-Net model, and a vocal stem, computed as the residual
    ``mix - instrumental`` in the time domain.

    The Separator owns the logging setup, the settings and one ModelGateway that
    is shared by every job it creates. Per-chunk model inference is delegated to
    MDXSeparator; this class sequences the stages of a job (model load, audio
    extraction, chunked separation, merge and encode), publishes progress and
    honours cancellation between chunks.

    Common Attributes:
        settings (dict): Effective settings, see mdx_split.config.
        gateway (ModelGateway): Model lifecycle owner, injectable for tests.
        chunk_samples (int): Length of a separation window in samples.
        overlap_samples (int): Crossfade length between windows in samples.
    """

    def __init__(
        self,
        gateway=None,
        log_level=None,
        log_formatter=None,
        model_file_dir=None,
        config_path=None,
        settings=None,
        mdx_params=None,
    ):
        """Initialize the separator. ``log_level`` defaults to the ``log_level`` setting."""
        if settings is None:
            overrides = {}
            if model_file_dir is not None:
                overrides["model_file_dir"] = model_file_dir
            if mdx_params is not None:
                overrides["mdx_params"] = mdx_params
            settings = load_settings(config_path, overrides)
        else:
            validate_settings(settings)
        self.settings = settings

        if log_level is None:
            log_level = logging.getLevelName(settings["log_level"])

        # Package logger: also covers the gateway and architecture modules
        self.logger = logging.getLogger("mdx_split")
        self.logger.setLevel(log_level)
        self.log_level = log_level
        self.log_formatter = log_formatter

        self.log_handler = logging.StreamHandler()

        if self.log_formatter is None:
            self.log_formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(module)s - %(message)s")

        self.log_handler.setFormatter(self.log_formatter)

        if not self.logger.hasHandlers():
            self.logger.addHandler(self.log_handler)

        mdx_params = settings["mdx_params"]
        self.chunk_samples = int(round(mdx_params["chunk_duration"] * SAMPLE_RATE))
        self.overlap_samples = int(round(mdx_params["overlap_duration"] * SAMPLE_RATE))
        if self.chunk_samples < FFT_SIZE:
            raise ValueError(f"The chunk_duration must cover at least {FFT_SIZE} samples.")

        self.gateway = gateway if gateway is not None else create_gateway(settings)
        self.logger.info(f"Separator using model directory: {settings['model_file_dir']}")

        self.ffmpeg_available = check_ffmpeg_installed()
        if not self.ffmpeg_available:
            self.logger.warning("FFmpeg is not installed. Audio extraction from video files will fail.")

        self.model_instance = MDXSeparator(
            self.gateway,
            {
                "sample_rate": SAMPLE_RATE,
                "n_fft": mdx_params["n_fft"],
                "hop_length": mdx_params["hop_length"],
                "segment_size": mdx_params["segment_size"],
                "logger": self.logger,
            },
        )

    def create_job(self, source, progress=None):
        """Create a job for ``source`` (audio bytes, an audio file path or a video file path)."""
        return SeparationJob(self, source, progress)

    async def separate(self, source, progress=None):
        """Run a separation job to completion and return its SeparationResult."""
        return await self.create_job(source, progress).run()

    async def load_model(self, progress=None):
        """Load the model without separating anything, e.g. to warm the cache."""
        publisher = ProgressPublisher(progress)
        await self.gateway.load(lambda pct, message: publisher.publish(STAGE_DOWNLOAD, scale(STAGE_DOWNLOAD, pct), message))

    async def load_source(self, source):
        """
        Decode a job source to stereo PCM.

        Args:
            source: Encoded audio bytes, an audio file path or a video file path

        Returns:
            StereoSignal: Decoded mix at 44.1 kHz
        """
        if isinstance(source, (bytes, bytearray, memoryview)):
            return await asyncio.to_thread(decode_audio_to_stereo, bytes(source))

        if is_video_path(source):
            if not self.ffmpeg_available:
                self.logger.warning(f"Extracting audio from {source} without a detected ffmpeg install")
            data = await extract_audio(source)
            return await asyncio.to_thread(decode_audio_to_stereo, data)

        return await asyncio.to_thread(load_audio, str(source))

    async def separate_signal(self, signal, publisher=None, check_cancelled=None):
        """
        Separate a decoded signal.

        Args:
            signal (StereoSignal): Decoded mix
            publisher (ProgressPublisher): Receives per-chunk progress
            check_cancelled (callable): Called before every chunk, raises SeparationCancelled to stop

        Returns:
            tuple: (instrumental, vocals) as StereoSignal
        """
        publisher = publisher or ProgressPublisher()

        left_chunks = split_into_chunks(signal.left, self.chunk_samples, self.overlap_samples)
        right_chunks = split_into_chunks(signal.right, self.chunk_samples, self.overlap_samples)
        n_chunks = len(left_chunks)
        self.logger.info(f"Separating {signal.duration:.1f}s of audio in {n_chunks} chunk(s)")

        instrumental_left = []
        instrumental_right = []
        for c, (left_chunk, right_chunk) in enumerate(zip(left_chunks, right_chunks)):
            if check_cancelled is not None:
                check_cancelled()

            publisher.publish(
                STAGE_SEPARATE,
                scale(STAGE_SEPARATE, c / n_chunks * 100),
                f"Separating... ({c + 1}/{n_chunks})",
            )
            left, right = await self.model_instance.process_chunk(left_chunk.samples, right_chunk.samples)
            instrumental_left.append(Chunk(left_chunk.offset, left))
            instrumental_right.append(Chunk(right_chunk.offset, right))

        publisher.publish(STAGE_SEPARATE, scale(STAGE_SEPARATE, 100), "Separation complete")

        return await asyncio.to_thread(self._merge_stems, signal, instrumental_left, instrumental_right)

    def _merge_stems(self, signal, instrumental_left, instrumental_right):
        instrumental = StereoSignal(
            merge_chunks(instrumental_left, len(signal), self.overlap_samples),
            merge_chunks(instrumental_right, len(signal), self.overlap_samples),
        )
        vocals = StereoSignal(
            invert_stem(signal.left, instrumental.left),
            invert_stem(signal.right, instrumental.right),
        )
        return instrumental, vocals

    def get_stem_output_path(self, output_dir, base_name, stem_name, custom_output_names=None):
        """Get the output path for a stem."""
        if custom_output_names and stem_name in custom_output_names:
            filename = custom_output_names[stem_name]
        else:
            filename = f"{base_name}_{stem_name}.wav"
        return os.path.join(output_dir, filename)

    def save_outputs(self, result, output_dir, base_name, custom_output_names=None):
        """
        Write the stems of a finished job to disk.

        Args:
            result (SeparationResult): Result of a job in the done state
            output_dir (str): Directory to write to, created if missing
            base_name (str): Prefix of the default file names
            custom_output_names (dict): Optional file name per stem ("Instrumental", "Vocals")

        Returns:
            list: Paths written, instrumental first
        """
        if not result.ok:
            raise ValueError(f"Cannot save outputs of a job in state {result.state.value}")

        os.makedirs(output_dir, exist_ok=True)
        output_files = []
        for stem_name in (INSTRUMENTAL_STEM, VOCALS_STEM):
            stem = result.stems[stem_name]
            path = self.get_stem_output_path(output_dir, base_name, stem_name, custom_output_names)
            self.logger.info(f"Saving {stem_name} stem to {path}...")
            save_audio(path, stem.left, stem.right, sr=stem.sample_rate)
            output_files.append(path)
        return output_files


class SeparationJob:
    """
    One run of the separation pipeline.

    States advance idle -> loading-model -> extracting-audio -> separating ->
    encoding -> done. Failures end in ``failed`` and a cancellation request is
    honoured at the next stage boundary or chunk, ending in ``cancelled``.
    """

    def __init__(self, separator, source, progress=None):
        self.separator = separator
        self.source = source
        self.publisher = ProgressPublisher(progress)
        self.state = JobState.IDLE
        self._cancel_requested = False
        self.logger = separator.logger

    @property
    def events(self):
        return self.publisher.events

    def cancel(self):
        """Request cancellation. The job stops at the next checked boundary."""
        self._cancel_requested = True

    def _check_cancelled(self):
        if self._cancel_requested:
            raise SeparationCancelled()

    def _enter(self, state):
        self.logger.debug(f"Job state {self.state.value} -> {state.value}")
        self.state = state

    def _publish(self, stage, percent, message):
        self.publisher.publish(stage, percent, message)

    async def run(self):
        """
        Execute the job.

        Returns:
            SeparationResult: done with both WAV blobs, failed with the error, or cancelled
        """
        if self.state is not JobState.IDLE:
            raise RuntimeError(f"Job already started (state {self.state.value})")

        try:
            self._check_cancelled()
            self._enter(JobState.LOADING_MODEL)
            self._publish(STAGE_DOWNLOAD, 0, "Preparing AI model...")
            await self.separator.gateway.load(
                lambda pct, message: self._publish(STAGE_DOWNLOAD, scale(STAGE_DOWNLOAD, pct), message)
            )
            self._publish(STAGE_DOWNLOAD, scale(STAGE_DOWNLOAD, 100), "Model ready")

            self._check_cancelled()
            self._enter(JobState.EXTRACTING_AUDIO)
            self._publish(STAGE_EXTRACT, scale(STAGE_EXTRACT, 0), "Extracting audio...")
            signal = await self.separator.load_source(self.source)
            self._publish(STAGE_EXTRACT, scale(STAGE_EXTRACT, 100), f"Decoded {signal.duration:.1f}s of audio")

            self._check_cancelled()
            self._enter(JobState.SEPARATING)
            instrumental, vocals = await self.separator.separate_signal(signal, self.publisher, self._check_cancelled)

            self._check_cancelled()
            self._enter(JobState.ENCODING)
            self._publish(STAGE_ENCODE, scale(STAGE_ENCODE, 0), "Encoding WAV...")
            vocals_wav = await asyncio.to_thread(encode_wav_stereo, vocals.left, vocals.right)
            self._publish(STAGE_ENCODE, scale(STAGE_ENCODE, 50), "Encoded vocals")
            instrumental_wav = await asyncio.to_thread(encode_wav_stereo, instrumental.left, instrumental.right)
            self._publish(STAGE_ENCODE, scale(STAGE_ENCODE, 100), "Encoding complete")

            self._enter(JobState.DONE)
            self.logger.info("Separation completed.")
            return SeparationResult(
                JobState.DONE,
                vocals=vocals_wav,
                instrumental=instrumental_wav,
                stems={INSTRUMENTAL_STEM: instrumental, VOCALS_STEM: vocals},
            )

        except SeparationCancelled:
            self.logger.info(f"Separation cancelled during {self.state.value}")
            self._enter(JobState.CANCELLED)
            return SeparationResult(JobState.CANCELLED)

        except SeparationError as e:
            self.logger.error(f"Separation failed during {self.state.value}: {e}")
            self._enter(JobState.FAILED)
            return SeparationResult(JobState.FAILED, error=e)

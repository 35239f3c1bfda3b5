"""
Audio utilities for MDX processing: PCM decode/encode, chunk split/merge and stem inversion.
"""

import io
from dataclasses import dataclass
from typing import List, NamedTuple

import numpy as np
import librosa
import soundfile as sf

from ..exceptions import DecodeFailure
from .fft import FFT_SIZE

SAMPLE_RATE = 44100
CHUNK_DURATION = 30
OVERLAP_DURATION = 2


def _frozen(samples):
    array = np.array(samples, dtype=np.float32)
    array.flags.writeable = False
    return array


@dataclass(frozen=True)
class StereoSignal:
    """Immutable pair of float32 channels at a fixed sample rate."""

    left: np.ndarray
    right: np.ndarray
    sample_rate: int = SAMPLE_RATE

    def __post_init__(self):
        left = _frozen(self.left)
        right = _frozen(self.right)
        if left.ndim != 1 or left.shape != right.shape:
            raise ValueError(f"Channels must be 1-D and equally long, got {left.shape} and {right.shape}")
        object.__setattr__(self, "left", left)
        object.__setattr__(self, "right", right)

    def __len__(self):
        return self.left.shape[0]

    @property
    def duration(self):
        return len(self) / self.sample_rate


class Chunk(NamedTuple):
    offset: int
    samples: np.ndarray


def decode_audio_to_stereo(data, sample_rate=SAMPLE_RATE):
    """
    Decode an audio blob to stereo float PCM.

    Decoding is delegated to librosa (soundfile backend). Mono sources are
    duplicated to both channels; sources with more than two channels keep
    channels 0 and 1.

    Args:
        data (bytes): Encoded audio file contents
        sample_rate (int): Target sample rate

    Returns:
        StereoSignal: Decoded channels
    """
    if not data:
        raise DecodeFailure("No audio data supplied")

    try:
        audio, _ = librosa.load(io.BytesIO(data), sr=sample_rate, mono=False)
    except Exception as e:
        raise DecodeFailure(f"Unable to decode audio: {e}") from e

    if audio.size == 0:
        raise DecodeFailure("Decoded audio contains no samples")
    if audio.ndim == 1:
        return StereoSignal(audio, audio, sample_rate)
    if audio.shape[0] == 1:
        return StereoSignal(audio[0], audio[0], sample_rate)
    return StereoSignal(audio[0], audio[1], sample_rate)


def load_audio(file_path, sr=SAMPLE_RATE):
    """
    Load an audio file as stereo float PCM.

    Args:
        file_path (str): Path to audio file
        sr (int): Sample rate

    Returns:
        StereoSignal: Decoded channels
    """
    try:
        with open(file_path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise DecodeFailure(f"Unable to read audio file {file_path}: {e}") from e
    return decode_audio_to_stereo(data, sample_rate=sr)


def _to_int16(samples):
    samples = np.nan_to_num(np.asarray(samples, dtype=np.float64), nan=0.0)
    clamped = np.clip(samples, -1.0, 1.0)
    # Asymmetric scaling: -1.0 maps to -32768, +1.0 maps to 32767
    scaled = np.where(clamped < 0, clamped * 0x8000, clamped * 0x7FFF)
    return np.trunc(scaled).astype("<i2")


def _interleave(left, right):
    if len(left) != len(right):
        raise ValueError(f"Channel lengths differ: {len(left)} != {len(right)}")
    return np.stack([_to_int16(left), _to_int16(right)], axis=1)


def encode_wav_stereo(left, right, sample_rate=SAMPLE_RATE):
    """
    Encode two channels as a 16-bit PCM stereo WAV file.

    Args:
        left (np.ndarray): Left channel samples
        right (np.ndarray): Right channel samples
        sample_rate (int): Sample rate written to the header

    Returns:
        bytes: 44-byte RIFF header followed by interleaved little-endian samples
    """
    buffer = io.BytesIO()
    sf.write(buffer, _interleave(left, right), sample_rate, format="WAV", subtype="PCM_16")
    return buffer.getvalue()


def save_audio(file_path, left, right, sr=SAMPLE_RATE):
    """
    Save a stereo 16-bit WAV file.

    Args:
        file_path (str): Path to save audio file
        left (np.ndarray): Left channel samples
        right (np.ndarray): Right channel samples
        sr (int): Sample rate
    """
    sf.write(file_path, _interleave(left, right), sr, format="WAV", subtype="PCM_16")


def split_into_chunks(audio, chunk_samples=CHUNK_DURATION * SAMPLE_RATE, overlap_samples=OVERLAP_DURATION * SAMPLE_RATE) -> List[Chunk]:
    """
    Split a long signal into overlapping windows.

    Args:
        audio (np.ndarray): Mono samples
        chunk_samples (int): Window length
        overlap_samples (int): Samples shared by adjacent windows

    Returns:
        list: Chunks in order, each recording its sample offset
    """
    audio = np.asarray(audio, dtype=np.float32)
    if len(audio) <= chunk_samples:
        return [Chunk(0, audio)]

    step = chunk_samples - overlap_samples
    chunks = []
    pos = 0
    while pos < len(audio):
        end = min(pos + chunk_samples, len(audio))
        samples = audio[pos:end]
        if len(samples) < FFT_SIZE:
            samples = np.concatenate([samples, np.zeros(FFT_SIZE - len(samples), dtype=np.float32)])
        chunks.append(Chunk(pos, samples))

        if end >= len(audio):
            break
        pos += step

    return chunks


def merge_chunks(chunks, total_length, overlap_samples=OVERLAP_DURATION * SAMPLE_RATE):
    """
    Merge processed chunks back into one signal with a linear crossfade.

    Args:
        chunks (list): Chunks as returned by :func:`split_into_chunks`, samples replaced by results
        total_length (int): Length of the merged signal
        overlap_samples (int): Crossfade length

    Returns:
        np.ndarray: float32 merged samples
    """
    if len(chunks) == 1:
        return np.array(chunks[0].samples[:total_length], dtype=np.float32)

    output = np.zeros(total_length, dtype=np.float64)
    weight = np.zeros(total_length, dtype=np.float64)

    for c, (offset, samples) in enumerate(chunks):
        length = min(len(samples), total_length - offset)
        if length <= 0:
            continue

        i = np.arange(length, dtype=np.float64)
        w = np.ones(length, dtype=np.float64)
        if c > 0:
            ramp_in = i < overlap_samples
            w[ramp_in] = i[ramp_in] / overlap_samples
        if c < len(chunks) - 1:
            ramp_out = i >= length - overlap_samples
            w[ramp_out] = (length - i[ramp_out]) / overlap_samples

        output[offset:offset + length] += samples[:length] * w
        weight[offset:offset + length] += w

    covered = weight > 1e-8
    output[covered] /= weight[covered]
    return output.astype(np.float32)


def invert_stem(mix, source):
    """
    Residual stem as the time-domain difference ``mix - source``.

    Args:
        mix (np.ndarray): Original mix samples
        source (np.ndarray): Estimated stem samples

    Returns:
        np.ndarray: float32 residual, not clamped
    """
    return (np.asarray(mix, dtype=np.float32) - np.asarray(source, dtype=np.float32)).astype(np.float32)

"""Module for separating audio sources using MDX architecture models."""

import asyncio

import numpy as np

from ..mdx_lib import DIM_F, FFT_SIZE, NUM_BINS, SEGMENT_SIZE
from ..mdx_lib.stft import STFT, ComplexSpectrogram
from .common_separator import CommonSeparator


def pack_segment(left_spec, right_spec, start):
    """
    Build the model input for frames ``start .. start + SEGMENT_SIZE``.

    Layout is [1, 4, DIM_F, SEGMENT_SIZE] with channels
    [left_real, left_imag, right_real, right_imag]; the Nyquist bin is not sent.

    Args:
        left_spec (ComplexSpectrogram): Left channel, at least ``start + SEGMENT_SIZE`` frames
        right_spec (ComplexSpectrogram): Right channel
        start (int): First frame of the segment

    Returns:
        np.ndarray: C-contiguous float32 tensor
    """
    stop = start + SEGMENT_SIZE
    planes = (
        left_spec.real[start:stop, :DIM_F],
        left_spec.imag[start:stop, :DIM_F],
        right_spec.real[start:stop, :DIM_F],
        right_spec.imag[start:stop, :DIM_F],
    )
    # (time, freq) -> (freq, time)
    return np.ascontiguousarray(np.stack([p.T for p in planes])[np.newaxis], dtype=np.float32)


def unpack_segment(output):
    """
    Split a model response back into per-frame spectra.

    Args:
        output (np.ndarray): Model output of shape [1, 4, DIM_F, SEGMENT_SIZE]

    Returns:
        tuple: (left_real, left_imag, right_real, right_imag), each (SEGMENT_SIZE, NUM_BINS);
            the Nyquist column is always zero
    """
    planes = []
    for channel in range(4):
        plane = np.zeros((SEGMENT_SIZE, NUM_BINS), dtype=np.float32)
        plane[:, :DIM_F] = output[0, channel].T
        planes.append(plane)
    return tuple(planes)


def pad_frames(spec, num_frames):
    """Return ``spec`` extended with zero frames up to ``num_frames``."""
    extra = num_frames - spec.num_frames
    if extra <= 0:
        return spec
    zeros = np.zeros((extra, NUM_BINS), dtype=np.float32)
    return ComplexSpectrogram(np.concatenate([spec.real, zeros]), np.concatenate([spec.imag, zeros]))


class MDXSeparator(CommonSeparator):
    """
    MDXSeparator turns one stereo chunk into its instrumental estimate by running
    the MDX model over the chunk's spectrogram, one fixed-size segment at a time.
    """

    def __init__(self, gateway, config=None):
        """
        Initialize MDXSeparator.

        Args:
            gateway (ModelGateway): Loaded model gateway used for inference
            config (dict): Common configuration parameters
        """
        super().__init__(config=config or {})

        self.gateway = gateway
        self.stft = STFT(n_fft=self.n_fft, hop_length=self.hop_length)
        # Center the first frame on sample 0, as the model was trained with
        self.trim = self.n_fft // 2

    def padded_frame_count(self, num_frames):
        segments = max(1, -(-num_frames // self.segment_size))
        return segments * self.segment_size

    def _forward(self, left, right):
        return self.stft(left), self.stft(right)

    def _inverse(self, left_spec, right_spec, length):
        return self.stft.inverse(left_spec, length), self.stft.inverse(right_spec, length)

    async def process_chunk(self, left, right):
        """
        Run the model over one stereo chunk.

        Args:
            left (np.ndarray): Left channel samples
            right (np.ndarray): Right channel samples

        Returns:
            tuple: Instrumental (left, right) float32 arrays, same length as the input
        """
        length = len(left)
        padded_length = length + 2 * self.trim
        padded_left = np.zeros(padded_length, dtype=np.float32)
        padded_right = np.zeros(padded_length, dtype=np.float32)
        padded_left[self.trim:self.trim + length] = left
        padded_right[self.trim:self.trim + length] = right

        left_spec, right_spec = await asyncio.to_thread(self._forward, padded_left, padded_right)
        num_frames = left_spec.num_frames

        total_frames = self.padded_frame_count(num_frames)
        left_spec = pad_frames(left_spec, total_frames)
        right_spec = pad_frames(right_spec, total_frames)

        out_left = ComplexSpectrogram.empty(total_frames)
        out_right = ComplexSpectrogram.empty(total_frames)

        n_segments = total_frames // self.segment_size
        for s in range(n_segments):
            start = s * self.segment_size
            self.logger.debug(f"Running segment {s + 1}/{n_segments} (frames {start}-{start + self.segment_size})")

            output = await self.gateway.run(pack_segment(left_spec, right_spec, start))
            lr, li, rr, ri = unpack_segment(output)

            stop = start + self.segment_size
            out_left.real[start:stop] = lr
            out_left.imag[start:stop] = li
            out_right.real[start:stop] = rr
            out_right.imag[start:stop] = ri

        out_left = ComplexSpectrogram(out_left.real[:num_frames], out_left.imag[:num_frames])
        out_right = ComplexSpectrogram(out_right.real[:num_frames], out_right.imag[:num_frames])

        full_left, full_right = await asyncio.to_thread(self._inverse, out_left, out_right, padded_length)

        return (
            full_left[self.trim:self.trim + length],
            full_right[self.trim:self.trim + length],
        )

"""
STFT (Short-Time Fourier Transform) utilities for MDX audio processing.
"""

from dataclasses import dataclass

import numpy as np

from .fft import FFT_SIZE, fft6144, ifft6144

HOP_LENGTH = 1024
NUM_BINS = FFT_SIZE // 2 + 1
FRAME_BATCH = 128


@dataclass
class ComplexSpectrogram:
    """Non-negative frequency bins of every frame, shaped (num_frames, NUM_BINS)."""

    real: np.ndarray
    imag: np.ndarray

    @property
    def num_frames(self):
        return self.real.shape[0]

    @property
    def num_bins(self):
        return self.real.shape[1]

    @classmethod
    def empty(cls, num_frames=0):
        shape = (num_frames, NUM_BINS)
        return cls(np.zeros(shape, dtype=np.float32), np.zeros(shape, dtype=np.float32))


def hann_window(size=FFT_SIZE):
    """Periodic Hann window ``0.5 * (1 - cos(2*pi*i/size))``."""
    i = np.arange(size)
    return 0.5 * (1.0 - np.cos(2.0 * np.pi * i / size))


def frame_count(length, n_fft=FFT_SIZE, hop_length=HOP_LENGTH):
    """Number of full frames the STFT produces for ``length`` samples."""
    if length < n_fft:
        return 0
    return (length - n_fft) // hop_length + 1


def stft(audio):
    """
    Compute the STFT of a mono signal.

    Frames start at sample 0 and advance by HOP_LENGTH. Only the first
    NUM_BINS bins of each frame are kept.

    Args:
        audio (np.ndarray): Input samples

    Returns:
        ComplexSpectrogram: float32 real/imag arrays of shape (num_frames, NUM_BINS)
    """
    audio = np.asarray(audio, dtype=np.float64)
    num_frames = frame_count(len(audio))
    spec = ComplexSpectrogram.empty(num_frames)
    if num_frames == 0:
        return spec

    window = hann_window()
    needed = (num_frames - 1) * HOP_LENGTH + FFT_SIZE
    if needed > len(audio):
        audio = np.concatenate([audio, np.zeros(needed - len(audio))])

    frames = np.lib.stride_tricks.sliding_window_view(audio, FFT_SIZE)[::HOP_LENGTH][:num_frames]

    for start in range(0, num_frames, FRAME_BATCH):
        stop = min(start + FRAME_BATCH, num_frames)
        bins = fft6144(frames[start:stop] * window)[:, :NUM_BINS]
        spec.real[start:stop] = bins.real
        spec.imag[start:stop] = bins.imag

    return spec


def istft(spec, output_length):
    """
    Resynthesize a mono signal by windowed overlap-add.

    The full spectrum of each frame is rebuilt by conjugate symmetry, with the
    DC and Nyquist bins taken as real. The summed output is divided by the
    accumulated squared window wherever that energy exceeds 1e-8.

    Args:
        spec (ComplexSpectrogram): Spectrogram produced by :func:`stft` or the model
        output_length (int): Number of samples to produce

    Returns:
        np.ndarray: float32 samples of length ``output_length``
    """
    window = hann_window()
    output = np.zeros(output_length, dtype=np.float64)
    window_sum = np.zeros(output_length, dtype=np.float64)

    for start in range(0, spec.num_frames, FRAME_BATCH):
        stop = min(start + FRAME_BATCH, spec.num_frames)
        half = spec.real[start:stop].astype(np.float64) + 1j * spec.imag[start:stop].astype(np.float64)
        half[:, 0] = half[:, 0].real
        half[:, NUM_BINS - 1] = half[:, NUM_BINS - 1].real

        full = np.zeros((stop - start, FFT_SIZE), dtype=np.complex128)
        full[:, :NUM_BINS] = half
        # X[N - k] = conj(X[k]) for k = 1 .. N/2 - 1
        full[:, NUM_BINS:] = np.conj(half[:, NUM_BINS - 2:0:-1])

        frames = ifft6144(full).real * window

        for i, frame in enumerate(frames):
            offset = (start + i) * HOP_LENGTH
            if offset >= output_length:
                break
            n = min(FFT_SIZE, output_length - offset)
            output[offset:offset + n] += frame[:n]
            window_sum[offset:offset + n] += window[:n] ** 2

    covered = window_sum > 1e-8
    output[covered] /= window_sum[covered]
    return output.astype(np.float32)


class STFT:
    """
    Short-Time Fourier Transform bound to the MDX frame geometry.
    """

    def __init__(self, n_fft=FFT_SIZE, hop_length=HOP_LENGTH):
        """
        Initialize STFT helper.

        Args:
            n_fft (int): FFT window size, must be 6144
            hop_length (int): Hop length, must be 1024
        """
        if n_fft != FFT_SIZE or hop_length != HOP_LENGTH:
            raise ValueError(f"Only n_fft={FFT_SIZE} and hop_length={HOP_LENGTH} are supported")

        self.n_fft = n_fft
        self.hop_length = hop_length
        self.num_bins = NUM_BINS
        self.window = hann_window(n_fft)

    def __call__(self, audio):
        return self.forward(audio)

    def forward(self, audio):
        return stft(audio)

    def inverse(self, spec, output_length):
        return istft(spec, output_length)

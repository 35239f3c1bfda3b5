"""
Fixed-size FFT used by the MDX STFT.

The model works on 6144-point frames, which is not a power of two
(6144 = 3 x 2048), so the forward transform decimates the input by three,
runs a radix-2 FFT on each 2048-point subsequence and recombines the
results with twiddle factors and a 3-point DFT.
"""

import numpy as np

FFT_SIZE = 6144
RADIX2_SIZE = 2048

_bit_reverse_cache = {}
_twiddle_cache = {}


def _bit_reverse_indices(n):
    """Return the bit-reversal permutation for an ``n``-point radix-2 FFT."""
    indices = _bit_reverse_cache.get(n)
    if indices is None:
        bits = n.bit_length() - 1
        indices = np.zeros(n, dtype=np.intp)
        forward = np.arange(n)
        for _ in range(bits):
            indices = (indices << 1) | (forward & 1)
            forward = forward >> 1
        _bit_reverse_cache[n] = indices
    return indices


def _stage_twiddles(size):
    """Twiddle factors ``exp(-2j*pi*k/size)`` for one butterfly stage."""
    twiddles = _twiddle_cache.get(size)
    if twiddles is None:
        k = np.arange(size // 2)
        twiddles = np.exp(-2j * np.pi * k / size)
        _twiddle_cache[size] = twiddles
    return twiddles


def fft_radix2(x):
    """
    Iterative radix-2 FFT along the last axis.

    Args:
        x (np.ndarray): Real or complex input whose last axis is a power of two.

    Returns:
        np.ndarray: A new complex128 array holding the forward transform.
    """
    x = np.asarray(x)
    n = x.shape[-1]
    if n < 1 or n & (n - 1):
        raise ValueError(f"Radix-2 FFT needs a power-of-two length, got {n}")

    # Fancy indexing copies, so the caller's buffer is never touched
    out = x[..., _bit_reverse_indices(n)].astype(np.complex128)
    lead = out.shape[:-1]

    size = 2
    while size <= n:
        half = size // 2
        blocks = out.reshape(lead + (n // size, size))
        even = blocks[..., :half].copy()
        odd = blocks[..., half:] * _stage_twiddles(size)
        blocks[..., :half] = even + odd
        blocks[..., half:] = even - odd
        size *= 2

    return out


def fft6144(x):
    """
    Forward 6144-point DFT along the last axis.

    Leading axes are treated as independent frames. The sign convention is
    ``exp(-2j*pi*k*n/N)``.

    Args:
        x (np.ndarray): Real or complex input, last axis of length 6144.

    Returns:
        np.ndarray: A new complex128 array with the spectrum.
    """
    x = np.asarray(x)
    if x.shape[-1] != FFT_SIZE:
        raise ValueError(f"fft6144 expects a last axis of {FFT_SIZE} samples, got {x.shape[-1]}")

    # Y[n1] is the 2048-point FFT of x[3*n2 + n1]
    y0 = fft_radix2(x[..., 0::3])
    y1 = fft_radix2(x[..., 1::3])
    y2 = fft_radix2(x[..., 2::3])

    k2 = np.arange(RADIX2_SIZE)
    z0 = y0
    z1 = y1 * np.exp(-2j * np.pi * k2 / FFT_SIZE)
    z2 = y2 * np.exp(-2j * np.pi * 2 * k2 / FFT_SIZE)

    w3 = complex(np.cos(-2 * np.pi / 3), np.sin(-2 * np.pi / 3))
    w3_sq = w3 * w3

    out = np.empty(x.shape[:-1] + (FFT_SIZE,), dtype=np.complex128)
    out[..., :RADIX2_SIZE] = z0 + z1 + z2
    out[..., RADIX2_SIZE:2 * RADIX2_SIZE] = z0 + z1 * w3 + z2 * w3_sq
    out[..., 2 * RADIX2_SIZE:] = z0 + z1 * w3_sq + z2 * w3
    return out


def ifft6144(spectrum):
    """
    Inverse 6144-point DFT along the last axis (conjugate, forward, conjugate, scale).

    Args:
        spectrum (np.ndarray): Complex input, last axis of length 6144.

    Returns:
        np.ndarray: A new complex128 array with the time-domain signal.
    """
    spectrum = np.asarray(spectrum)
    if spectrum.shape[-1] != FFT_SIZE:
        raise ValueError(f"ifft6144 expects a last axis of {FFT_SIZE} bins, got {spectrum.shape[-1]}")
    return np.conj(fft6144(np.conj(spectrum))) / FFT_SIZE

"""
MDX signal library: fixed-size FFT, STFT/iSTFT, PCM codec and chunking.
"""

from . import fft
from . import spec_utils
from . import stft
from .fft import FFT_SIZE
from .spec_utils import SAMPLE_RATE
from .stft import HOP_LENGTH, NUM_BINS

DIM_F = FFT_SIZE // 2
SEGMENT_SIZE = 256

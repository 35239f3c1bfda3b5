"""Common separator class for model architectures."""

import logging

from ..mdx_lib import FFT_SIZE, HOP_LENGTH, SAMPLE_RATE, SEGMENT_SIZE


class CommonSeparator:
    """
    Common separator class that provides shared configuration for architecture types.
    """

    def __init__(self, config):
        """
        Initialize the common separator with configuration.

        Args:
            config (dict): Configuration dictionary containing common parameters
        """
        self.sample_rate = config.get("sample_rate", SAMPLE_RATE)
        self.n_fft = config.get("n_fft", FFT_SIZE)
        self.hop_length = config.get("hop_length", HOP_LENGTH)
        self.segment_size = config.get("segment_size", SEGMENT_SIZE)

        self.logger = config.get("logger") or logging.getLogger(self.__class__.__name__)

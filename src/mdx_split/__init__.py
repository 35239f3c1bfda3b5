"""
mdx-split: vocal / instrumental separation with the MDX-Net ONNX model
and a from-scratch 6144-point STFT.
"""

from .exceptions import (
    DecodeFailure,
    DownloadFailure,
    InferenceFailure,
    ModelLoadFailure,
    SeparationCancelled,
    SeparationError,
)
from .model_gateway import ModelCache, ModelGateway
from .progress import JobState, ProgressEvent
from .separator import SeparationJob, SeparationResult, Separator

__version__ = "1.0.0"

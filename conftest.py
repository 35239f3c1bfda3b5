import numpy as np
import pytest

from mdx_split.config import CONFIG_ENV_VAR, MODEL_DIR_ENV_VAR, MODEL_KEY
from mdx_split.mdx_lib import SAMPLE_RATE
from mdx_split.model_gateway import ModelCache, ModelGateway
from mdx_split.separator import Separator

STUB_WEIGHTS = b"stub-weights"


class ZeroSession:
    """Inference session that predicts silence."""

    def __init__(self):
        self.calls = 0

    def run(self, output_names, feeds):
        self.calls += 1
        return [np.zeros_like(feeds["input"])]


class EchoSession:
    """Inference session that returns its input unchanged."""

    def __init__(self):
        self.calls = 0

    def run(self, output_names, feeds):
        self.calls += 1
        return [feeds["input"].copy()]


class FailingSession:
    def __init__(self):
        self.calls = 0

    def run(self, output_names, feeds):
        self.calls += 1
        raise RuntimeError("engine crashed")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    monkeypatch.delenv(MODEL_DIR_ENV_VAR, raising=False)


@pytest.fixture
def zero_session():
    return ZeroSession()


@pytest.fixture
def echo_session():
    return EchoSession()


@pytest.fixture
def failing_session():
    return FailingSession()


@pytest.fixture
def make_gateway(tmp_path):
    """Build a gateway around a stub session, with the weights already cached."""

    def factory(session, cached=True):
        cache = ModelCache(str(tmp_path / "models"))
        if cached:
            cache.put(MODEL_KEY, STUB_WEIGHTS)
        return ModelGateway(
            cache,
            model_urls=["https://mirror-a.invalid/model.onnx", "https://mirror-b.invalid/model.onnx"],
            session_factory=lambda weights, providers: session,
        )

    return factory


@pytest.fixture
def make_separator(make_gateway, tmp_path):
    def factory(session, cached=True, **mdx_params):
        return Separator(
            gateway=make_gateway(session, cached=cached),
            model_file_dir=str(tmp_path / "models"),
            mdx_params=mdx_params or None,
        )

    return factory


@pytest.fixture
def stereo_sine():
    def factory(seconds, amplitude=0.5, freq_left=440.0, freq_right=660.0):
        t = np.arange(int(seconds * SAMPLE_RATE)) / SAMPLE_RATE
        left = amplitude * np.sin(2 * np.pi * freq_left * t)
        right = amplitude * np.sin(2 * np.pi * freq_right * t)
        return left.astype(np.float32), right.astype(np.float32)

    return factory

"""
Lifecycle of the MDX inference engine: acquire the ONNX weights, build a session and run fixed-shape inference.
"""

import asyncio
import logging
import os
import tempfile
from urllib.parse import urlparse

import numpy as np
import onnx
import onnxruntime as ort
import requests
from onnx import version_converter

from .config import MODEL_KEY, MODEL_URLS
from .exceptions import DownloadFailure, InferenceFailure, ModelLoadFailure, SeparationError
from .mdx_lib import DIM_F, SEGMENT_SIZE

INPUT_NAME = "input"
TENSOR_SHAPE = (1, 4, DIM_F, SEGMENT_SIZE)
DOWNLOAD_CHUNK_SIZE = 1 << 16

logger = logging.getLogger(__name__)


class ModelCache:
    """Local persistent blob store, one file per key."""

    def __init__(self, cache_dir):
        self.cache_dir = cache_dir

    def path_for(self, key):
        return os.path.join(self.cache_dir, f"{key}.onnx")

    def get(self, key):
        """Return the cached bytes for ``key`` or None on a miss."""
        path = self.path_for(key)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            logger.warning(f"Could not read cached model {path}: {e}")
            return None
        return data or None

    def put(self, key, data):
        """Write ``data`` under ``key``. Raises OSError on failure."""
        os.makedirs(self.cache_dir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.cache_dir, suffix=".part")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_path, self.path_for(key))
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


def download_model(urls, on_progress=None, timeout=60):
    """
    Download the model from the first mirror that answers.

    Args:
        urls (list): Mirrors, tried in order
        on_progress (callable): Called with a 0-100 percent when the content length is known
        timeout (float): Per-request timeout in seconds

    Returns:
        bytes: Model file contents
    """
    last_error = None

    for url in urls:
        host = urlparse(url).hostname
        logger.info(f"Downloading model from {host}")
        try:
            with requests.get(url, stream=True, timeout=timeout) as response:
                if not response.ok:
                    last_error = requests.HTTPError(f"HTTP {response.status_code} from {host}", response=response)
                    logger.warning(f"Mirror {host} failed: {last_error}")
                    continue

                total = int(response.headers.get("content-length") or 0)
                buffer = bytearray()
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    buffer.extend(chunk)
                    if total > 0 and on_progress is not None:
                        on_progress(min(len(buffer) / total * 100, 100.0))

                if total <= 0:
                    logger.info(f"Downloaded {len(buffer)} bytes (size not reported by {host})")
                return bytes(buffer)
        except requests.RequestException as e:
            last_error = e
            logger.warning(f"Mirror {host} failed: {e}")

    raise DownloadFailure(f"Model download failed: {last_error}", last_error) from last_error


def select_providers(use_directml=False):
    """Pick ONNX Runtime execution providers, best accelerator first and CPU last."""
    available = ort.get_available_providers()
    providers = ["CPUExecutionProvider"]

    if "CUDAExecutionProvider" in available:
        providers.insert(0, "CUDAExecutionProvider")
    elif "CoreMLExecutionProvider" in available:
        providers.insert(0, "CoreMLExecutionProvider")
    elif use_directml and "DmlExecutionProvider" in available:
        providers.insert(0, "DmlExecutionProvider")

    logger.info(f"ONNX Runtime {ort.__version__}, using providers: {providers}")
    return providers


def check_and_upgrade_onnx_model(weight_bytes):
    """
    Check the ONNX model IR version and upgrade it in memory if it is too old.

    Args:
        weight_bytes (bytes): Serialized ONNX model

    Returns:
        bytes: The original bytes, or the upgraded model
    """
    model = onnx.load_from_string(weight_bytes)
    if model.ir_version >= 3:
        logger.debug(f"ONNX model IR version {model.ir_version} is compatible (>= 3)")
        return weight_bytes

    logger.warning(f"ONNX model IR version {model.ir_version} is too old (minimum supported: 3), converting...")
    converted = version_converter.convert_version(model, 7)
    return converted.SerializeToString()


def create_onnx_session(weight_bytes, providers):
    """Build an ONNX Runtime inference session from serialized weights."""
    weight_bytes = check_and_upgrade_onnx_model(weight_bytes)

    sess_options = ort.SessionOptions()
    sess_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    return ort.InferenceSession(weight_bytes, sess_options=sess_options, providers=providers)


class ModelGateway:
    """
    Owns the inference session. One instance is shared by every job of a Separator.

    ``load`` is idempotent: concurrent callers await the same load task, and a
    failed load leaves no session behind so the next call starts clean.
    """

    def __init__(
        self,
        cache,
        model_urls=MODEL_URLS,
        model_key=MODEL_KEY,
        session_factory=create_onnx_session,
        use_directml=False,
        download_timeout=60,
    ):
        self.cache = cache
        self.model_urls = list(model_urls)
        self.model_key = model_key
        self.session_factory = session_factory
        self.use_directml = use_directml
        self.download_timeout = download_timeout

        self.providers = None
        self._session = None
        self._load_task = None

    def is_loaded(self):
        return self._session is not None

    async def load(self, progress=None):
        """
        Make the inference session available.

        Args:
            progress (callable): Receives ``(percent, message)`` with a 0-100 percent local to the load
        """
        if self._session is not None:
            return
        if self._load_task is None:
            self._load_task = asyncio.ensure_future(self._load(progress))
        await asyncio.shield(self._load_task)

    async def _load(self, progress):
        report = progress or (lambda percent, message: None)
        try:
            report(0, "Preparing inference runtime...")
            try:
                self.providers = select_providers(self.use_directml)
            except Exception as e:
                raise ModelLoadFailure(f"Inference runtime unavailable: {e}") from e

            weights = await asyncio.to_thread(self.cache.get, self.model_key)
            if weights is None:
                report(5, "Downloading model...")
                loop = asyncio.get_running_loop()

                def on_download(pct):
                    loop.call_soon_threadsafe(report, 5 + pct * 0.9, f"Downloading model... {round(pct)}%")

                weights = await asyncio.to_thread(download_model, self.model_urls, on_download, self.download_timeout)
                await self._write_cache(weights)
                report(95, "Model download complete")
            else:
                logger.info(f"Loaded model {self.model_key} from cache")
                report(95, "Loaded model from cache")

            report(97, "Creating inference session...")
            try:
                session = await asyncio.to_thread(self.session_factory, weights, self.providers)
            except Exception as e:
                raise ModelLoadFailure(f"Unable to create inference session: {e}") from e

            self._session = session
            report(100, "Model ready")
        except SeparationError:
            self._session = None
            raise
        except Exception as e:
            self._session = None
            raise ModelLoadFailure(f"Unable to load model: {e}") from e
        finally:
            self._load_task = None

    async def _write_cache(self, weights):
        try:
            await asyncio.to_thread(self.cache.put, self.model_key, weights)
        except OSError as e:
            logger.warning(f"Could not cache model {self.model_key}: {e}")

    async def run(self, tensor):
        """
        Run one fixed-shape inference request.

        Args:
            tensor (np.ndarray): float32 array of shape (1, 4, 3072, 256)

        Returns:
            np.ndarray: float32 array of the same shape
        """
        if self._session is None:
            raise ModelLoadFailure("Model is not loaded. Call load() first.")

        tensor = np.ascontiguousarray(tensor, dtype=np.float32)
        if tensor.shape != TENSOR_SHAPE:
            raise ValueError(f"Input tensor must have shape {TENSOR_SHAPE}, got {tensor.shape}")

        try:
            outputs = await asyncio.to_thread(self._session.run, None, {INPUT_NAME: tensor})
        except Exception as e:
            raise InferenceFailure(f"Inference failed: {e}") from e

        output = np.asarray(outputs[0], dtype=np.float32)
        if output.shape != TENSOR_SHAPE:
            raise InferenceFailure(f"Model returned shape {output.shape}, expected {TENSOR_SHAPE}")
        return output


def create_gateway(settings):
    """Build the default gateway from loaded settings."""
    return ModelGateway(
        ModelCache(settings["model_file_dir"]),
        model_urls=settings["model_urls"],
        model_key=settings["model_key"],
        use_directml=settings["use_directml"],
        download_timeout=settings["download_timeout"],
    )

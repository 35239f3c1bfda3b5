import asyncio
import logging
import os

import numpy as np
import pytest
import requests
from onnx import TensorProto, helper

from conftest import STUB_WEIGHTS, EchoSession
from mdx_split.config import MODEL_KEY
from mdx_split.exceptions import DownloadFailure, InferenceFailure, ModelLoadFailure
from mdx_split.model_gateway import (
    TENSOR_SHAPE,
    ModelCache,
    ModelGateway,
    check_and_upgrade_onnx_model,
    create_onnx_session,
    download_model,
    select_providers,
)

MIRRORS = ["https://mirror-a.invalid/model.onnx", "https://mirror-b.invalid/model.onnx"]


class FakeResponse:
    def __init__(self, status_code=200, body=b"", content_length=True):
        self.status_code = status_code
        self.ok = status_code < 400
        self.body = body
        self.headers = {"content-length": str(len(body))} if content_length else {}

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self.body), 4):
            yield self.body[start:start + 4]


class FakeGet:
    """Replacement for requests.get answering from a per-URL table."""

    def __init__(self, answers):
        self.answers = answers
        self.urls = []

    def __call__(self, url, stream=False, timeout=None):
        self.urls.append(url)
        answer = self.answers[url]
        if isinstance(answer, Exception):
            raise answer
        return answer


def identity_model_bytes():
    tensor = helper.make_tensor_value_info("input", TensorProto.FLOAT, list(TENSOR_SHAPE))
    output = helper.make_tensor_value_info("output", TensorProto.FLOAT, list(TENSOR_SHAPE))
    graph = helper.make_graph([helper.make_node("Identity", ["input"], ["output"])], "identity", [tensor], [output])
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)], ir_version=8)
    return model.SerializeToString()


class TestModelCache:
    def test_miss_returns_none(self, tmp_path):
        assert ModelCache(str(tmp_path)).get(MODEL_KEY) is None

    def test_put_then_get(self, tmp_path):
        cache = ModelCache(str(tmp_path / "nested"))

        cache.put(MODEL_KEY, b"weights")

        assert cache.get(MODEL_KEY) == b"weights"
        assert os.listdir(tmp_path / "nested") == [f"{MODEL_KEY}.onnx"]

    def test_empty_file_is_a_miss(self, tmp_path):
        cache = ModelCache(str(tmp_path))
        open(cache.path_for(MODEL_KEY), "wb").close()

        assert cache.get(MODEL_KEY) is None


class TestDownload:
    def test_first_mirror_wins(self, monkeypatch):
        fake = FakeGet({MIRRORS[0]: FakeResponse(body=b"0123456789")})
        monkeypatch.setattr("mdx_split.model_gateway.requests.get", fake)
        seen = []

        data = download_model(MIRRORS, seen.append)

        assert data == b"0123456789"
        assert fake.urls == MIRRORS[:1]
        assert seen[-1] == 100.0
        assert seen == sorted(seen)

    def test_falls_back_on_http_error(self, monkeypatch):
        fake = FakeGet({MIRRORS[0]: FakeResponse(status_code=503), MIRRORS[1]: FakeResponse(body=b"weights")})
        monkeypatch.setattr("mdx_split.model_gateway.requests.get", fake)

        assert download_model(MIRRORS) == b"weights"
        assert fake.urls == MIRRORS

    def test_falls_back_on_transport_error(self, monkeypatch):
        fake = FakeGet({MIRRORS[0]: requests.ConnectionError("refused"), MIRRORS[1]: FakeResponse(body=b"weights")})
        monkeypatch.setattr("mdx_split.model_gateway.requests.get", fake)

        assert download_model(MIRRORS) == b"weights"

    def test_no_progress_without_content_length(self, monkeypatch):
        fake = FakeGet({MIRRORS[0]: FakeResponse(body=b"weights", content_length=False)})
        monkeypatch.setattr("mdx_split.model_gateway.requests.get", fake)
        seen = []

        assert download_model(MIRRORS, seen.append) == b"weights"
        assert seen == []

    def test_all_mirrors_fail(self, monkeypatch):
        timeout = requests.Timeout("too slow")
        fake = FakeGet({MIRRORS[0]: FakeResponse(status_code=404), MIRRORS[1]: timeout})
        monkeypatch.setattr("mdx_split.model_gateway.requests.get", fake)

        with pytest.raises(DownloadFailure) as excinfo:
            download_model(MIRRORS)

        assert excinfo.value.last_error is timeout


class TestProviders:
    def test_cpu_only(self, monkeypatch):
        monkeypatch.setattr("mdx_split.model_gateway.ort.get_available_providers", lambda: ["CPUExecutionProvider"])
        assert select_providers() == ["CPUExecutionProvider"]

    def test_cuda_preferred(self, monkeypatch):
        available = ["DmlExecutionProvider", "CUDAExecutionProvider", "CPUExecutionProvider"]
        monkeypatch.setattr("mdx_split.model_gateway.ort.get_available_providers", lambda: available)
        assert select_providers(use_directml=True) == ["CUDAExecutionProvider", "CPUExecutionProvider"]

    def test_directml_only_when_enabled(self, monkeypatch):
        available = ["DmlExecutionProvider", "CPUExecutionProvider"]
        monkeypatch.setattr("mdx_split.model_gateway.ort.get_available_providers", lambda: available)

        assert select_providers() == ["CPUExecutionProvider"]
        assert select_providers(use_directml=True) == ["DmlExecutionProvider", "CPUExecutionProvider"]


class TestOnnxSession:
    def test_current_model_is_left_unchanged(self):
        weights = identity_model_bytes()
        assert check_and_upgrade_onnx_model(weights) == weights

    def test_identity_session_runs(self):
        session = create_onnx_session(identity_model_bytes(), ["CPUExecutionProvider"])
        tensor = np.random.default_rng(0).standard_normal(TENSOR_SHAPE).astype(np.float32)

        output = session.run(None, {"input": tensor})[0]

        np.testing.assert_array_equal(output, tensor)

    def test_invalid_weights(self):
        with pytest.raises(Exception):
            create_onnx_session(b"not a model", ["CPUExecutionProvider"])


class TestGatewayLoad:
    @pytest.mark.asyncio
    async def test_load_from_cache(self, make_gateway, echo_session, monkeypatch):
        gateway = make_gateway(echo_session)
        monkeypatch.setattr("mdx_split.model_gateway.requests.get", FakeGet({}))
        seen = []

        await gateway.load(lambda pct, message: seen.append(pct))

        assert gateway.is_loaded()
        assert "CPUExecutionProvider" in gateway.providers
        assert seen[0] == 0
        assert seen[-1] == 100
        assert 5 not in seen

    @pytest.mark.asyncio
    async def test_load_downloads_and_caches(self, make_gateway, echo_session, monkeypatch):
        gateway = make_gateway(echo_session, cached=False)
        fake = FakeGet({MIRRORS[0]: FakeResponse(status_code=500), MIRRORS[1]: FakeResponse(body=STUB_WEIGHTS)})
        monkeypatch.setattr("mdx_split.model_gateway.requests.get", fake)
        seen = []

        await gateway.load(lambda pct, message: seen.append(pct))

        assert gateway.is_loaded()
        assert gateway.cache.get(MODEL_KEY) == STUB_WEIGHTS
        assert seen == sorted(seen)
        assert 5 in seen and 95 in seen

    @pytest.mark.asyncio
    async def test_cache_write_failure_is_not_fatal(self, make_gateway, echo_session, monkeypatch, caplog):
        gateway = make_gateway(echo_session, cached=False)
        monkeypatch.setattr(
            "mdx_split.model_gateway.requests.get", FakeGet({MIRRORS[0]: FakeResponse(body=STUB_WEIGHTS)})
        )

        def refuse(key, data):
            raise OSError("disk full")

        monkeypatch.setattr(gateway.cache, "put", refuse)

        with caplog.at_level(logging.WARNING):
            await gateway.load()

        assert gateway.is_loaded()
        assert "disk full" in caplog.text

    @pytest.mark.asyncio
    async def test_download_failure_propagates(self, make_gateway, echo_session, monkeypatch):
        gateway = make_gateway(echo_session, cached=False)
        error = requests.ConnectionError("offline")
        monkeypatch.setattr("mdx_split.model_gateway.requests.get", FakeGet({url: error for url in MIRRORS}))

        with pytest.raises(DownloadFailure) as excinfo:
            await gateway.load()

        assert excinfo.value.last_error is error
        assert not gateway.is_loaded()

    @pytest.mark.asyncio
    async def test_concurrent_loads_share_one_session(self, tmp_path):
        calls = []

        def factory(weights, providers):
            calls.append(weights)
            return EchoSession()

        cache = ModelCache(str(tmp_path))
        cache.put(MODEL_KEY, STUB_WEIGHTS)

        gateway = ModelGateway(cache, model_urls=MIRRORS, session_factory=factory)

        await asyncio.gather(gateway.load(), gateway.load(), gateway.load())
        await gateway.load()

        assert calls == [STUB_WEIGHTS]

    @pytest.mark.asyncio
    async def test_failed_session_allows_retry(self, tmp_path):
        attempts = []

        def factory(weights, providers):
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("bad provider")
            return EchoSession()

        cache = ModelCache(str(tmp_path))
        cache.put(MODEL_KEY, STUB_WEIGHTS)

        gateway = ModelGateway(cache, model_urls=MIRRORS, session_factory=factory)

        with pytest.raises(ModelLoadFailure):
            await gateway.load()
        assert not gateway.is_loaded()

        await gateway.load()
        assert gateway.is_loaded()
        assert len(attempts) == 2


class TestGatewayRun:
    @pytest.mark.asyncio
    async def test_run_before_load(self, make_gateway, echo_session):
        with pytest.raises(ModelLoadFailure):
            await make_gateway(echo_session).run(np.zeros(TENSOR_SHAPE, dtype=np.float32))

    @pytest.mark.asyncio
    async def test_run_echo(self, make_gateway, echo_session):
        gateway = make_gateway(echo_session)
        await gateway.load()
        tensor = np.ones(TENSOR_SHAPE, dtype=np.float32)

        output = await gateway.run(tensor)

        assert output.dtype == np.float32
        np.testing.assert_array_equal(output, tensor)
        assert echo_session.calls == 1

    @pytest.mark.asyncio
    async def test_wrong_input_shape(self, make_gateway, echo_session):
        gateway = make_gateway(echo_session)
        await gateway.load()

        with pytest.raises(ValueError):
            await gateway.run(np.zeros((1, 4, 3073, 256), dtype=np.float32))
        assert echo_session.calls == 0

    @pytest.mark.asyncio
    async def test_engine_error(self, make_gateway, failing_session):
        gateway = make_gateway(failing_session)
        await gateway.load()

        with pytest.raises(InferenceFailure, match="engine crashed"):
            await gateway.run(np.zeros(TENSOR_SHAPE, dtype=np.float32))

    @pytest.mark.asyncio
    async def test_wrong_output_shape(self, make_gateway):
        class TruncatingSession:
            def run(self, output_names, feeds):
                return [feeds["input"][:, :2]]

        gateway = make_gateway(TruncatingSession())
        await gateway.load()

        with pytest.raises(InferenceFailure):
            await gateway.run(np.zeros(TENSOR_SHAPE, dtype=np.float32))

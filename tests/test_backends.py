"""Tests for the torch and onnxruntime inference backends."""

from types import SimpleNamespace

import numpy as np
import pytest
import torch

from chunkasr.asr_model import StreamingAsrModel
from chunkasr.backend import EncoderInput, OnnxBackend, TorchBackend, load_backend
from chunkasr.metadata import load_metadata


class TestTorchBackend:
    """Tests for TorchBackend with a tiny random model."""

    def make_model(self, tiny_model):
        metadata = load_metadata(tiny_model.metadata(chunk_size=4, left_chunks=2))
        model = StreamingAsrModel(TorchBackend(tiny_model, metadata))
        model.reset()
        return model

    def test_from_directory(self, tiny_model_dir):
        backend = load_backend(tiny_model_dir, backend="torch")

        assert isinstance(backend, TorchBackend)
        assert backend.metadata.chunk_size == 4
        assert backend.metadata.num_left_chunks == 2
        assert backend.encoder_inputs == frozenset(EncoderInput)

    def test_streaming_shapes(self, tiny_model):
        model = self.make_model(tiny_model)
        assert model.state.att_cache.shape == (2, 4, 8, 16)
        assert model.state.cnn_cache.shape == (2, 1, 32, 4)

        for num_frames, num_out in ((19, 4), (16, 4), (16, 4), (8, 2)):
            offset = model.offset
            log_probs = model.forward_chunk(torch.randn(num_frames, 20))

            assert log_probs.shape == (num_out, 12)
            assert model.offset == offset + num_out
            assert model.state.att_cache.shape == (2, 4, 8, 16)
            assert model.state.cnn_cache.shape == (2, 1, 32, 4)
            assert torch.allclose(log_probs.exp().sum(-1), torch.ones(num_out), atol=1e-5)

    def test_replay_is_bit_identical(self, tiny_model):
        model = self.make_model(tiny_model)
        torch.manual_seed(1)
        chunks = [torch.randn(19, 20), torch.randn(16, 20), torch.randn(10, 20)]

        runs = []
        for _ in range(2):
            model.reset()
            log_probs = [model.forward_chunk(chunk) for chunk in chunks]
            runs.append((log_probs, model.state.att_cache, model.state.cnn_cache))

        for a, b in zip(runs[0][0], runs[1][0]):
            assert torch.equal(a, b)
        assert torch.equal(runs[0][1], runs[1][1])
        assert torch.equal(runs[0][2], runs[1][2])

    def test_stream_past_positional_table(self, tiny_model):
        model = self.make_model(tiny_model)
        pos_enc = tiny_model.encoder.embed.pos_enc
        assert pos_enc.max_len == 5000

        model.forward_chunk(torch.randn(19, 20))
        model.state.offset = 4990
        for _ in range(6):
            log_probs = model.forward_chunk(torch.randn(16, 20))
            assert log_probs.shape == (4, 12)
            assert torch.isfinite(log_probs).all()

        assert model.offset == 5014
        assert pos_enc.max_len >= 5014

    def test_rescoring(self, tiny_model):
        model = self.make_model(tiny_model)
        model.forward_chunk(torch.randn(19, 20))
        model.forward_chunk(torch.randn(16, 20))

        forward = model.attention_rescoring([[1, 2, 3], [4]], 0.0)
        fused = model.attention_rescoring([[1, 2, 3], [4]], 0.5)
        backward = model.attention_rescoring([[1, 2, 3], [4]], 1.0)

        assert len(forward) == 2
        assert all(score < 0 for score in forward)
        for f, m, b in zip(forward, fused, backward):
            assert m == pytest.approx(0.5 * f + 0.5 * b, abs=1e-4)


class FakeNode:
    def __init__(self, name, type_="tensor(float)", shape=None):
        self.name = name
        self.type = type_
        self.shape = shape or []


class FakeSession:
    """Mimics the parts of onnxruntime.InferenceSession the backend uses."""

    def __init__(self, inputs, outputs, run_fn, metadata=None):
        self._inputs = [FakeNode(name) for name in inputs]
        self._outputs = [FakeNode(name) for name in outputs]
        self._run_fn = run_fn
        self._metadata = metadata or {}
        self.feeds = []

    def get_inputs(self):
        return self._inputs

    def get_outputs(self):
        return self._outputs

    def get_modelmeta(self):
        return SimpleNamespace(custom_metadata_map=self._metadata)

    def run(self, output_names, feed):
        self.feeds.append(feed)
        return self._run_fn(feed)


class TestOnnxBackend:
    """Tests for OnnxBackend input binding with fake sessions."""

    def make_backend(self, small_metadata, encoder_inputs, bidirectional=True):
        def run_encoder(feed):
            num_out = feed["chunk"].shape[1] // 4
            return [
                np.zeros((1, num_out, 8), dtype=np.float32),
                feed["att_cache"] + 1,
                feed["cnn_cache"] + 1,
            ]

        def run_ctc(feed):
            x = feed["hidden"]
            return [np.full((1, x.shape[1], 10), -np.log(10), dtype=np.float32)]

        def run_decoder(feed):
            shape = feed["hyps"].shape + (10,)
            outputs = [np.full(shape, -1.0, dtype=np.float32)]
            if bidirectional:
                outputs.append(np.full(shape, -2.0, dtype=np.float32))
            return outputs

        decoder_outputs = ["score", "r_score"] if bidirectional else ["score"]
        self.encoder_session = FakeSession(encoder_inputs, ["output", "r_att_cache", "r_cnn_cache"], run_encoder)
        self.ctc_session = FakeSession(["hidden"], ["probs"], run_ctc)
        self.decoder_session = FakeSession(["hyps", "hyps_lens", "encoder_out"], decoder_outputs, run_decoder)
        return OnnxBackend(self.encoder_session, self.ctc_session, self.decoder_session, small_metadata)

    def test_binding_by_name(self, small_metadata):
        names = ["chunk", "offset", "required_cache_size", "att_cache", "cnn_cache", "att_mask"]
        backend = self.make_backend(small_metadata, names)
        model = StreamingAsrModel(backend)
        model.reset()

        log_probs = model.forward_chunk(torch.randn(19, 80))

        feed = self.encoder_session.feeds[0]
        assert set(feed) == set(names)
        assert feed["chunk"].dtype == np.float32 and feed["chunk"].shape == (1, 19, 80)
        assert feed["offset"].dtype == np.int64 and int(feed["offset"]) == 8
        assert int(feed["required_cache_size"]) == 8
        assert feed["att_mask"].dtype == np.bool_
        assert feed["att_mask"].tolist() == [[[False] * 8 + [True] * 4]]
        assert log_probs.shape == (4, 10)
        assert model.offset == 12
        assert isinstance(model.state.att_cache, torch.Tensor)
        assert torch.all(model.state.att_cache == 1.0)

    def test_graph_without_mask(self, small_metadata):
        backend = self.make_backend(small_metadata, ["chunk", "offset", "required_cache_size", "att_cache", "cnn_cache"])
        assert EncoderInput.ATT_MASK not in backend.encoder_inputs

        model = StreamingAsrModel(backend)
        model.reset()
        model.forward_chunk(torch.randn(19, 80))

        assert "att_mask" not in self.encoder_session.feeds[0]

    def test_unknown_input_not_fed(self, small_metadata):
        backend = self.make_backend(small_metadata, ["chunk", "att_cache", "cnn_cache", "speaker_id"])

        assert backend.encoder_inputs == frozenset(
            {EncoderInput.CHUNK, EncoderInput.ATT_CACHE, EncoderInput.CNN_CACHE}
        )

    def test_rescoring(self, small_metadata):
        backend = self.make_backend(small_metadata, ["chunk", "att_cache", "cnn_cache"])
        model = StreamingAsrModel(backend)
        model.reset()
        model.forward_chunk(torch.randn(19, 80))

        scores = model.attention_rescoring([[1, 2], [3]], 0.25)

        feed = self.decoder_session.feeds[0]
        assert feed["hyps"].dtype == np.int64
        assert feed["hyps"].tolist() == [[9, 1, 2], [9, 3, 0]]
        assert feed["hyps_lens"].tolist() == [3, 2]
        assert feed["encoder_out"].shape == (1, 4, 8)
        # 3 and 2 positions scored at -1 forward / -2 backward
        assert scores == pytest.approx([-3.0 * 0.75 - 6.0 * 0.25, -2.0 * 0.75 - 4.0 * 0.25])

    def test_missing_backward_output(self, small_metadata):
        backend = self.make_backend(small_metadata, ["chunk"], bidirectional=False)
        _, bwd = backend.forward_attention_decoder(
            torch.tensor([[9, 1]]), torch.tensor([2]), torch.zeros(1, 3, 8)
        )
        assert bwd is None

    def test_from_directory_missing_files(self, tmp_path):
        pytest.importorskip("onnxruntime")
        with pytest.raises(FileNotFoundError):
            OnnxBackend.from_directory(tmp_path)


def test_unknown_backend(tmp_path):
    with pytest.raises(ValueError):
        load_backend(tmp_path, backend="tensorrt")

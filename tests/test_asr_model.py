"""Tests for the chunk-streaming model wrapper."""

import pytest
import torch

from chunkasr.asr_model import StreamingAsrModel
from chunkasr.backend import EncoderInput
from chunkasr.errors import EmptyInputError, UninitializedModelError


class TestReset:
    """Tests for StreamingAsrModel.reset."""

    def test_cache_shapes(self, scenario_metadata, make_fake_backend):
        model = StreamingAsrModel(make_fake_backend(scenario_metadata))
        model.reset()

        assert model.state.att_cache.shape == (12, 4, 64, 128)
        assert model.state.cnn_cache.shape == (12, 1, 256, 14)
        assert model.state.encoder_outs == []
        assert model.state.cached_feature is None
        assert model.offset == 64

    def test_no_left_chunks(self, scenario_metadata, make_fake_backend):
        metadata = scenario_metadata.with_chunking(16, -1)
        model = StreamingAsrModel(make_fake_backend(metadata))
        model.reset()

        assert model.state.att_cache.shape == (12, 4, 0, 128)
        assert model.offset == 0

    def test_uninitialized(self, fake_backend):
        model = StreamingAsrModel(fake_backend)

        with pytest.raises(UninitializedModelError):
            model.forward_chunk(torch.randn(19, 80))
        with pytest.raises(UninitializedModelError):
            model.attention_rescoring([[1, 2]])
        assert fake_backend.encoder_calls == []


class TestForwardChunk:
    """Tests for StreamingAsrModel.forward_chunk."""

    def test_scenario(self, scenario_metadata, make_fake_backend):
        backend = make_fake_backend(scenario_metadata)
        model = StreamingAsrModel(backend)
        model.reset()
        offset = model.offset

        probs = model.forward_chunk(torch.randn(16, 80))

        assert model.offset == offset + 4
        assert len(model.encoder_outs) == 1
        assert model.encoder_outs[0].shape == (1, 4, 256)
        assert probs.shape == (4, backend.vocab_size)
        # Caches are replaced by what the backend returned
        assert torch.all(model.state.att_cache == 1.0)
        assert torch.all(model.state.cnn_cache == 1.0)

    def test_offset_grows_by_output_length(self, fake_backend):
        model = StreamingAsrModel(fake_backend)
        model.reset()

        offsets = [model.offset]
        for num_frames in (19, 16, 16, 9):
            probs = model.forward_chunk(torch.randn(num_frames, 80))
            offsets.append(model.offset)
            assert offsets[-1] - offsets[-2] == probs.size(0)

        # 3 frames are carried over: 19, 3 + 16, 3 + 16, 3 + 9
        assert offsets == [8, 12, 16, 20, 23]
        assert [out.size(1) for out in model.encoder_outs] == [4, 4, 4, 3]

    def test_inputs_passed_to_backend(self, fake_backend):
        model = StreamingAsrModel(fake_backend)
        model.reset()
        att_cache = model.state.att_cache

        model.forward_chunk(torch.randn(19, 80))

        inputs = fake_backend.encoder_calls[0]
        assert set(inputs) == set(EncoderInput)
        assert inputs[EncoderInput.CHUNK].shape == (1, 19, 80)
        assert inputs[EncoderInput.OFFSET] == 8
        assert inputs[EncoderInput.REQUIRED_CACHE_SIZE] == 8
        assert inputs[EncoderInput.ATT_CACHE] is att_cache
        assert inputs[EncoderInput.ATT_MASK].tolist() == [[[False] * 8 + [True] * 4]]

    def test_undeclared_inputs_left_out(self, small_metadata, make_fake_backend):
        roles = {EncoderInput.CHUNK, EncoderInput.ATT_CACHE, EncoderInput.CNN_CACHE}
        backend = make_fake_backend(small_metadata, encoder_inputs=roles)
        model = StreamingAsrModel(backend)
        model.reset()

        model.forward_chunk(torch.randn(19, 80))

        assert set(backend.encoder_calls[0]) == roles

    def test_no_mask_without_left_chunks(self, small_metadata, make_fake_backend):
        backend = make_fake_backend(small_metadata.with_chunking(4, 0))
        model = StreamingAsrModel(backend)
        model.reset()

        model.forward_chunk(torch.randn(19, 80))

        assert EncoderInput.ATT_MASK not in backend.encoder_calls[0]
        assert backend.encoder_calls[0][EncoderInput.OFFSET] == 0

    def test_cached_feature_spliced(self, fake_backend):
        model = StreamingAsrModel(fake_backend)
        model.reset()
        first = torch.randn(19, 80)
        second = torch.randn(16, 80)

        model.forward_chunk(first)
        assert torch.equal(model.state.cached_feature, first[-3:])

        model.forward_chunk(second)
        chunk = fake_backend.encoder_calls[1][EncoderInput.CHUNK][0]
        assert chunk.shape == (19, 80)
        assert torch.equal(chunk[:3], first[-3:])
        assert torch.equal(chunk[3:], second)

    def test_too_few_frames_are_buffered(self, fake_backend):
        model = StreamingAsrModel(fake_backend)
        model.reset()

        probs = model.forward_chunk(torch.randn(5, 80))

        assert probs.size(0) == 0
        assert fake_backend.encoder_calls == []
        assert model.state.cached_feature.shape == (5, 80)
        assert model.offset == 8

        model.forward_chunk(torch.randn(11, 80))
        assert fake_backend.encoder_calls[0][EncoderInput.CHUNK].shape == (1, 16, 80)
        assert model.offset == 12

    def test_empty_input(self, fake_backend):
        model = StreamingAsrModel(fake_backend)
        model.reset()

        with pytest.raises(EmptyInputError):
            model.forward_chunk(torch.zeros(0, 80))


class TestAttentionMask:
    """Tests for the left-context visibility mask."""

    def test_scenario_windows(self, scenario_metadata, make_fake_backend):
        model = StreamingAsrModel(make_fake_backend(scenario_metadata))

        # First chunk: the whole cache is still zero-filled
        mask = model.build_attention_mask(64)
        assert mask.shape == (1, 1, 80)
        assert not mask[0, 0, :64].any()
        assert mask[0, 0, 64:].all()

        # One real chunk of history
        mask = model.build_attention_mask(80)
        assert not mask[0, 0, :48].any()
        assert mask[0, 0, 48:].all()

        # Cache full of real history
        assert model.build_attention_mask(128).all()
        assert model.build_attention_mask(400).all()

    def test_none_without_left_chunks(self, scenario_metadata, make_fake_backend):
        model = StreamingAsrModel(make_fake_backend(scenario_metadata.with_chunking(16, -1)))
        assert model.build_attention_mask(0) is None


class TestChunkFrames:
    """Tests for num_frames_for_chunk."""

    def test_first_and_following(self, scenario_metadata, make_fake_backend):
        model = StreamingAsrModel(make_fake_backend(scenario_metadata))

        assert model.num_frames_for_chunk(False) == 15 * 4 + 6 + 1
        assert model.num_frames_for_chunk(True) == 64

    def test_unbounded(self, scenario_metadata, make_fake_backend):
        model = StreamingAsrModel(make_fake_backend(scenario_metadata.with_chunking(-1, -1)))
        assert model.num_frames_for_chunk(False) < 0


class TestSessionState:
    """Tests for copy/reset behaviour."""

    def test_copy_is_independent(self, fake_backend):
        model = StreamingAsrModel(fake_backend)
        model.reset()
        model.forward_chunk(torch.randn(19, 80))

        clone = model.copy()

        assert clone.backend is model.backend
        assert clone.metadata is model.metadata
        assert clone.offset == 8
        assert clone.encoder_outs == []

        clone.forward_chunk(torch.randn(19, 80))
        clone.forward_chunk(torch.randn(16, 80))
        assert model.offset == 12
        assert len(model.encoder_outs) == 1

    def test_reset_replay_is_identical(self, fake_backend):
        model = StreamingAsrModel(fake_backend)
        chunks = [torch.randn(19, 80), torch.randn(16, 80), torch.randn(7, 80)]

        runs = []
        for _ in range(2):
            model.reset()
            probs = [model.forward_chunk(chunk) for chunk in chunks]
            runs.append((probs, model.state.att_cache.clone(), model.state.cnn_cache.clone(), model.offset))

        (probs_a, att_a, cnn_a, offset_a), (probs_b, att_b, cnn_b, offset_b) = runs
        assert all(torch.equal(a, b) for a, b in zip(probs_a, probs_b))
        assert torch.equal(att_a, att_b)
        assert torch.equal(cnn_a, cnn_b)
        assert offset_a == offset_b

    def test_rescoring_before_forward(self, fake_backend):
        model = StreamingAsrModel(fake_backend)
        model.reset()

        assert model.attention_rescoring([[1, 2, 3], [4]], 0.5) == [0.0, 0.0]
        assert fake_backend.decoder_calls == []

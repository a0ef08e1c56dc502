"""Shared fixtures: a scripted inference backend and a tiny torch model."""

import os
import sys

import pytest
import torch
import yaml

# Add project root to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from chunkasr.backend import EncoderInput, InferenceBackend
from chunkasr.metadata import load_metadata
from chunkasr.model import ConformerASRModel

VOCAB_SIZE = 10

SCENARIO_METADATA = {
    "output_size": 256,
    "num_blocks": 12,
    "head": 4,
    "cnn_module_kernel": 15,
    "subsampling_rate": 4,
    "right_context": 6,
    "sos_symbol": 2,
    "eos_symbol": 2,
    "is_bidirectional_decoder": 1,
    "chunk_size": 16,
    "left_chunks": 4,
}

SMALL_METADATA = {
    "output_size": 8,
    "num_blocks": 2,
    "head": 2,
    "cnn_module_kernel": 3,
    "subsampling_rate": 4,
    "right_context": 6,
    "sos_symbol": 9,
    "eos_symbol": 9,
    "is_bidirectional_decoder": 1,
    "chunk_size": 4,
    "left_chunks": 2,
}

TINY_ENCODER_CONF = {
    "output_size": 32,
    "attention_heads": 4,
    "linear_units": 64,
    "num_blocks": 2,
    "cnn_module_kernel": 5,
    "dropout_rate": 0.0,
    "positional_dropout_rate": 0.0,
}

TINY_DECODER_CONF = {
    "attention_heads": 4,
    "linear_units": 64,
    "num_blocks": 1,
    "r_num_blocks": 1,
    "dropout_rate": 0.0,
    "positional_dropout_rate": 0.0,
}


class FakeBackend(InferenceBackend):
    """Scripted backend recording every call.

    - encoder: T' = T // subsampling_rate frames, frame t filled with its
      absolute position (offset + t); caches come back incremented by one
    - ctc: frame at position p peaks at token (p % (V - 1)) + 1, never blank
    - decoder: fixed pseudo-random log-probabilities
    """

    def __init__(self, metadata, encoder_inputs=None, vocab_size=VOCAB_SIZE):
        super().__init__(metadata)
        self._encoder_inputs = frozenset(EncoderInput) if encoder_inputs is None else frozenset(encoder_inputs)
        self.vocab_size = vocab_size
        self.encoder_calls = []
        self.decoder_calls = []

    @property
    def encoder_inputs(self):
        return self._encoder_inputs

    def forward_encoder_chunk(self, inputs):
        self.encoder_calls.append(dict(inputs))
        chunk = inputs[EncoderInput.CHUNK]
        offset = inputs.get(EncoderInput.OFFSET, 0)
        num_out = chunk.size(1) // self.metadata.subsampling_rate
        positions = torch.arange(offset, offset + num_out, dtype=torch.float32)
        encoder_out = positions.view(1, num_out, 1).repeat(1, 1, self.metadata.encoder_output_size)
        return encoder_out, inputs[EncoderInput.ATT_CACHE] + 1.0, inputs[EncoderInput.CNN_CACHE] + 1.0

    def ctc_activation(self, encoder_out):
        positions = encoder_out[0, :, 0].long()
        logits = torch.zeros(1, positions.size(0), self.vocab_size)
        tokens = positions % (self.vocab_size - 1) + 1
        logits[0, torch.arange(positions.size(0)), tokens] = 5.0
        return torch.log_softmax(logits, dim=-1)

    def decoder_scores(self, num_hyps, max_len, phase):
        values = torch.arange(num_hyps * max_len * self.vocab_size, dtype=torch.float32)
        values = torch.sin(values * 0.37 + phase).view(num_hyps, max_len, self.vocab_size)
        return torch.log_softmax(values, dim=-1)

    def forward_attention_decoder(self, hyps, hyps_lens, encoder_out):
        self.decoder_calls.append((hyps.clone(), hyps_lens.clone(), encoder_out.clone()))
        num_hyps, max_len = hyps.shape
        fwd = self.decoder_scores(num_hyps, max_len, 0.0)
        if not self.metadata.bidirectional_decoder:
            return fwd, None
        return fwd, self.decoder_scores(num_hyps, max_len, 1.5)


@pytest.fixture
def scenario_metadata():
    return load_metadata(SCENARIO_METADATA)


@pytest.fixture
def small_metadata():
    return load_metadata(SMALL_METADATA)


@pytest.fixture
def fake_backend(small_metadata):
    return FakeBackend(small_metadata)


@pytest.fixture
def make_fake_backend():
    return FakeBackend


def build_tiny_model(decoder_type="bitransformer", vocab_size=12, input_size=20):
    torch.manual_seed(0)
    model = ConformerASRModel.build_model(
        vocab_size=vocab_size,
        input_size=input_size,
        encoder_conf=TINY_ENCODER_CONF,
        decoder_conf=TINY_DECODER_CONF,
        decoder_type=decoder_type,
    )
    model.eval()
    return model


@pytest.fixture
def tiny_model():
    return build_tiny_model()


@pytest.fixture
def make_tiny_model():
    return build_tiny_model


@pytest.fixture
def tiny_model_dir(tmp_path):
    """Model directory with config.yaml and final.pt of a tiny random model."""
    model = build_tiny_model()
    config = {
        "vocab_size": 12,
        "input_dim": 20,
        "decoder": "bitransformer",
        "encoder_conf": TINY_ENCODER_CONF,
        "decoder_conf": TINY_DECODER_CONF,
        "decode_conf": {"chunk_size": 4, "num_left_chunks": 2},
    }
    with open(tmp_path / "config.yaml", "w") as f:
        yaml.safe_dump(config, f)
    torch.save(model.state_dict(), tmp_path / "final.pt")
    return tmp_path

"""Chunk-by-chunk streaming wrapper around an inference backend."""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import torch

from chunkasr.backend import EncoderInput, InferenceBackend
from chunkasr.errors import EmptyInputError, UninitializedModelError
from chunkasr.metadata import ModelMetadata
from chunkasr.rescoring import AttentionRescorer

logger = logging.getLogger(__name__)


@dataclass
class StreamingState:
    """Mutable per-utterance state of a streaming session.

    Attributes:
        offset: Encoder output frames consumed so far (including the
            zero-filled cache window when left chunks are used)
        att_cache: Attention key/value cache (blocks, heads, cache_len, 2 * head_dim)
        cnn_cache: Convolution cache (blocks, 1, output_size, kernel - 1)
        encoder_outs: Encoder output of every forwarded chunk, in time order
        cached_feature: Input frames carried over to the next chunk (frames, feat_dim)
    """

    offset: int
    att_cache: torch.Tensor
    cnn_cache: torch.Tensor
    encoder_outs: List[torch.Tensor] = field(default_factory=list)
    cached_feature: Optional[torch.Tensor] = None


class StreamingAsrModel:
    """Streams feature chunks through the encoder and CTC head.

    The model keeps the attention and convolution caches between calls to
    forward_chunk and records every encoder output chunk so the whole
    utterance can be rescored at the end.

    Args:
        backend: Inference backend (may be shared with other sessions)
        metadata: Model metadata (default: backend.metadata). Pass
            ``backend.metadata.with_chunking(...)`` to decode with another
            chunk configuration.
    """

    def __init__(self, backend: InferenceBackend, metadata: Optional[ModelMetadata] = None):
        self.backend = backend
        self.metadata = backend.metadata if metadata is None else metadata
        self.rescorer = AttentionRescorer(
            backend,
            sos=self.metadata.start_symbol,
            eos=self.metadata.end_symbol,
            bidirectional=self.metadata.bidirectional_decoder,
        )
        self.state: Optional[StreamingState] = None
        self._vocab_size = 0

    @property
    def chunk_size(self) -> int:
        return self.metadata.chunk_size

    @property
    def num_left_chunks(self) -> int:
        return self.metadata.num_left_chunks

    @property
    def subsampling_rate(self) -> int:
        return self.metadata.subsampling_rate

    @property
    def right_context(self) -> int:
        return self.metadata.right_context

    @property
    def offset(self) -> int:
        return self._require_state().offset

    @property
    def encoder_outs(self) -> List[torch.Tensor]:
        return self._require_state().encoder_outs

    def reset(self):
        """Start a new utterance: zero caches, clear history and leftovers."""
        meta = self.metadata
        if meta.num_left_chunks > 0:
            cache_len = meta.required_cache_size
            offset = meta.required_cache_size
        else:
            cache_len = 0
            offset = 0

        att_cache = torch.zeros(
            meta.num_blocks, meta.num_attention_heads, cache_len, meta.head_dim * 2
        )
        cnn_cache = torch.zeros(
            meta.num_blocks, 1, meta.encoder_output_size, meta.cnn_kernel_size - 1
        )
        self.state = StreamingState(offset=offset, att_cache=att_cache, cnn_cache=cnn_cache)

    def copy(self) -> "StreamingAsrModel":
        """New session sharing backend and metadata, with its own fresh state."""
        other = StreamingAsrModel(self.backend, self.metadata)
        other.reset()
        return other

    def num_frames_for_chunk(self, start: bool) -> int:
        """Feature frames to read for the next chunk.

        Args:
            start: Whether at least one chunk has already been forwarded

        Returns:
            Frame count, or -1 for "read everything" when chunk_size <= 0
        """
        if self.chunk_size <= 0:
            return -1
        if not start:
            return (self.chunk_size - 1) * self.subsampling_rate + self.right_context + 1
        return self.chunk_size * self.subsampling_rate

    def build_attention_mask(self, offset: int) -> Optional[torch.Tensor]:
        """Visibility mask over the cached window plus the current chunk.

        Positions of the attention cache that have not been filled by real
        history yet are masked out (0). Returns None without left chunks.

        Shape:
            (1, 1, required_cache_size + chunk_size), bool
        """
        if self.num_left_chunks <= 0:
            return None
        required_cache_size = self.metadata.required_cache_size
        chunk_idx = offset // self.chunk_size - self.num_left_chunks
        att_mask = torch.ones(1, 1, required_cache_size + self.chunk_size, dtype=torch.bool)
        if chunk_idx < self.num_left_chunks:
            invisible = (self.num_left_chunks - chunk_idx) * self.chunk_size
            att_mask[:, :, :invisible] = False
        return att_mask

    def forward_chunk(self, features: torch.Tensor) -> torch.Tensor:
        """Encode one chunk of features and return its CTC log-probabilities.

        Args:
            features: New feature frames (frames, feat_dim)

        Returns:
            CTC log-probabilities (T', vocab_size); empty when the buffered
            frames are still too few for one encoder output frame

        Raises:
            UninitializedModelError: If reset() was never called
            EmptyInputError: If neither new nor buffered frames exist
        """
        state = self._require_state()

        if state.cached_feature is not None and state.cached_feature.size(0) > 0:
            feats = torch.cat([state.cached_feature, features.to(state.cached_feature.dtype)], dim=0)
        else:
            feats = features
        num_frames = feats.size(0)
        if num_frames == 0:
            raise EmptyInputError("forward_chunk called without any feature frames")

        if num_frames < self.right_context + 1:
            logger.debug(f"Buffering {num_frames} frames, need {self.right_context + 1}")
            state.cached_feature = feats
            return feats.new_zeros((0, self._vocab_size))

        inputs = {
            EncoderInput.CHUNK: feats.unsqueeze(0).float(),
            EncoderInput.OFFSET: state.offset,
            EncoderInput.REQUIRED_CACHE_SIZE: self.metadata.required_cache_size,
            EncoderInput.ATT_CACHE: state.att_cache,
            EncoderInput.CNN_CACHE: state.cnn_cache,
        }
        att_mask = self.build_attention_mask(state.offset)
        if att_mask is not None:
            inputs[EncoderInput.ATT_MASK] = att_mask
        accepted = self.backend.encoder_inputs
        inputs = {role: value for role, value in inputs.items() if role in accepted}

        encoder_out, state.att_cache, state.cnn_cache = self.backend.forward_encoder_chunk(inputs)

        num_out = encoder_out.size(1)
        state.offset += num_out
        state.encoder_outs.append(encoder_out)

        ctc_log_probs = self.backend.ctc_activation(encoder_out)[0]
        self._vocab_size = ctc_log_probs.size(-1)

        keep = 1 + self.right_context - self.subsampling_rate
        if keep > 0:
            state.cached_feature = feats[num_frames - min(keep, num_frames):]
        else:
            state.cached_feature = None

        logger.debug(
            f"Forwarded {num_frames} frames -> {num_out} encoder frames, offset={state.offset}"
        )
        return ctc_log_probs

    def attention_rescoring(
        self, hyps: Sequence[Sequence[int]], reverse_weight: float = 0.0
    ) -> List[float]:
        """Rescore hypotheses against every chunk forwarded so far."""
        state = self._require_state()
        return self.rescorer.rescore(hyps, state.encoder_outs, reverse_weight)

    def _require_state(self) -> StreamingState:
        if self.state is None:
            raise UninitializedModelError("StreamingAsrModel.reset() must be called first")
        return self.state

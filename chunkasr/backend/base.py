"""Inference backend interface used by the streaming model."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple, Union

import torch

from chunkasr.metadata import ModelMetadata


class EncoderInput(str, Enum):
    """Logical inputs of an encoder chunk forward.

    The values are the input names used by exported encoder graphs.
    """

    CHUNK = "chunk"
    OFFSET = "offset"
    REQUIRED_CACHE_SIZE = "required_cache_size"
    ATT_CACHE = "att_cache"
    CNN_CACHE = "cnn_cache"
    ATT_MASK = "att_mask"


EncoderInputs = Dict[EncoderInput, Union[torch.Tensor, int]]


class InferenceBackend(ABC):
    """Executes the three graphs of a streaming model.

    A backend may be shared by several sessions (see StreamingAsrModel.copy),
    so implementations must not keep per-utterance state.
    """

    def __init__(self, metadata: ModelMetadata):
        self.metadata = metadata

    @property
    @abstractmethod
    def encoder_inputs(self) -> FrozenSet[EncoderInput]:
        """Roles this backend's encoder accepts. Others are not passed."""

    @abstractmethod
    def forward_encoder_chunk(
        self, inputs: EncoderInputs
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Encode one chunk.

        Args:
            inputs: Role -> value, restricted to ``encoder_inputs``

        Returns:
            Tuple of (encoder_out (1, T', D), att_cache, cnn_cache)
        """

    @abstractmethod
    def ctc_activation(self, encoder_out: torch.Tensor) -> torch.Tensor:
        """CTC log-probabilities (1, T', V) for an encoder chunk."""

    @abstractmethod
    def forward_attention_decoder(
        self,
        hyps: torch.Tensor,
        hyps_lens: torch.Tensor,
        encoder_out: torch.Tensor,
    ) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
        """Score padded hypotheses with the attention decoder.

        Args:
            hyps: Padded hypotheses with leading <sos> (N, L), int64
            hyps_lens: Hypothesis lengths including <sos> (N,), int64
            encoder_out: Full-utterance encoder output (1, T, D)

        Returns:
            Tuple of (forward log-probs (N, L, V), backward log-probs or None)
        """

"""PyTorch inference backend."""

import logging
from pathlib import Path
from typing import FrozenSet, Optional, Tuple, Union

import torch

from chunkasr.backend.base import EncoderInput, EncoderInputs, InferenceBackend
from chunkasr.metadata import ModelMetadata, load_metadata
from chunkasr.model import ConformerASRModel

logger = logging.getLogger(__name__)


class TorchBackend(InferenceBackend):
    """Runs a ConformerASRModel in eval mode under torch.no_grad().

    Args:
        model: The model (put into eval mode here)
        metadata: Model metadata; derived from the model when omitted
        device: Device to run inference on (default: "cpu")
    """

    def __init__(
        self,
        model: ConformerASRModel,
        metadata: Optional[ModelMetadata] = None,
        device: str = "cpu",
    ):
        if metadata is None:
            metadata = load_metadata(model.metadata())
        super().__init__(metadata)
        self.device = torch.device(device)
        self.model = model.to(self.device)
        self.model.eval()

    @classmethod
    def from_directory(
        cls,
        model_dir: Union[str, Path],
        device: str = "cpu",
        num_threads: int = 1,
    ) -> "TorchBackend":
        """Load config.yaml + checkpoint from model_dir.

        Chunking comes from the ``decode_conf`` section of the config
        (chunk_size, num_left_chunks), defaulting to 16 / -1.
        """
        from chunkasr.model.checkpoint_loader import load_model_from_directory

        torch.set_num_threads(num_threads)
        model, config = load_model_from_directory(model_dir)

        decode_conf = config.get("decode_conf", {})
        metadata = load_metadata(model.metadata(
            chunk_size=decode_conf.get("chunk_size", 16),
            left_chunks=decode_conf.get("num_left_chunks", -1),
        ))
        metadata.log_info()
        return cls(model, metadata, device=device)

    @property
    def encoder_inputs(self) -> FrozenSet[EncoderInput]:
        return frozenset(EncoderInput)

    @torch.no_grad()
    def forward_encoder_chunk(
        self, inputs: EncoderInputs
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        att_mask = inputs.get(EncoderInput.ATT_MASK)
        if att_mask is not None:
            att_mask = att_mask.to(self.device)
        return self.model.forward_encoder_chunk(
            inputs[EncoderInput.CHUNK].to(self.device),
            int(inputs[EncoderInput.OFFSET]),
            int(inputs[EncoderInput.REQUIRED_CACHE_SIZE]),
            inputs[EncoderInput.ATT_CACHE].to(self.device),
            inputs[EncoderInput.CNN_CACHE].to(self.device),
            att_mask,
        )

    @torch.no_grad()
    def ctc_activation(self, encoder_out: torch.Tensor) -> torch.Tensor:
        return self.model.ctc_activation(encoder_out.to(self.device))

    @torch.no_grad()
    def forward_attention_decoder(
        self,
        hyps: torch.Tensor,
        hyps_lens: torch.Tensor,
        encoder_out: torch.Tensor,
    ) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
        return self.model.forward_attention_decoder(
            hyps.to(self.device), hyps_lens.to(self.device), encoder_out.to(self.device)
        )

"""Reference PyTorch streaming model."""

from chunkasr.model.asr_model import ConformerASRModel
from chunkasr.model.ctc import CTC

__all__ = [
    "CTC",
    "ConformerASRModel",
]

"""Encoder modules for streaming ASR."""

from chunkasr.model.encoder.conformer_encoder import ConformerEncoder
from chunkasr.model.encoder.encoder_layer import ConformerEncoderLayer
from chunkasr.model.encoder.subsampling import Conv2dSubsampling

__all__ = [
    "Conv2dSubsampling",
    "ConformerEncoder",
    "ConformerEncoderLayer",
]

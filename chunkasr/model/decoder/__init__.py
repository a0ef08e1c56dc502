"""Attention decoders for rescoring."""

from chunkasr.model.decoder.transformer_decoder import (
    BiTransformerDecoder,
    TransformerDecoder,
    TransformerDecoderLayer,
)

__all__ = [
    "BiTransformerDecoder",
    "TransformerDecoder",
    "TransformerDecoderLayer",
]

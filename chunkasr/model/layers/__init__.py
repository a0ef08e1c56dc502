"""Neural network layers for the streaming Conformer model."""

from chunkasr.model.layers.convolution import ConvolutionModule
from chunkasr.model.layers.feed_forward import PositionwiseFeedForward, Swish, get_activation
from chunkasr.model.layers.normalization import GlobalCMVN, LayerNorm
from chunkasr.model.layers.positional_encoding import PositionalEncoding

__all__ = [
    "ConvolutionModule",
    "GlobalCMVN",
    "LayerNorm",
    "PositionalEncoding",
    "PositionwiseFeedForward",
    "Swish",
    "get_activation",
]

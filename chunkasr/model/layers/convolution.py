"""Causal convolution module for streaming Conformer blocks."""

from typing import Optional, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from chunkasr.model.layers.feed_forward import Swish


class ConvolutionModule(nn.Module):
    """Convolution module from "Conformer: Convolution-augmented Transformer
    for Speech Recognition" (Gulati et al., 2020), made causal for streaming.

    Architecture:
        LayerNorm -> Pointwise Conv (expansion) -> GLU -> Causal Depthwise Conv
        -> LayerNorm -> Swish -> Pointwise Conv (projection) -> Dropout

    The depthwise convolution only looks left. Its left context of
    ``kernel_size - 1`` frames is carried between chunks in ``cache``, so
    chunked processing gives the same result as processing the whole
    sequence.

    Args:
        channels: Number of input/output channels
        kernel_size: Kernel size for depthwise convolution (default: 15)
        dropout_rate: Dropout rate (default: 0.1)
        bias: Whether to use bias in convolutions (default: True)

    Shape:
        - Input: (batch, time, channels)
        - Cache: (batch, channels, kernel_size - 1), or empty for the first chunk
        - Output: (batch, time, channels)
    """

    def __init__(
        self,
        channels: int,
        kernel_size: int = 15,
        dropout_rate: float = 0.1,
        bias: bool = True,
    ):
        super().__init__()
        assert kernel_size >= 1, "Kernel size must be positive"

        self.channels = channels
        self.lorder = kernel_size - 1
        self.layernorm = nn.LayerNorm(channels)

        # Pointwise expansion (2x channels for GLU)
        self.pointwise_conv1 = nn.Conv1d(channels, 2 * channels, kernel_size=1, bias=bias)

        # No padding: the left context comes from the cache
        self.depthwise_conv = nn.Conv1d(
            channels,
            channels,
            kernel_size=kernel_size,
            stride=1,
            padding=0,
            groups=channels,
            bias=bias,
        )

        self.norm = nn.LayerNorm(channels)
        self.activation = Swish()
        self.pointwise_conv2 = nn.Conv1d(channels, channels, kernel_size=1, bias=bias)
        self.dropout = nn.Dropout(dropout_rate)

    def forward(
        self,
        x: torch.Tensor,
        cache: Optional[torch.Tensor] = None,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """Forward pass.

        Args:
            x: Input tensor (batch, time, channels)
            cache: Left context from the previous chunk (batch, channels, lorder)

        Returns:
            Tuple of (output (batch, time, channels), new cache (batch, channels, lorder))
        """
        x = self.layernorm(x)
        x = x.transpose(1, 2)  # (batch, channels, time)

        if self.lorder > 0:
            if cache is None or cache.size(-1) == 0:
                x = F.pad(x, (self.lorder, 0), "constant", 0.0)
            else:
                assert cache.size(0) == x.size(0) and cache.size(1) == x.size(1), \
                    f"Conv cache shape {tuple(cache.shape)} does not match input {tuple(x.shape)}"
                x = torch.cat([cache, x], dim=2)
            new_cache = x[:, :, -self.lorder:]
        else:
            new_cache = x.new_zeros((x.size(0), x.size(1), 0))

        # GLU (Gated Linear Unit)
        x = self.pointwise_conv1(x)
        x_a, x_b = x.chunk(2, dim=1)
        x = x_a * torch.sigmoid(x_b)

        x = self.depthwise_conv(x)

        # LayerNorm works on the channel axis
        x = self.norm(x.transpose(1, 2)).transpose(1, 2)
        x = self.activation(x)

        x = self.pointwise_conv2(x)
        x = x.transpose(1, 2)

        return self.dropout(x), new_cache

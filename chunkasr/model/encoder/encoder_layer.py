"""Conformer encoder block with streaming caches."""

from typing import Optional, Tuple

import torch
import torch.nn as nn

from chunkasr.model.layers import LayerNorm


class ConformerEncoderLayer(nn.Module):
    """Single Conformer block: self-attention, convolution, feed-forward.

    Each sub-layer is wrapped in a residual connection. The self-attention
    consumes/produces the block's attention cache, the convolution module its
    conv cache.

    Args:
        size: Model dimension
        self_attn: Self-attention module (MultiHeadedAttention)
        feed_forward: Feed-forward module (PositionwiseFeedForward)
        conv_module: Convolution module (ConvolutionModule)
        dropout_rate: Dropout rate
        normalize_before: Pre-norm (True) or post-norm (False)

    Shape:
        - Input: (batch, time, size)
        - Output: (batch, time, size)
    """

    def __init__(
        self,
        size: int,
        self_attn: nn.Module,
        feed_forward: nn.Module,
        conv_module: nn.Module,
        dropout_rate: float,
        normalize_before: bool = True,
    ):
        super().__init__()
        self.size = size
        self.self_attn = self_attn
        self.feed_forward = feed_forward
        self.conv_module = conv_module
        self.norm_mha = LayerNorm(size)
        self.norm_ff = LayerNorm(size)
        self.norm_final = LayerNorm(size)
        self.dropout = nn.Dropout(dropout_rate)
        self.normalize_before = normalize_before

    def forward(
        self,
        x: torch.Tensor,
        mask: Optional[torch.Tensor],
        att_cache: Optional[torch.Tensor] = None,
        cnn_cache: Optional[torch.Tensor] = None,
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Forward pass.

        Args:
            x: Input tensor (batch, time, size)
            mask: Attention mask (batch, 1, cache_t + time), or None
            att_cache: Packed key/value cache (batch, head, cache_t, 2 * d_k)
            cnn_cache: Conv left context (batch, size, kernel_size - 1)

        Returns:
            Tuple of (output, new att_cache, new cnn_cache)
        """
        # Self-attention block
        residual = x
        if self.normalize_before:
            x = self.norm_mha(x)
        x_att, new_att_cache = self.self_attn(x, x, x, mask, cache=att_cache)
        x = residual + self.dropout(x_att)
        if not self.normalize_before:
            x = self.norm_mha(x)

        # Convolution block (normalizes its own input)
        residual = x
        x_conv, new_cnn_cache = self.conv_module(x, cache=cnn_cache)
        x = residual + self.dropout(x_conv)

        # Feed-forward block
        residual = x
        if self.normalize_before:
            x = self.norm_ff(x)
        x = residual + self.dropout(self.feed_forward(x))
        if not self.normalize_before:
            x = self.norm_ff(x)

        x = self.norm_final(x)
        return x, new_att_cache, new_cnn_cache

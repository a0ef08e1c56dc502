"""Chunk-streaming Conformer encoder."""

import logging
from typing import Optional, Tuple, Union

import torch
import torch.nn as nn

from chunkasr.model.attention import MultiHeadedAttention
from chunkasr.model.encoder.encoder_layer import ConformerEncoderLayer
from chunkasr.model.encoder.subsampling import Conv2dSubsampling
from chunkasr.model.layers import (
    ConvolutionModule,
    GlobalCMVN,
    LayerNorm,
    PositionwiseFeedForward,
    get_activation,
)

logger = logging.getLogger(__name__)


class ConformerEncoder(nn.Module):
    """Conformer encoder with chunk-wise streaming inference.

    The encoder processes one chunk of features at a time. History is kept
    outside the module in two caches that the caller threads through
    successive ``forward_chunk`` calls:

    - att_cache (num_blocks, head, cache_t, 2 * d_k): keys/values of earlier
      frames for each block
    - cnn_cache (num_blocks, 1, output_size, cnn_module_kernel - 1): left
      context of each block's causal convolution

    Args:
        input_size: Input feature dimension (e.g., 80 for fbank)
        output_size: Model dimension (e.g., 256)
        attention_heads: Number of attention heads
        linear_units: FFN hidden dimension
        num_blocks: Number of encoder layers
        dropout_rate: Dropout rate
        positional_dropout_rate: Positional encoding dropout
        attention_dropout_rate: Attention dropout
        cnn_module_kernel: Depthwise conv kernel size
        activation_type: FFN activation ('relu', 'swish', 'gelu')
        normalize_before: Pre-norm (True) or post-norm (False)
        global_cmvn: Optional input normalization layer

    Shape:
        - Input: (batch, time, input_size)
        - Output: (batch, time', output_size) with time' = time / 4 (approx.)
    """

    def __init__(
        self,
        input_size: int,
        output_size: int = 256,
        attention_heads: int = 4,
        linear_units: int = 2048,
        num_blocks: int = 12,
        dropout_rate: float = 0.1,
        positional_dropout_rate: float = 0.1,
        attention_dropout_rate: float = 0.0,
        cnn_module_kernel: int = 15,
        activation_type: str = "swish",
        normalize_before: bool = True,
        global_cmvn: Optional[nn.Module] = None,
    ):
        super().__init__()

        self._output_size = output_size
        self.attention_heads = attention_heads
        self.num_blocks = num_blocks
        self.cnn_module_kernel = cnn_module_kernel
        self.global_cmvn = global_cmvn

        self.embed = Conv2dSubsampling(
            input_size, output_size, positional_dropout_rate, kernels=[3, 3], strides=[2, 2]
        )

        self.normalize_before = normalize_before
        self.encoders = nn.ModuleList([
            ConformerEncoderLayer(
                size=output_size,
                self_attn=MultiHeadedAttention(
                    attention_heads, output_size, attention_dropout_rate
                ),
                feed_forward=PositionwiseFeedForward(
                    output_size, linear_units, dropout_rate, get_activation(activation_type)
                ),
                conv_module=ConvolutionModule(output_size, cnn_module_kernel, dropout_rate),
                dropout_rate=dropout_rate,
                normalize_before=normalize_before,
            )
            for _ in range(num_blocks)
        ])

        if self.normalize_before:
            self.after_norm = LayerNorm(output_size)

    def output_size(self) -> int:
        return self._output_size

    @property
    def subsampling_rate(self) -> int:
        return self.embed.subsampling_rate

    @property
    def right_context(self) -> int:
        return self.embed.right_context

    def init_caches(
        self, cache_size: int = 0, device: Union[str, torch.device] = "cpu"
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """Zero-filled (att_cache, cnn_cache) for the first chunk."""
        d_k = self._output_size // self.attention_heads
        att_cache = torch.zeros(
            (self.num_blocks, self.attention_heads, cache_size, d_k * 2), device=device
        )
        cnn_cache = torch.zeros(
            (self.num_blocks, 1, self._output_size, self.cnn_module_kernel - 1), device=device
        )
        return att_cache, cnn_cache

    def forward_chunk(
        self,
        xs: torch.Tensor,
        offset: Union[int, torch.Tensor],
        required_cache_size: Union[int, torch.Tensor],
        att_cache: torch.Tensor,
        cnn_cache: torch.Tensor,
        att_mask: Optional[torch.Tensor] = None,
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Encode one chunk.

        Args:
            xs: Chunk features (1, time, input_size), including right context
            offset: Output frames already produced (position of the chunk)
            required_cache_size: Frames of history to return in the new
                att_cache; 0 keeps none, negative keeps everything
            att_cache: (num_blocks, head, cache_t, 2 * d_k)
            cnn_cache: (num_blocks, 1, output_size, cnn_module_kernel - 1)
            att_mask: (1, 1, cache_t + chunk) visibility of cache + chunk, or None

        Returns:
            Tuple of (encoder output (1, time', output_size), new att_cache, new cnn_cache)
        """
        assert xs.size(0) == 1, "forward_chunk only supports batch size 1"
        required_cache_size = int(required_cache_size)

        if self.global_cmvn is not None:
            xs = self.global_cmvn(xs)
        xs, _ = self.embed(xs, offset)

        elayers, cache_t1 = att_cache.size(0), att_cache.size(2)
        attention_key_size = cache_t1 + xs.size(1)
        if required_cache_size < 0:
            next_cache_start = 0
        elif required_cache_size == 0:
            next_cache_start = attention_key_size
        else:
            next_cache_start = max(attention_key_size - required_cache_size, 0)

        r_att_cache = []
        r_cnn_cache = []
        for i, layer in enumerate(self.encoders):
            xs, new_att_cache, new_cnn_cache = layer(
                xs,
                att_mask,
                att_cache=att_cache[i : i + 1] if elayers > 0 else None,
                cnn_cache=cnn_cache[i] if cnn_cache.size(0) > 0 else None,
            )
            r_att_cache.append(new_att_cache[:, :, next_cache_start:, :])
            r_cnn_cache.append(new_cnn_cache.unsqueeze(0))

        if self.normalize_before:
            xs = self.after_norm(xs)

        return xs, torch.cat(r_att_cache, dim=0), torch.cat(r_cnn_cache, dim=0)

    def forward_chunk_by_chunk(
        self,
        xs: torch.Tensor,
        decoding_chunk_size: int,
        num_decoding_left_chunks: int = -1,
    ) -> torch.Tensor:
        """Encode a whole utterance by feeding it through forward_chunk.

        Reference path for checking streaming inference offline. No
        attention mask is used, so with limited left context the cache is
        only trimmed, not masked.

        Args:
            xs: Features (1, time, input_size)
            decoding_chunk_size: Output frames per chunk (> 0)
            num_decoding_left_chunks: Chunks of history (-1: unlimited)

        Returns:
            Encoder output (1, time', output_size)
        """
        assert decoding_chunk_size > 0, "decoding_chunk_size must be positive"
        subsampling = self.subsampling_rate
        context = self.right_context + 1
        stride = subsampling * decoding_chunk_size
        window = (decoding_chunk_size - 1) * subsampling + context
        required_cache_size = decoding_chunk_size * num_decoding_left_chunks

        att_cache, cnn_cache = self.init_caches(0, device=xs.device)
        outputs = []
        offset = 0
        num_frames = xs.size(1)
        for cur in range(0, num_frames - context + 1, stride):
            end = min(cur + window, num_frames)
            chunk_xs = xs[:, cur:end, :]
            y, att_cache, cnn_cache = self.forward_chunk(
                chunk_xs, offset, required_cache_size, att_cache, cnn_cache
            )
            outputs.append(y)
            offset += y.size(1)

        logger.debug(f"Encoded {num_frames} frames into {offset} output frames")
        return torch.cat(outputs, dim=1)

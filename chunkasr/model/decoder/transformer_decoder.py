"""Transformer attention decoders used for rescoring."""

from typing import Optional, Tuple

import torch
import torch.nn as nn

from chunkasr.model.attention import MultiHeadedAttention
from chunkasr.model.layers import LayerNorm, PositionalEncoding, PositionwiseFeedForward


def subsequent_mask(size: int, device: torch.device = torch.device("cpu")) -> torch.Tensor:
    """Causal mask (size, size), True on and below the diagonal."""
    mask = torch.triu(torch.ones(size, size, device=device, dtype=torch.bool), diagonal=1)
    return ~mask


def make_pad_mask(lengths: torch.Tensor, max_len: Optional[int] = None) -> torch.Tensor:
    """Padding mask (batch, max_len), True marks padding."""
    batch_size = lengths.size(0)
    if max_len is None:
        max_len = int(lengths.max())

    seq_range = torch.arange(0, max_len, dtype=torch.int64, device=lengths.device)
    seq_range_expand = seq_range.unsqueeze(0).expand(batch_size, max_len)
    return seq_range_expand >= lengths.unsqueeze(1)


class TransformerDecoderLayer(nn.Module):
    """Self-attention, cross-attention and feed-forward with residuals.

    Args:
        size: Model dimension
        self_attn: Self-attention module
        src_attn: Cross-attention module
        feed_forward: Feed-forward module
        dropout_rate: Dropout rate
        normalize_before: Pre-norm (True) or post-norm (False)
    """

    def __init__(
        self,
        size: int,
        self_attn: nn.Module,
        src_attn: nn.Module,
        feed_forward: nn.Module,
        dropout_rate: float,
        normalize_before: bool = True,
    ):
        super().__init__()
        self.size = size
        self.self_attn = self_attn
        self.src_attn = src_attn
        self.feed_forward = feed_forward
        self.norm1 = LayerNorm(size)
        self.norm2 = LayerNorm(size)
        self.norm3 = LayerNorm(size)
        self.dropout = nn.Dropout(dropout_rate)
        self.normalize_before = normalize_before

    def forward(
        self,
        tgt: torch.Tensor,
        tgt_mask: torch.Tensor,
        memory: torch.Tensor,
        memory_mask: torch.Tensor,
    ) -> torch.Tensor:
        """Forward pass.

        Args:
            tgt: Target sequence (batch, target_len, size)
            tgt_mask: Causal + padding mask (batch, target_len, target_len)
            memory: Encoder output (batch, source_len, size)
            memory_mask: Memory mask (batch, 1, source_len)

        Returns:
            Output (batch, target_len, size)
        """
        residual = tgt
        x = self.norm1(tgt) if self.normalize_before else tgt
        x, _ = self.self_attn(x, x, x, tgt_mask)
        x = residual + self.dropout(x)
        if not self.normalize_before:
            x = self.norm1(x)

        residual = x
        if self.normalize_before:
            x = self.norm2(x)
        x_src, _ = self.src_attn(x, memory, memory, memory_mask)
        x = residual + self.dropout(x_src)
        if not self.normalize_before:
            x = self.norm2(x)

        residual = x
        if self.normalize_before:
            x = self.norm3(x)
        x = residual + self.dropout(self.feed_forward(x))
        if not self.normalize_before:
            x = self.norm3(x)

        return x


class TransformerDecoder(nn.Module):
    """Transformer decoder scoring whole hypotheses at once.

    Token embedding + positional encoding, a stack of decoder layers and an
    output projection to the vocabulary.

    Args:
        vocab_size: Size of vocabulary
        encoder_output_size: Dimension of encoder output (= model dimension)
        attention_heads: Number of attention heads
        linear_units: FFN hidden dimension
        num_blocks: Number of decoder layers
        dropout_rate: Dropout rate
        positional_dropout_rate: Positional encoding dropout
        self_attention_dropout_rate: Self-attention dropout
        src_attention_dropout_rate: Cross-attention dropout
        normalize_before: Pre-norm (True) or post-norm (False)

    Shape:
        - Encoder output: (batch, enc_len, encoder_output_size)
        - Target tokens: (batch, tgt_len)
        - Output: (batch, tgt_len, vocab_size) logits
    """

    def __init__(
        self,
        vocab_size: int,
        encoder_output_size: int,
        attention_heads: int = 4,
        linear_units: int = 2048,
        num_blocks: int = 6,
        dropout_rate: float = 0.1,
        positional_dropout_rate: float = 0.1,
        self_attention_dropout_rate: float = 0.0,
        src_attention_dropout_rate: float = 0.0,
        normalize_before: bool = True,
    ):
        super().__init__()

        self.vocab_size = vocab_size
        attention_dim = encoder_output_size

        self.embed = nn.Embedding(vocab_size, attention_dim)
        self.pos_enc = PositionalEncoding(attention_dim, positional_dropout_rate)

        self.normalize_before = normalize_before
        if self.normalize_before:
            self.after_norm = LayerNorm(attention_dim)

        self.decoders = nn.ModuleList([
            TransformerDecoderLayer(
                size=attention_dim,
                self_attn=MultiHeadedAttention(
                    attention_heads, attention_dim, self_attention_dropout_rate
                ),
                src_attn=MultiHeadedAttention(
                    attention_heads, attention_dim, src_attention_dropout_rate
                ),
                feed_forward=PositionwiseFeedForward(
                    attention_dim, linear_units, dropout_rate
                ),
                dropout_rate=dropout_rate,
                normalize_before=normalize_before,
            )
            for _ in range(num_blocks)
        ])

        self.output_layer = nn.Linear(attention_dim, vocab_size)

    def forward(
        self,
        memory: torch.Tensor,
        memory_mask: torch.Tensor,
        ys_in_pad: torch.Tensor,
        ys_in_lens: torch.Tensor,
    ) -> torch.Tensor:
        """Forward pass.

        Args:
            memory: Encoder output (batch, enc_len, feat)
            memory_mask: Encoder mask (batch, 1, enc_len)
            ys_in_pad: Input token IDs with leading <sos> (batch, tgt_len)
            ys_in_lens: Input lengths (batch,)

        Returns:
            Logits (batch, tgt_len, vocab_size)
        """
        tgt_mask = ~make_pad_mask(ys_in_lens, ys_in_pad.size(1))[:, None, :]  # (batch, 1, tgt_len)
        causal = subsequent_mask(tgt_mask.size(-1), device=tgt_mask.device).unsqueeze(0)
        tgt_mask = tgt_mask & causal  # (batch, tgt_len, tgt_len)

        x, _ = self.pos_enc(self.embed(ys_in_pad))
        for decoder in self.decoders:
            x = decoder(x, tgt_mask, memory, memory_mask)

        if self.normalize_before:
            x = self.after_norm(x)
        return self.output_layer(x)


class BiTransformerDecoder(nn.Module):
    """Left-to-right and right-to-left Transformer decoders.

    The right-to-left decoder is fed the reversed hypotheses (still starting
    with <sos>) and scores them as if the utterance were read backwards.

    Args:
        vocab_size: Size of vocabulary
        encoder_output_size: Dimension of encoder output
        r_num_blocks: Number of right-to-left decoder layers
        **kwargs: Remaining TransformerDecoder arguments (shared by both)
    """

    def __init__(
        self,
        vocab_size: int,
        encoder_output_size: int,
        num_blocks: int = 3,
        r_num_blocks: int = 3,
        **kwargs,
    ):
        super().__init__()
        self.left_decoder = TransformerDecoder(
            vocab_size, encoder_output_size, num_blocks=num_blocks, **kwargs
        )
        self.right_decoder = TransformerDecoder(
            vocab_size, encoder_output_size, num_blocks=r_num_blocks, **kwargs
        )

    def forward(
        self,
        memory: torch.Tensor,
        memory_mask: torch.Tensor,
        ys_in_pad: torch.Tensor,
        ys_in_lens: torch.Tensor,
        r_ys_in_pad: torch.Tensor,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """Forward pass.

        Returns:
            Tuple of (left-to-right logits, right-to-left logits), each
            (batch, tgt_len, vocab_size)
        """
        l_x = self.left_decoder(memory, memory_mask, ys_in_pad, ys_in_lens)
        r_x = self.right_decoder(memory, memory_mask, r_ys_in_pad, ys_in_lens)
        return l_x, r_x

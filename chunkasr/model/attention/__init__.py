"""Attention modules."""

from chunkasr.model.attention.multi_head_attention import MultiHeadedAttention

__all__ = [
    "MultiHeadedAttention",
]

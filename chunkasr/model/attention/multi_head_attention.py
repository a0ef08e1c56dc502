"""Multi-head attention with a packed key/value cache."""

import math
from typing import Optional, Tuple

import torch
import torch.nn as nn


class MultiHeadedAttention(nn.Module):
    """Multi-head scaled dot-product attention.

    For streaming self-attention the keys and values of earlier chunks are
    passed in as ``cache``, packed along the last axis as
    ``cat([k, v], dim=-1)`` with shape (batch, n_head, cache_t, 2 * d_k).
    The returned cache has the same layout and covers cache + current chunk;
    trimming it to the configured history length is the caller's job.

    Args:
        n_head: Number of attention heads
        n_feat: Model dimension
        dropout_rate: Dropout rate (default: 0.0)

    Shape:
        - Input: query (batch, time_q, n_feat), key/value (batch, time_k, n_feat)
        - Output: (batch, time_q, n_feat)
    """

    def __init__(self, n_head: int, n_feat: int, dropout_rate: float = 0.0):
        super().__init__()
        assert n_feat % n_head == 0, "n_feat must be divisible by n_head"

        self.d_k = n_feat // n_head
        self.h = n_head

        self.linear_q = nn.Linear(n_feat, n_feat)
        self.linear_k = nn.Linear(n_feat, n_feat)
        self.linear_v = nn.Linear(n_feat, n_feat)
        self.linear_out = nn.Linear(n_feat, n_feat)

        self.dropout = nn.Dropout(p=dropout_rate)

    def forward_qkv(
        self, query: torch.Tensor, key: torch.Tensor, value: torch.Tensor
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Project and split heads.

        Returns:
            q, k, v each (batch, n_head, time, d_k)
        """
        n_batch = query.size(0)

        q = self.linear_q(query).view(n_batch, -1, self.h, self.d_k)
        k = self.linear_k(key).view(n_batch, -1, self.h, self.d_k)
        v = self.linear_v(value).view(n_batch, -1, self.h, self.d_k)

        return q.transpose(1, 2), k.transpose(1, 2), v.transpose(1, 2)

    def forward_attention(
        self,
        value: torch.Tensor,
        scores: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        """Softmax over keys, weight values, merge heads.

        Args:
            value: (batch, n_head, time_k, d_k)
            scores: (batch, n_head, time_q, time_k)
            mask: (batch, 1, time_k) or (batch, time_q, time_k); 0 marks invisible keys

        Returns:
            Output tensor (batch, time_q, n_feat)
        """
        n_batch = value.size(0)

        if mask is not None and mask.size(-1) > 0:
            mask = mask.unsqueeze(1).eq(0)  # (batch, 1, *, time_k)
            mask = mask[..., : scores.size(-1)]
            min_value = torch.finfo(scores.dtype).min
            scores = scores.masked_fill(mask, min_value)
            attn = torch.softmax(scores, dim=-1).masked_fill(mask, 0.0)
        else:
            attn = torch.softmax(scores, dim=-1)

        x = torch.matmul(self.dropout(attn), value)
        x = x.transpose(1, 2).contiguous().view(n_batch, -1, self.h * self.d_k)

        return self.linear_out(x)

    def forward(
        self,
        query: torch.Tensor,
        key: torch.Tensor,
        value: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
        cache: Optional[torch.Tensor] = None,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """Forward pass.

        Args:
            query: Query tensor (batch, time_q, n_feat)
            key: Key tensor (batch, time_k, n_feat)
            value: Value tensor (batch, time_k, n_feat)
            mask: Attention mask over cache + current keys
            cache: Packed key/value cache (batch, n_head, cache_t, 2 * d_k)

        Returns:
            Tuple of (output (batch, time_q, n_feat),
                      new cache (batch, n_head, cache_t + time_k, 2 * d_k))
        """
        q, k, v = self.forward_qkv(query, key, value)

        if cache is not None and cache.size(2) > 0:
            k_cache, v_cache = torch.split(cache, cache.size(-1) // 2, dim=-1)
            k = torch.cat([k_cache, k], dim=2)
            v = torch.cat([v_cache, v], dim=2)
        new_cache = torch.cat([k, v], dim=-1)

        scores = torch.matmul(q, k.transpose(-2, -1)) / math.sqrt(self.d_k)
        return self.forward_attention(v, scores, mask), new_cache

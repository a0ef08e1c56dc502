"""Absolute positional encoding with streaming offsets."""

import math
from typing import Tuple, Union

import torch
import torch.nn as nn


class PositionalEncoding(nn.Module):
    """Sinusoidal positional encoding.

    PE(pos, 2i)   = sin(pos / 10000^(2i/d_model))
    PE(pos, 2i+1) = cos(pos / 10000^(2i/d_model))

    Streaming callers pass the number of frames already produced as
    ``offset`` so that a chunk gets the positions it would have had inside
    the full utterance.

    Args:
        d_model: Embedding dimension
        dropout_rate: Dropout rate
        max_len: Maximum sequence length (default: 5000)
    """

    def __init__(self, d_model: int, dropout_rate: float = 0.1, max_len: int = 5000):
        super().__init__()
        self.d_model = d_model
        self.xscale = math.sqrt(d_model)
        self.max_len = max_len
        self.dropout = nn.Dropout(p=dropout_rate)
        self.register_buffer("pe", self._sinusoid_table(max_len), persistent=False)  # (1, max_len, d_model)

    def _sinusoid_table(self, max_len: int, device=None) -> torch.Tensor:
        pe = torch.zeros(max_len, self.d_model, device=device)
        position = torch.arange(0, max_len, dtype=torch.float32, device=device).unsqueeze(1)
        div_term = torch.exp(
            torch.arange(0, self.d_model, 2, dtype=torch.float32, device=device)
            * -(math.log(10000.0) / self.d_model)
        )
        pe[:, 0::2] = torch.sin(position * div_term)
        pe[:, 1::2] = torch.cos(position * div_term)
        return pe.unsqueeze(0)

    def extend_pe(self, length: int):
        """Grow the table so that it covers at least ``length`` positions."""
        if length <= self.max_len:
            return
        # at least double
        max_len = max(length, 2 * self.max_len)
        self.pe = self._sinusoid_table(max_len, device=self.pe.device).to(self.pe.dtype)
        self.max_len = max_len

    def position_encoding(self, offset: Union[int, torch.Tensor], size: int) -> torch.Tensor:
        """Positional encodings for positions [offset, offset + size).

        The table is extended when the requested positions run past it.

        Args:
            offset: First position
            size: Number of positions

        Returns:
            Encodings (1, size, d_model)
        """
        offset = int(offset)
        self.extend_pe(offset + size)
        return self.pe[:, offset : offset + size]

    def forward(
        self, x: torch.Tensor, offset: Union[int, torch.Tensor] = 0
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """Scale x by sqrt(d_model) and add positional encoding.

        Args:
            x: Input tensor (batch, time, d_model)
            offset: Position of the first frame

        Returns:
            Tuple of (encoded input (batch, time, d_model), encodings (1, time, d_model))
        """
        pos_emb = self.position_encoding(offset, x.size(1))
        x = x * self.xscale + pos_emb
        return self.dropout(x), self.dropout(pos_emb)

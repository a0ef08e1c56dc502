"""CTC (Connectionist Temporal Classification) output layer."""

import torch
import torch.nn as nn
import torch.nn.functional as F


class CTC(nn.Module):
    """CTC projection from encoder output to per-frame symbol scores.

    Args:
        vocab_size: Number of output classes (including blank)
        encoder_output_size: Dimension of encoder output
        dropout_rate: Dropout rate before output projection

    Shape:
        - Encoder output: (batch, time, encoder_output_size)
        - Output: (batch, time, vocab_size)
    """

    def __init__(
        self,
        vocab_size: int,
        encoder_output_size: int,
        dropout_rate: float = 0.0,
    ):
        super().__init__()

        self.vocab_size = vocab_size
        self.dropout = nn.Dropout(dropout_rate)
        self.ctc_lo = nn.Linear(encoder_output_size, vocab_size)

    def forward(self, hs_pad: torch.Tensor) -> torch.Tensor:
        """Logits (batch, time, vocab_size)."""
        return self.ctc_lo(self.dropout(hs_pad))

    def log_softmax(self, hs_pad: torch.Tensor) -> torch.Tensor:
        """Log probabilities (batch, time, vocab_size) for decoding."""
        return F.log_softmax(self.ctc_lo(hs_pad), dim=-1)

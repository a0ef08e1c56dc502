"""Normalization layers."""

import numpy as np
import torch
import torch.nn as nn


class LayerNorm(nn.LayerNorm):
    """Layer normalization with the ESPnet/WeNet default epsilon.

    Args:
        dim: Normalization dimension
        eps: Epsilon for numerical stability (default: 1e-12)
    """

    def __init__(self, dim: int, eps: float = 1e-12):
        super().__init__(dim, eps=eps)


class GlobalCMVN(nn.Module):
    """Global cepstral mean and variance normalization of input features.

    The statistics are part of the model so that every backend sees the same
    normalized input; they are stored as buffers and saved with the weights.

    Args:
        mean: Per-dimension mean (feat_dim,)
        istd: Per-dimension inverse standard deviation (feat_dim,)

    Shape:
        - Input: (batch, time, feat_dim)
        - Output: (batch, time, feat_dim)
    """

    def __init__(self, mean: torch.Tensor, istd: torch.Tensor):
        super().__init__()
        assert mean.shape == istd.shape, "mean and istd must have the same shape"
        self.register_buffer("mean", mean)
        self.register_buffer("istd", istd)

    @classmethod
    def from_stats(cls, mean: np.ndarray, std: np.ndarray) -> "GlobalCMVN":
        mean = torch.from_numpy(np.asarray(mean, dtype=np.float32))
        istd = 1.0 / torch.from_numpy(np.asarray(std, dtype=np.float32)).clamp(min=1e-20)
        return cls(mean, istd)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return (x - self.mean) * self.istd

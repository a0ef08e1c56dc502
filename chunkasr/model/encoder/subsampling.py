"""Convolutional subsampling of input features."""

import math
from typing import List, Optional, Tuple, Union

import torch
import torch.nn as nn

from chunkasr.model.layers import PositionalEncoding


class Conv2dSubsampling(nn.Module):
    """Strided 2D convolutions followed by a linear projection and
    positional encoding.

    Args:
        input_dim: Input feature dimension
        output_dim: Output dimension (model dimension)
        dropout_rate: Dropout rate
        kernels: Kernel size of each conv layer (default: [3, 3])
        strides: Stride of each conv layer (default: [2, 2])

    Shape:
        - Input: (batch, time, input_dim)
        - Output: (batch, time', output_dim)

    Example:
        With kernels=[3, 3], strides=[2, 2] the subsampling rate is 4 and
        the right context is 6: an output frame needs 7 input frames, every
        further output frame needs 4 more.
    """

    def __init__(
        self,
        input_dim: int,
        output_dim: int,
        dropout_rate: float = 0.0,
        kernels: Optional[List[int]] = None,
        strides: Optional[List[int]] = None,
    ):
        super().__init__()

        if kernels is None:
            kernels = [3, 3]
        if strides is None:
            strides = [2, 2]

        assert len(kernels) == len(strides), "kernels and strides must have same length"

        self.kernels = kernels
        self.strides = strides

        conv_layers = []
        for i, (kernel, stride) in enumerate(zip(kernels, strides)):
            in_channels = 1 if i == 0 else output_dim
            conv_layers.extend([
                nn.Conv2d(in_channels, output_dim, kernel, stride),
                nn.ReLU(),
            ])
        self.conv = nn.Sequential(*conv_layers)

        # Each conv reduces: out = (in - kernel) / stride + 1
        out_len = input_dim
        for kernel, stride in zip(kernels, strides):
            out_len = math.floor((out_len - kernel) / stride + 1)
        self.out = nn.Linear(output_dim * out_len, output_dim)

        self.pos_enc = PositionalEncoding(output_dim, dropout_rate)

    @property
    def subsampling_rate(self) -> int:
        return math.prod(self.strides)

    @property
    def right_context(self) -> int:
        """Input frames needed beyond the first one to produce one output frame."""
        context = 0
        step = 1
        for kernel, stride in zip(self.kernels, self.strides):
            context += (kernel - 1) * step
            step *= stride
        return context

    def output_length(self, num_frames: int) -> int:
        for kernel, stride in zip(self.kernels, self.strides):
            num_frames = max((num_frames - kernel) // stride + 1, 0)
        return num_frames

    def position_encoding(self, offset: Union[int, torch.Tensor], size: int) -> torch.Tensor:
        return self.pos_enc.position_encoding(offset, size)

    def forward(
        self,
        x: torch.Tensor,
        offset: Union[int, torch.Tensor] = 0,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """Forward pass.

        Args:
            x: Input tensor (batch, time, input_dim)
            offset: Output position of the first produced frame

        Returns:
            Tuple of (subsampled output (batch, time', output_dim),
                      positional encodings (1, time', output_dim))
        """
        x = x.unsqueeze(1)  # (batch, 1, time, input_dim)
        x = self.conv(x)  # (batch, output_dim, time', feat')

        batch, channels, time, feat = x.size()
        x = self.out(x.transpose(1, 2).contiguous().view(batch, time, channels * feat))

        return self.pos_enc(x, offset)

"""Position-wise feed-forward network and activations."""

import torch
import torch.nn as nn


class Swish(nn.Module):
    """Swish activation function: x * sigmoid(x)."""

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x * torch.sigmoid(x)


ACTIVATIONS = {
    "relu": nn.ReLU,
    "swish": Swish,
    "gelu": nn.GELU,
}


def get_activation(name: str) -> nn.Module:
    """Instantiate an activation by its config name."""
    if name not in ACTIVATIONS:
        raise ValueError(f"Unknown activation '{name}', expected one of {list(ACTIVATIONS)}")
    return ACTIVATIONS[name]()


class PositionwiseFeedForward(nn.Module):
    """FFN(x) = W2(dropout(act(W1 x))).

    Args:
        input_dim: Input dimension
        hidden_dim: Hidden dimension
        dropout_rate: Dropout rate
        activation: Activation module (default: ReLU)

    Shape:
        - Input: (batch, time, input_dim)
        - Output: (batch, time, input_dim)
    """

    def __init__(
        self,
        input_dim: int,
        hidden_dim: int,
        dropout_rate: float = 0.1,
        activation: nn.Module = None,
    ):
        super().__init__()
        self.w_1 = nn.Linear(input_dim, hidden_dim)
        self.w_2 = nn.Linear(hidden_dim, input_dim)
        self.dropout = nn.Dropout(dropout_rate)
        self.activation = activation if activation is not None else nn.ReLU()

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.w_2(self.dropout(self.activation(self.w_1(x))))

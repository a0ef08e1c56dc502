"""Model metadata shared by every streaming session of a model."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Union

import yaml

from chunkasr.errors import MetadataError

logger = logging.getLogger(__name__)

# Metadata key -> ModelMetadata field
METADATA_KEYS = {
    "output_size": "encoder_output_size",
    "num_blocks": "num_blocks",
    "head": "num_attention_heads",
    "cnn_module_kernel": "cnn_kernel_size",
    "subsampling_rate": "subsampling_rate",
    "right_context": "right_context",
    "sos_symbol": "start_symbol",
    "eos_symbol": "end_symbol",
    "is_bidirectional_decoder": "bidirectional_decoder",
    "chunk_size": "chunk_size",
    "left_chunks": "num_left_chunks",
}


@dataclass(frozen=True)
class ModelMetadata:
    """Static description of an exported streaming model.

    Attributes:
        encoder_output_size: Encoder hidden dimension
        num_blocks: Number of encoder layers
        num_attention_heads: Attention heads per encoder layer
        cnn_kernel_size: Depthwise conv kernel size of the conformer blocks
        subsampling_rate: Input frames per encoder output frame
        right_context: Extra input frames the subsampling layer looks ahead
        start_symbol: <sos> token id
        end_symbol: <eos> token id
        bidirectional_decoder: Whether the rescoring decoder has a right-to-left branch
        chunk_size: Encoder output frames per chunk
        num_left_chunks: Chunks of history kept in the attention cache (<= 0: none/unbounded)
    """

    encoder_output_size: int
    num_blocks: int
    num_attention_heads: int
    cnn_kernel_size: int
    subsampling_rate: int
    right_context: int
    start_symbol: int
    end_symbol: int
    bidirectional_decoder: bool
    chunk_size: int
    num_left_chunks: int

    @property
    def head_dim(self) -> int:
        return self.encoder_output_size // self.num_attention_heads

    @property
    def required_cache_size(self) -> int:
        return self.chunk_size * self.num_left_chunks

    def with_chunking(self, chunk_size: int, num_left_chunks: int) -> "ModelMetadata":
        """Return a copy decoding with a different chunk configuration."""
        values = {name: getattr(self, name) for name in METADATA_KEYS.values()}
        values["chunk_size"] = chunk_size
        values["num_left_chunks"] = num_left_chunks
        return ModelMetadata(**values)

    def to_dict(self) -> Dict[str, int]:
        """Inverse of load_metadata: metadata keys -> integer values."""
        return {key: int(getattr(self, field)) for key, field in METADATA_KEYS.items()}

    def log_info(self):
        logger.info("Model metadata:")
        for key, field in METADATA_KEYS.items():
            logger.info(f"\t{key} {getattr(self, field)}")


def _parse_int(key: str, value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise MetadataError(f"Metadata key '{key}' must be an integer, got {value!r}")


def load_metadata(source: Mapping[str, Any]) -> ModelMetadata:
    """Build ModelMetadata from a key/value mapping.

    Values may be integers or integer strings (ONNX custom metadata stores
    everything as strings).

    Args:
        source: Mapping containing every key of METADATA_KEYS

    Returns:
        ModelMetadata instance

    Raises:
        MetadataError: If a key is missing or its value is not an integer
    """
    missing = [key for key in METADATA_KEYS if key not in source]
    if missing:
        raise MetadataError(f"Missing metadata keys: {missing}")

    values = {}
    for key, field in METADATA_KEYS.items():
        values[field] = _parse_int(key, source[key])
    values["bidirectional_decoder"] = bool(values["bidirectional_decoder"])

    if values["num_attention_heads"] <= 0 or values["num_blocks"] < 0:
        raise MetadataError(
            f"Invalid encoder geometry: head={values['num_attention_heads']}, "
            f"num_blocks={values['num_blocks']}"
        )

    return ModelMetadata(**values)


def load_metadata_file(path: Union[str, Path]) -> ModelMetadata:
    """Load metadata from a YAML file (top level or a 'metadata' section)."""
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if "metadata" in data:
        data = data["metadata"]
    return load_metadata(data)

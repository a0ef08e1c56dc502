"""Streaming chunk-based speech recognition inference."""

from chunkasr.asr_model import StreamingAsrModel, StreamingState
from chunkasr.decoder import AsrDecoder, DecodeOptions, DecodeResult, DecodeState
from chunkasr.errors import EmptyInputError, MetadataError, UninitializedModelError
from chunkasr.feature_pipeline import FeaturePipeline
from chunkasr.metadata import ModelMetadata, load_metadata
from chunkasr.recognizer import Recognizer

__version__ = "0.1.0"

__all__ = [
    "AsrDecoder",
    "DecodeOptions",
    "DecodeResult",
    "DecodeState",
    "EmptyInputError",
    "FeaturePipeline",
    "MetadataError",
    "ModelMetadata",
    "Recognizer",
    "StreamingAsrModel",
    "StreamingState",
    "UninitializedModelError",
    "load_metadata",
]

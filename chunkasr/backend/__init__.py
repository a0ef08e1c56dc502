"""Inference backends executing the encoder, CTC and rescoring graphs."""

from chunkasr.backend.base import EncoderInput, EncoderInputs, InferenceBackend
from chunkasr.backend.onnx_backend import OnnxBackend
from chunkasr.backend.torch_backend import TorchBackend

__all__ = [
    "EncoderInput",
    "EncoderInputs",
    "InferenceBackend",
    "OnnxBackend",
    "TorchBackend",
    "load_backend",
]


def load_backend(model_dir, backend: str = "torch", device: str = "cpu", num_threads: int = 1) -> InferenceBackend:
    """Load a backend of the given type ('torch' or 'onnx') from model_dir."""
    if backend == "torch":
        return TorchBackend.from_directory(model_dir, device=device, num_threads=num_threads)
    if backend == "onnx":
        return OnnxBackend.from_directory(model_dir, num_threads=num_threads)
    raise ValueError(f"Unknown backend '{backend}', expected 'torch' or 'onnx'")

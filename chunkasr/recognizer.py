"""High-level streaming recognizer around a decode session."""

import logging
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Union

import numpy as np
import torch

from chunkasr.asr_model import StreamingAsrModel
from chunkasr.backend import InferenceBackend, load_backend
from chunkasr.decoder import AsrDecoder, DecodeOptions, DecodeResult, DecodeState
from chunkasr.feature_pipeline import FeaturePipeline
from chunkasr.symbol_table import UNITS_NAME, SymbolTable

logger = logging.getLogger(__name__)


class Recognizer:
    """Feeds features to an AsrDecoder and keeps partial and final results.

    Args:
        backend: Inference backend
        options: Decode options; chunk_size / num_left_chunks override the
            backend's metadata when set
        symbol_table: Optional symbol table for detokenization
    """

    def __init__(
        self,
        backend: InferenceBackend,
        options: Optional[DecodeOptions] = None,
        symbol_table: Optional[SymbolTable] = None,
    ):
        self.backend = backend
        self.options = replace(options) if options is not None else DecodeOptions()

        metadata = backend.metadata
        if self.options.chunk_size is not None or self.options.num_left_chunks is not None:
            metadata = metadata.with_chunking(
                self.options.chunk_size if self.options.chunk_size is not None else metadata.chunk_size,
                self.options.num_left_chunks if self.options.num_left_chunks is not None
                else metadata.num_left_chunks,
            )
            logger.info(
                f"Decoding with chunk_size={metadata.chunk_size}, "
                f"num_left_chunks={metadata.num_left_chunks}"
            )

        self.decoder = AsrDecoder(
            FeaturePipeline(),
            StreamingAsrModel(backend, metadata),
            options=self.options,
            symbol_table=symbol_table,
        )
        self.partial_result = ""
        self.final_result: List[DecodeResult] = []
        self.finished = False

    @classmethod
    def from_directory(
        cls,
        model_dir: Union[str, Path],
        backend: str = "torch",
        device: str = "cpu",
        num_threads: int = 1,
        options: Optional[DecodeOptions] = None,
    ) -> "Recognizer":
        """Load a backend and, if present, units.txt from model_dir."""
        model_dir = Path(model_dir)
        logger.info(f"Loading {backend} model from {model_dir}")
        inference_backend = load_backend(model_dir, backend=backend, device=device, num_threads=num_threads)

        symbol_table = None
        units_path = model_dir / UNITS_NAME
        if units_path.exists():
            symbol_table = SymbolTable.from_file(units_path)
        else:
            logger.warning(f"Symbol table not found: {units_path}")
        return cls(inference_backend, options=options, symbol_table=symbol_table)

    def set_nbest(self, nbest: int):
        self.options.nbest = max(nbest, 1)

    def reset(self):
        self.decoder.reset()
        self.partial_result = ""
        self.final_result = []
        self.finished = False

    def decode(self, features: Union[np.ndarray, torch.Tensor], last: bool = False) -> str:
        """Accept a block of features and decode every complete chunk.

        Args:
            features: Feature frames (frames, feat_dim)
            last: Whether this block ends the utterance

        Returns:
            The current best sentence (final once ``last`` was given)
        """
        if self.finished:
            raise RuntimeError("Utterance already finished, call reset() first")

        pipeline = self.decoder.feature_pipeline
        pipeline.accept_features(features)
        if last:
            pipeline.set_input_finished()

        while True:
            state = self.decoder.decode()
            if state == DecodeState.WAIT_FEATS:
                break
            elif state in (DecodeState.END_BATCH, DecodeState.ENDPOINT):
                self._update_partial()
            elif state == DecodeState.END_FEATS:
                self._update_partial()
                self.decoder.rescoring()
                self.final_result = list(self.decoder.result)
                self._update_partial()
                self.finished = True
                logger.info(f"Final result: {self.partial_result}")
                break
        return self.partial_result

    @property
    def result(self) -> List[DecodeResult]:
        """Final n-best after the last block, current n-best before that."""
        return self.final_result if self.finished else list(self.decoder.result)

    def _update_partial(self):
        results = self.decoder.result
        self.partial_result = results[0].sentence if results else ""
        logger.debug(f"Partial result: {self.partial_result}")

"""onnxruntime inference backend for exported encoder/ctc/decoder graphs."""

import logging
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

import numpy as np
import torch

from chunkasr.backend.base import EncoderInput, EncoderInputs, InferenceBackend
from chunkasr.metadata import ModelMetadata, load_metadata

logger = logging.getLogger(__name__)

ENCODER_ONNX = "encoder.onnx"
CTC_ONNX = "ctc.onnx"
DECODER_ONNX = "decoder.onnx"


def get_input_output_names(session: Any) -> Tuple[List[str], List[str]]:
    """Declared input/output names of a session, logged with type and shape."""
    in_names = []
    for i, node in enumerate(session.get_inputs()):
        logger.info(f"\tInput {i} : name={node.name} type={node.type} dims={node.shape}")
        in_names.append(node.name)
    out_names = []
    for i, node in enumerate(session.get_outputs()):
        logger.info(f"\tOutput {i} : name={node.name} type={node.type} dims={node.shape}")
        out_names.append(node.name)
    return in_names, out_names


def _to_numpy(value: Union[torch.Tensor, int], dtype: Any) -> np.ndarray:
    if isinstance(value, torch.Tensor):
        return value.detach().cpu().numpy().astype(dtype, copy=False)
    return np.array(value, dtype=dtype)


class OnnxBackend(InferenceBackend):
    """Runs three onnxruntime sessions: encoder, CTC and rescoring decoder.

    Encoder inputs are bound by name: a graph input whose name matches an
    EncoderInput value receives that role's value. Graphs exported without
    some inputs (e.g. no ``att_mask`` for models without left chunks)
    simply do not declare them.

    Args:
        encoder_session: Session of encoder.onnx
        ctc_session: Session of ctc.onnx
        rescore_session: Session of decoder.onnx
        metadata: Model metadata
    """

    # Element type expected by exported graphs for each role
    INPUT_DTYPES = {
        EncoderInput.CHUNK: np.float32,
        EncoderInput.OFFSET: np.int64,
        EncoderInput.REQUIRED_CACHE_SIZE: np.int64,
        EncoderInput.ATT_CACHE: np.float32,
        EncoderInput.CNN_CACHE: np.float32,
        EncoderInput.ATT_MASK: np.bool_,
    }

    def __init__(
        self,
        encoder_session: Any,
        ctc_session: Any,
        rescore_session: Any,
        metadata: ModelMetadata,
    ):
        super().__init__(metadata)
        self.encoder_session = encoder_session
        self.ctc_session = ctc_session
        self.rescore_session = rescore_session

        logger.info("Onnx Encoder:")
        self.encoder_in_names, self.encoder_out_names = get_input_output_names(encoder_session)
        logger.info("Onnx CTC:")
        self.ctc_in_names, self.ctc_out_names = get_input_output_names(ctc_session)
        logger.info("Onnx Rescore:")
        self.rescore_in_names, self.rescore_out_names = get_input_output_names(rescore_session)

        roles = {role.value: role for role in EncoderInput}
        self._encoder_bindings: Dict[EncoderInput, str] = {}
        for name in self.encoder_in_names:
            if name in roles:
                self._encoder_bindings[roles[name]] = name
            else:
                logger.warning(f"Encoder input '{name}' has no known role and will not be fed")

    @classmethod
    def from_directory(
        cls,
        model_dir: Union[str, Path],
        num_threads: int = 1,
    ) -> "OnnxBackend":
        """Load encoder.onnx, ctc.onnx and decoder.onnx from model_dir.

        Metadata is read from the encoder graph's custom metadata map.
        """
        try:
            import onnxruntime as ort
        except ImportError:
            raise ImportError("onnxruntime required for ONNX backend. Install with: pip install onnxruntime")

        model_dir = Path(model_dir)
        paths = [model_dir / ENCODER_ONNX, model_dir / CTC_ONNX, model_dir / DECODER_ONNX]
        for path in paths:
            if not path.exists():
                raise FileNotFoundError(f"Model file not found: {path}")

        session_options = ort.SessionOptions()
        session_options.intra_op_num_threads = num_threads
        session_options.inter_op_num_threads = num_threads

        encoder_session, ctc_session, rescore_session = [
            ort.InferenceSession(
                str(path), sess_options=session_options, providers=["CPUExecutionProvider"]
            )
            for path in paths
        ]

        metadata = load_metadata(encoder_session.get_modelmeta().custom_metadata_map)
        metadata.log_info()
        return cls(encoder_session, ctc_session, rescore_session, metadata)

    @property
    def encoder_inputs(self) -> FrozenSet[EncoderInput]:
        return frozenset(self._encoder_bindings)

    def forward_encoder_chunk(
        self, inputs: EncoderInputs
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        feed = {
            self._encoder_bindings[role]: _to_numpy(value, self.INPUT_DTYPES[role])
            for role, value in inputs.items()
            if role in self._encoder_bindings
        }
        encoder_out, att_cache, cnn_cache = self.encoder_session.run(self.encoder_out_names, feed)[:3]
        return torch.from_numpy(encoder_out), torch.from_numpy(att_cache), torch.from_numpy(cnn_cache)

    def ctc_activation(self, encoder_out: torch.Tensor) -> torch.Tensor:
        feed = {self.ctc_in_names[0]: _to_numpy(encoder_out, np.float32)}
        return torch.from_numpy(self.ctc_session.run(self.ctc_out_names, feed)[0])

    def forward_attention_decoder(
        self,
        hyps: torch.Tensor,
        hyps_lens: torch.Tensor,
        encoder_out: torch.Tensor,
    ) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
        # Positional binding: hyps, hyps_lens, encoder_out
        feed = {
            self.rescore_in_names[0]: _to_numpy(hyps, np.int64),
            self.rescore_in_names[1]: _to_numpy(hyps_lens, np.int64),
            self.rescore_in_names[2]: _to_numpy(encoder_out, np.float32),
        }
        outputs = self.rescore_session.run(self.rescore_out_names, feed)
        decoder_out = torch.from_numpy(outputs[0])
        r_decoder_out = torch.from_numpy(outputs[1]) if len(outputs) > 1 else None
        return decoder_out, r_decoder_out

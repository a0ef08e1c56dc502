"""Decode session: feature pipeline -> streaming model -> searcher -> results."""

import logging
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml

from chunkasr.asr_model import StreamingAsrModel
from chunkasr.feature_pipeline import FeaturePipeline
from chunkasr.search import CtcGreedySearch, Searcher
from chunkasr.symbol_table import SymbolTable

logger = logging.getLogger(__name__)


class DecodeState(str, Enum):
    """Outcome of one AsrDecoder.decode step."""

    WAIT_FEATS = "wait_feats"  # not enough frames queued, feed more input
    END_BATCH = "end_batch"  # one chunk decoded, partial result updated
    ENDPOINT = "endpoint"  # like END_BATCH, endpoint detector fired
    END_FEATS = "end_feats"  # input finished and fully consumed


@dataclass
class DecodeOptions:
    """Decoding configuration.

    Attributes:
        chunk_size: Override of the model's chunk size (None: keep)
        num_left_chunks: Override of the model's left chunks (None: keep)
        ctc_weight: Weight of the CTC score in the final score
        rescoring_weight: Weight of the attention rescoring score
        reverse_weight: Weight of the right-to-left decoder in rescoring
        nbest: Hypotheses kept in results and rescored
    """

    chunk_size: Optional[int] = None
    num_left_chunks: Optional[int] = None
    ctc_weight: float = 0.5
    rescoring_weight: float = 1.0
    reverse_weight: float = 0.0
    nbest: int = 10

    @classmethod
    def from_dict(cls, conf: Dict[str, Any]) -> "DecodeOptions":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(conf) - known)
        if unknown:
            logger.warning(f"Ignoring unknown decode options: {unknown}")
        return cls(**{key: value for key, value in conf.items() if key in known})

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "DecodeOptions":
        """Read options from the ``decode_conf`` section of a YAML file."""
        with open(path, "r") as f:
            config = yaml.safe_load(f) or {}
        return cls.from_dict(config.get("decode_conf", {}))


@dataclass
class DecodeResult:
    """One n-best entry.

    Attributes:
        sentence: Detokenized text
        tokens: Token ids
        score: Score used for ranking (CTC score until rescored)
        ctc_score: CTC log-likelihood from the searcher
        rescoring_score: Attention rescoring log-likelihood (0 until rescored)
    """

    sentence: str
    tokens: List[int] = field(default_factory=list)
    score: float = 0.0
    ctc_score: float = 0.0
    rescoring_score: float = 0.0


class AsrDecoder:
    """Single-utterance decode session driven one step at a time.

    Each call to decode() reads at most one chunk from the feature pipeline,
    runs it through the streaming model and the searcher, and reports what
    happened. The caller loops until WAIT_FEATS or END_FEATS and calls
    rescoring() once after END_FEATS.

    Args:
        feature_pipeline: Source of feature frames
        model: Streaming model (reset here)
        searcher_factory: Builds the searcher (default: CtcGreedySearch)
        options: Decode options (default: DecodeOptions())
        symbol_table: Maps token ids to text (default: ids joined by spaces)
        endpoint_detector: Optional ``callable(decoder) -> bool``; when it
            returns True an END_BATCH step is reported as ENDPOINT
    """

    def __init__(
        self,
        feature_pipeline: FeaturePipeline,
        model: StreamingAsrModel,
        searcher_factory: Optional[Callable[[], Searcher]] = None,
        options: Optional[DecodeOptions] = None,
        symbol_table: Optional[SymbolTable] = None,
        endpoint_detector: Optional[Callable[["AsrDecoder"], bool]] = None,
    ):
        self.feature_pipeline = feature_pipeline
        self.model = model
        self.searcher_factory = searcher_factory or CtcGreedySearch
        self.searcher = self.searcher_factory()
        self.options = options or DecodeOptions()
        self.symbol_table = symbol_table
        self.endpoint_detector = endpoint_detector

        self._start = False
        self._result: List[DecodeResult] = []
        self.num_frames = 0
        self.model.reset()

    @property
    def result(self) -> List[DecodeResult]:
        return self._result

    def decode(self, block: bool = False) -> DecodeState:
        """Advance the session by at most one chunk.

        Args:
            block: Read whatever is queued instead of waiting for a full chunk

        Returns:
            DecodeState describing the step
        """
        num_required_frames = self.model.num_frames_for_chunk(self._start)
        pipeline = self.feature_pipeline

        if not block and not pipeline.input_finished and (
            num_required_frames < 0 or pipeline.num_queued_frames < num_required_frames
        ):
            return DecodeState.WAIT_FEATS

        chunk_feats, ok = pipeline.read(num_required_frames)
        state = DecodeState.END_BATCH if ok else DecodeState.END_FEATS

        if chunk_feats.size(0) > 0:
            ctc_log_probs = self.model.forward_chunk(chunk_feats)
            self._start = True
            self.num_frames += chunk_feats.size(0)
            self.searcher.search(ctc_log_probs)
            logger.debug(
                f"Decoded {chunk_feats.size(0)} frames ({ctc_log_probs.size(0)} output frames), "
                f"state={state.value}"
            )
        self.update_result()

        if state == DecodeState.END_BATCH and self.endpoint_detector is not None:
            if self.endpoint_detector(self):
                state = DecodeState.ENDPOINT
        return state

    def update_result(self):
        """Rebuild the n-best results from the searcher's current hypotheses."""
        hyps = self.searcher.outputs[: self.options.nbest]
        ctc_scores = self.searcher.likelihood
        self._result = [
            DecodeResult(
                sentence=self.to_sentence(hyp),
                tokens=list(hyp),
                score=ctc_scores[i],
                ctc_score=ctc_scores[i],
            )
            for i, hyp in enumerate(hyps)
        ]

    def rescoring(self):
        """Rescore the n-best with the attention decoder and re-rank.

        final score = rescoring_weight * attention + ctc_weight * ctc
        """
        self.update_result()
        if not self._result:
            return
        hyps = [result.tokens for result in self._result]
        scores = self.model.attention_rescoring(hyps, self.options.reverse_weight)

        for result, att_score in zip(self._result, scores):
            result.rescoring_score = att_score
            result.score = (
                self.options.rescoring_weight * att_score
                + self.options.ctc_weight * result.ctc_score
            )
        self._result.sort(key=lambda result: result.score, reverse=True)
        logger.debug(f"Rescored {len(hyps)} hypotheses, best score {self._result[0].score:.3f}")

    def to_sentence(self, tokens: List[int]) -> str:
        if self.symbol_table is None:
            return " ".join(str(token) for token in tokens)
        return self.symbol_table.to_sentence(tokens)

    def reset(self):
        """Prepare for a new utterance."""
        self._start = False
        self._result = []
        self.num_frames = 0
        self.feature_pipeline.reset()
        self.model.reset()
        self.searcher.reset()

    def clone(self) -> "AsrDecoder":
        """Independent session sharing the backend, metadata and options."""
        return AsrDecoder(
            FeaturePipeline(self.feature_pipeline.feature_dim),
            self.model.copy(),
            searcher_factory=self.searcher_factory,
            options=replace(self.options),
            symbol_table=self.symbol_table,
            endpoint_detector=self.endpoint_detector,
        )

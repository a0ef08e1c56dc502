"""Searchers consuming CTC log-probabilities chunk by chunk."""

from abc import ABC, abstractmethod
from typing import List

import torch


class Searcher(ABC):
    """Incremental search over streamed CTC posteriors.

    A beam search (prefix beam search, WFST decoding, ...) implements this
    interface to plug into AsrDecoder.
    """

    @abstractmethod
    def search(self, ctc_log_probs: torch.Tensor):
        """Consume one chunk of CTC log-probabilities (T', vocab_size)."""

    @abstractmethod
    def reset(self):
        """Forget everything searched so far."""

    @property
    @abstractmethod
    def outputs(self) -> List[List[int]]:
        """N-best token sequences, best first."""

    @property
    @abstractmethod
    def likelihood(self) -> List[float]:
        """CTC log-likelihood of each sequence in outputs."""


class CtcGreedySearch(Searcher):
    """Best-path CTC decoding with blank removal and deduplication.

    Keeps the last emitted frame label across chunks so repeated labels on
    a chunk boundary collapse like within a chunk.

    Args:
        blank: Blank token ID (default: 0)
    """

    def __init__(self, blank: int = 0):
        self.blank = blank
        self.reset()

    def reset(self):
        self._tokens: List[int] = []
        self._score = 0.0
        self._prev_token = None
        self._num_frames = 0

    def search(self, ctc_log_probs: torch.Tensor):
        if ctc_log_probs.size(0) == 0:
            return
        max_log_probs, predictions = torch.max(ctc_log_probs, dim=-1)
        self._score += float(max_log_probs.sum())
        self._num_frames += predictions.size(0)

        for token in predictions.tolist():
            if token != self.blank and token != self._prev_token:
                self._tokens.append(token)
            self._prev_token = token

    @property
    def outputs(self) -> List[List[int]]:
        if self._num_frames == 0:
            return []
        return [list(self._tokens)]

    @property
    def likelihood(self) -> List[float]:
        if self._num_frames == 0:
            return []
        return [self._score]

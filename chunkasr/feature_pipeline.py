"""Feature frame queue between feature extraction and the decoder."""

import logging
from typing import List, Optional, Tuple, Union

import numpy as np
import torch

logger = logging.getLogger(__name__)


class FeaturePipeline:
    """Queues feature frames and hands them out in chunk-sized reads.

    Frames are accepted as (frames, feat_dim) arrays. The producer calls
    set_input_finished() once the utterance is complete; reads after that
    drain what is left.

    Args:
        feature_dim: Expected feature dimension (default: taken from the
            first accepted batch)
    """

    def __init__(self, feature_dim: Optional[int] = None):
        self.feature_dim = feature_dim
        self._queue: List[torch.Tensor] = []
        self._num_queued = 0
        self.num_frames = 0
        self._input_finished = False

    @property
    def input_finished(self) -> bool:
        return self._input_finished

    @property
    def num_queued_frames(self) -> int:
        return self._num_queued

    def accept_features(self, feats: Union[np.ndarray, torch.Tensor]):
        """Append frames (frames, feat_dim) to the queue."""
        if self._input_finished:
            raise RuntimeError("accept_features called after set_input_finished")
        feats = torch.as_tensor(feats, dtype=torch.float32)
        if feats.dim() != 2:
            raise ValueError(f"Expected (frames, feat_dim) features, got shape {tuple(feats.shape)}")
        if self.feature_dim is None:
            self.feature_dim = feats.size(1)
        elif feats.size(1) != self.feature_dim:
            raise ValueError(f"Expected feature dim {self.feature_dim}, got {feats.size(1)}")

        if feats.size(0) == 0:
            return
        self._queue.append(feats)
        self._num_queued += feats.size(0)
        self.num_frames += feats.size(0)

    def set_input_finished(self):
        self._input_finished = True
        logger.debug(f"Input finished after {self.num_frames} frames")

    def read(self, num_frames: int) -> Tuple[torch.Tensor, bool]:
        """Take up to num_frames frames from the queue.

        Args:
            num_frames: Frames to read; negative reads everything queued

        Returns:
            Tuple of (frames (n, feat_dim), ok). ok is False when the input
            is finished and the request could not be filled, i.e. this read
            drained the utterance.
        """
        if num_frames < 0:
            num_frames = self._num_queued
            # An unbounded request is only ever filled by an open stream
            filled = not self._input_finished
        else:
            filled = self._num_queued >= num_frames or not self._input_finished

        frames = self._take(min(num_frames, self._num_queued))
        return frames, filled

    def reset(self):
        self._queue = []
        self._num_queued = 0
        self.num_frames = 0
        self._input_finished = False

    def _take(self, count: int) -> torch.Tensor:
        if count == 0 or not self._queue:
            return torch.zeros(0, self.feature_dim or 0)

        feats = torch.cat(self._queue, dim=0) if len(self._queue) > 1 else self._queue[0]
        taken, rest = feats[:count], feats[count:]
        self._queue = [rest] if rest.size(0) > 0 else []
        self._num_queued = rest.size(0)
        return taken

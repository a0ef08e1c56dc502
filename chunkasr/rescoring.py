"""Two-pass attention rescoring of candidate hypotheses."""

import logging
from typing import List, Sequence, Tuple

import torch

from chunkasr.backend import InferenceBackend

logger = logging.getLogger(__name__)


def pad_hypotheses(
    hyps: Sequence[Sequence[int]], sos: int
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Prepend <sos> to every hypothesis and right-pad with 0.

    Example:
        hyps [[5, 6, 7], [5, 6, 7, 8, 9]] with sos=2 become
        [[2, 5, 6, 7, 0, 0], [2, 5, 6, 7, 8, 9]] with lengths [4, 6].

    Args:
        hyps: Token id sequences
        sos: Start-of-sentence id

    Returns:
        Tuple of (padded hypotheses (N, max_len) int64, lengths (N,) int64)
    """
    hyps_lens = [len(hyp) + 1 for hyp in hyps]
    max_len = max(hyps_lens)

    rows = []
    for hyp in hyps:
        row = [sos] + list(hyp)
        if len(row) < max_len:
            row.extend([0] * (max_len - len(row)))
        rows.append(row)

    return (
        torch.tensor(rows, dtype=torch.long),
        torch.tensor(hyps_lens, dtype=torch.long),
    )


def compute_attention_score(prob: torch.Tensor, hyp: Sequence[int], eos: int) -> float:
    """Log-likelihood of hyp followed by <eos> under per-position scores.

    Args:
        prob: Decoder log-probabilities of one hypothesis (max_len, vocab)
        hyp: Token ids, without <sos>
        eos: End-of-sentence id

    Returns:
        sum_j prob[j, hyp[j]] + prob[len(hyp), eos]
    """
    score = 0.0
    for j, token in enumerate(hyp):
        score += float(prob[j, token])
    score += float(prob[len(hyp), eos])
    return score


class AttentionRescorer:
    """Fuses forward and backward attention decoder scores.

    Args:
        backend: Backend providing forward_attention_decoder
        sos: Start-of-sentence id
        eos: End-of-sentence id
        bidirectional: Whether the backend's decoder has a right-to-left branch
    """

    def __init__(self, backend: InferenceBackend, sos: int, eos: int, bidirectional: bool):
        self.backend = backend
        self.sos = sos
        self.eos = eos
        self.bidirectional = bidirectional

    def rescore(
        self,
        hyps: Sequence[Sequence[int]],
        encoder_outs: Sequence[torch.Tensor],
        reverse_weight: float = 0.0,
    ) -> List[float]:
        """Score hypotheses against the whole utterance.

        The result for hypothesis i is
        ``forward_i * (1 - reverse_weight) + backward_i * reverse_weight``;
        the backward part is only computed for bidirectional decoders with
        reverse_weight > 0. reverse_weight is used as given.

        Args:
            hyps: Token id sequences, without <sos>/<eos>
            encoder_outs: Per-chunk encoder outputs (1, T_i, D) in time order
            reverse_weight: Weight of the right-to-left score

        Returns:
            One fused log-likelihood per hypothesis, in input order
        """
        num_hyps = len(hyps)
        if num_hyps == 0:
            return []
        if len(encoder_outs) == 0:
            logger.debug("No encoder output yet, returning zero rescoring scores")
            return [0.0] * num_hyps

        encoder_out = torch.cat(list(encoder_outs), dim=1)
        hyps_pad, hyps_lens = pad_hypotheses(hyps, self.sos)

        decoder_out, r_decoder_out = self.backend.forward_attention_decoder(
            hyps_pad, hyps_lens, encoder_out
        )
        use_reverse = self.bidirectional and reverse_weight > 0
        if use_reverse and r_decoder_out is None:
            raise RuntimeError("Backend returned no right-to-left scores for a bidirectional decoder")

        scores = []
        for i, hyp in enumerate(hyps):
            score = compute_attention_score(decoder_out[i], hyp, self.eos)
            r_score = 0.0
            if use_reverse:
                r_score = compute_attention_score(r_decoder_out[i], list(reversed(hyp)), self.eos)
            scores.append(score * (1 - reverse_weight) + r_score * reverse_weight)

        logger.debug(
            f"Rescored {num_hyps} hypotheses over {encoder_out.size(1)} encoder frames"
        )
        return scores

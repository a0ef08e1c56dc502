"""Streaming Conformer ASR model: encoder, CTC head and rescoring decoder."""

import logging
from typing import Any, Dict, Optional, Tuple, Union

import torch
import torch.nn as nn

from chunkasr.model.ctc import CTC
from chunkasr.model.decoder import BiTransformerDecoder, TransformerDecoder
from chunkasr.model.encoder import ConformerEncoder

logger = logging.getLogger(__name__)


class ConformerASRModel(nn.Module):
    """Hybrid CTC/attention model exposing the three streaming inference graphs.

    - ``forward_encoder_chunk``: encode one chunk with caches
    - ``ctc_activation``: CTC log-probabilities of an encoder chunk
    - ``forward_attention_decoder``: score padded hypotheses against the
      whole utterance's encoder output (both directions if bidirectional)

    Args:
        vocab_size: Size of vocabulary (the last id is <sos/eos>)
        encoder: ConformerEncoder
        decoder: TransformerDecoder or BiTransformerDecoder
        ctc: CTC head
        sos: Start-of-sentence id (default: vocab_size - 1)
        eos: End-of-sentence id (default: vocab_size - 1)
    """

    def __init__(
        self,
        vocab_size: int,
        encoder: ConformerEncoder,
        decoder: nn.Module,
        ctc: CTC,
        sos: Optional[int] = None,
        eos: Optional[int] = None,
    ):
        super().__init__()

        self.vocab_size = vocab_size
        self.sos = vocab_size - 1 if sos is None else sos
        self.eos = vocab_size - 1 if eos is None else eos

        self.encoder = encoder
        self.decoder = decoder
        self.ctc = ctc

    @property
    def is_bidirectional_decoder(self) -> bool:
        return isinstance(self.decoder, BiTransformerDecoder)

    @property
    def subsampling_rate(self) -> int:
        return self.encoder.subsampling_rate

    @property
    def right_context(self) -> int:
        return self.encoder.right_context

    def metadata(self, chunk_size: int = 16, left_chunks: int = -1) -> Dict[str, int]:
        """Key/value metadata in the layout written next to exported models."""
        return {
            "output_size": self.encoder.output_size(),
            "num_blocks": self.encoder.num_blocks,
            "head": self.encoder.attention_heads,
            "cnn_module_kernel": self.encoder.cnn_module_kernel,
            "subsampling_rate": self.subsampling_rate,
            "right_context": self.right_context,
            "sos_symbol": self.sos,
            "eos_symbol": self.eos,
            "is_bidirectional_decoder": int(self.is_bidirectional_decoder),
            "chunk_size": chunk_size,
            "left_chunks": left_chunks,
        }

    def forward_encoder_chunk(
        self,
        xs: torch.Tensor,
        offset: Union[int, torch.Tensor],
        required_cache_size: Union[int, torch.Tensor],
        att_cache: torch.Tensor,
        cnn_cache: torch.Tensor,
        att_mask: Optional[torch.Tensor] = None,
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """See ConformerEncoder.forward_chunk."""
        return self.encoder.forward_chunk(
            xs, offset, required_cache_size, att_cache, cnn_cache, att_mask
        )

    def ctc_activation(self, xs: torch.Tensor) -> torch.Tensor:
        return self.ctc.log_softmax(xs)

    def forward_attention_decoder(
        self,
        hyps: torch.Tensor,
        hyps_lens: torch.Tensor,
        encoder_out: torch.Tensor,
    ) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
        """Score a batch of hypotheses with the attention decoder.

        Args:
            hyps: Hypotheses with leading <sos>, right-padded (num_hyps, max_len)
            hyps_lens: Lengths including <sos> (num_hyps,)
            encoder_out: Encoder output of the utterance (1, time, feat)

        Returns:
            Tuple of (forward log-probs (num_hyps, max_len, vocab),
                      backward log-probs of the same shape, or None if the
                      decoder is unidirectional)
        """
        assert encoder_out.size(0) == 1, "encoder_out must have batch size 1"
        num_hyps = hyps.size(0)
        assert hyps_lens.size(0) == num_hyps

        encoder_out = encoder_out.repeat(num_hyps, 1, 1)
        encoder_mask = torch.ones(
            num_hyps, 1, encoder_out.size(1), dtype=torch.bool, device=encoder_out.device
        )

        if not self.is_bidirectional_decoder:
            decoder_out = self.decoder(encoder_out, encoder_mask, hyps, hyps_lens)
            return torch.log_softmax(decoder_out, dim=-1), None

        r_hyps = self.reverse_hyps(hyps, hyps_lens)
        decoder_out, r_decoder_out = self.decoder(
            encoder_out, encoder_mask, hyps, hyps_lens, r_hyps
        )
        return torch.log_softmax(decoder_out, dim=-1), torch.log_softmax(r_decoder_out, dim=-1)

    def reverse_hyps(self, hyps: torch.Tensor, hyps_lens: torch.Tensor) -> torch.Tensor:
        """Reverse the tokens after <sos>; padding becomes <eos>.

        [sos, a, b, c, 0] with length 4 -> [sos, c, b, a, eos]
        """
        num_hyps = hyps.size(0)
        r_hyps_lens = hyps_lens - 1
        r_hyps = hyps[:, 1:]

        max_len = r_hyps.size(1)
        index_range = torch.arange(0, max_len, dtype=torch.long, device=hyps.device)
        seq_len_expand = r_hyps_lens.unsqueeze(1)
        seq_mask = seq_len_expand > index_range  # (num_hyps, max_len)

        index = ((seq_len_expand - 1) - index_range) * seq_mask
        r_hyps = torch.gather(r_hyps, 1, index)
        r_hyps = torch.where(seq_mask, r_hyps, torch.full_like(r_hyps, self.eos))

        sos = torch.full((num_hyps, 1), self.sos, dtype=hyps.dtype, device=hyps.device)
        return torch.cat([sos, r_hyps], dim=1)

    @classmethod
    def build_model(
        cls,
        vocab_size: int,
        input_size: int = 80,
        encoder_conf: Optional[Dict[str, Any]] = None,
        decoder_conf: Optional[Dict[str, Any]] = None,
        decoder_type: str = "bitransformer",
        global_cmvn: Optional[nn.Module] = None,
        sos: Optional[int] = None,
        eos: Optional[int] = None,
    ) -> "ConformerASRModel":
        """Build a model from configuration sections.

        Args:
            vocab_size: Vocabulary size
            input_size: Input feature dimension (e.g., 80 for fbank)
            encoder_conf: ConformerEncoder keyword arguments
            decoder_conf: Decoder keyword arguments
            decoder_type: 'transformer' or 'bitransformer'
            global_cmvn: Optional input normalization layer
            sos: Start-of-sentence id
            eos: End-of-sentence id

        Returns:
            ConformerASRModel instance
        """
        encoder_conf = dict(encoder_conf or {})
        decoder_conf = dict(decoder_conf or {})

        encoder = ConformerEncoder(input_size, global_cmvn=global_cmvn, **encoder_conf)
        output_size = encoder.output_size()

        if decoder_type == "bitransformer":
            decoder = BiTransformerDecoder(vocab_size, output_size, **decoder_conf)
        elif decoder_type == "transformer":
            decoder_conf.pop("r_num_blocks", None)
            decoder = TransformerDecoder(vocab_size, output_size, **decoder_conf)
        else:
            raise ValueError(f"decoder_type must be 'transformer' or 'bitransformer', got {decoder_type}")

        ctc = CTC(vocab_size=vocab_size, encoder_output_size=output_size)

        logger.debug(
            f"Built {decoder_type} model: vocab={vocab_size}, output_size={output_size}, "
            f"blocks={encoder.num_blocks}"
        )
        return cls(vocab_size, encoder, decoder, ctc, sos=sos, eos=eos)

"""Command line decoding of precomputed feature files."""

import argparse
import logging
import sys

import numpy as np

from chunkasr.decoder import DecodeOptions
from chunkasr.recognizer import Recognizer

logger = logging.getLogger(__name__)


def build_options(args) -> DecodeOptions:
    options = DecodeOptions.from_yaml(args.config) if args.config else DecodeOptions()
    for name in ("chunk_size", "num_left_chunks", "ctc_weight", "rescoring_weight", "reverse_weight", "nbest"):
        value = getattr(args, name)
        if value is not None:
            setattr(options, name, value)
    return options


def decode_file(recognizer: Recognizer, path: str, block_frames: int = 0, quiet: bool = False):
    """Decode one .npy feature matrix, optionally in blocks of block_frames."""
    feats = np.load(path).astype(np.float32)
    if feats.ndim != 2:
        raise ValueError(f"{path}: expected a (frames, feat_dim) matrix, got shape {feats.shape}")

    recognizer.reset()
    if block_frames <= 0:
        recognizer.decode(feats, last=True)
    else:
        for start in range(0, feats.shape[0], block_frames):
            end = start + block_frames
            partial = recognizer.decode(feats[start:end], last=end >= feats.shape[0])
            if not quiet and not recognizer.finished:
                sys.stderr.write("\r" + partial)
                sys.stderr.flush()
        if feats.shape[0] == 0:
            recognizer.decode(feats, last=True)
        if not quiet:
            sys.stderr.write("\n")
    return recognizer.result


def main():
    parser = argparse.ArgumentParser(
        description='Decode precomputed acoustic features (.npy, frames x feat_dim) with a streaming model.')
    parser.add_argument('model_dir', help='Model directory (config.yaml + final.pt, or *.onnx files)')
    parser.add_argument('inputfiles', nargs='+', help='Feature files (.npy)')
    parser.add_argument('--backend', dest='backend', choices=['torch', 'onnx'], default='torch',
                        help='Inference backend (default: torch)')
    parser.add_argument('-d', '--device', dest='device', default='cpu',
                        help="Computation device for the torch backend. Either 'cpu' or 'cuda'.")
    parser.add_argument('--num-threads', dest='num_threads', default=1, type=int,
                        help='Number of threads used for intraop parallelism on CPU.')
    parser.add_argument('-c', '--config', dest='config', default=None,
                        help='YAML file with a decode_conf section')
    parser.add_argument('--chunk-size', dest='chunk_size', type=int, default=None,
                        help='Decoding chunk size in encoder frames (default: from model)')
    parser.add_argument('--num-left-chunks', dest='num_left_chunks', type=int, default=None,
                        help='Left chunks kept in the attention cache (default: from model)')
    parser.add_argument('--ctc-weight', dest='ctc_weight', type=float, default=None,
                        help='CTC score weight in the final score')
    parser.add_argument('--rescoring-weight', dest='rescoring_weight', type=float, default=None,
                        help='Attention rescoring weight in the final score')
    parser.add_argument('--reverse-weight', dest='reverse_weight', type=float, default=None,
                        help='Right-to-left decoder weight during rescoring')
    parser.add_argument('-n', '--nbest', dest='nbest', type=int, default=None,
                        help='Number of hypotheses to output')
    parser.add_argument('--block-frames', dest='block_frames', type=int, default=0,
                        help='Feed features in blocks of this many frames to simulate streaming (0: all at once)')
    parser.add_argument('--quiet', dest='quiet', action='store_true',
                        help='No partial transcription output')
    parser.add_argument('--log-level', dest='log_level', default='WARNING',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Set logging level (default: WARNING)')

    args = parser.parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level))

    recognizer = Recognizer.from_directory(
        args.model_dir,
        backend=args.backend,
        device=args.device,
        num_threads=args.num_threads,
        options=build_options(args),
    )

    for path in args.inputfiles:
        results = decode_file(recognizer, path, block_frames=args.block_frames, quiet=args.quiet)
        for rank, result in enumerate(results):
            print(f"{path}\t{rank}\t{result.score:.4f}\t{result.sentence}")


if __name__ == '__main__':
    main()

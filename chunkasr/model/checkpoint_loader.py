"""Utilities for loading model directories and checkpoints."""

import logging
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import numpy as np
import torch
import torch.nn as nn
import yaml

from chunkasr.model.asr_model import ConformerASRModel
from chunkasr.model.layers import GlobalCMVN

logger = logging.getLogger(__name__)

CONFIG_NAME = "config.yaml"
CHECKPOINT_NAMES = ("final.pt", "avg.pt", "model.pt", "checkpoint.pt")
CMVN_NAME = "global_cmvn.npz"


def load_config(config_path: Path) -> Dict:
    """Load a YAML configuration file.

    Args:
        config_path: Path to config.yaml

    Returns:
        Configuration dictionary (empty if the file is empty)
    """
    with open(config_path, "r") as f:
        config = yaml.safe_load(f)
    return config or {}


def load_checkpoint(checkpoint_path: Path) -> Dict[str, torch.Tensor]:
    """Load a checkpoint file and return its state dict.

    Accepts plain state dicts as well as {"model": ...} / {"state_dict": ...}
    wrappers.
    """
    checkpoint = torch.load(checkpoint_path, map_location="cpu")
    if "model" in checkpoint:
        return checkpoint["model"]
    if "state_dict" in checkpoint:
        return checkpoint["state_dict"]
    return checkpoint


def load_weights(
    model: nn.Module,
    checkpoint_path: Path,
    strict: bool = False,
) -> nn.Module:
    """Load checkpoint weights into model.

    Args:
        model: Model to load weights into
        checkpoint_path: Path to checkpoint
        strict: Whether to strictly enforce weight loading (default: False)

    Returns:
        The model with loaded weights
    """
    logger.info(f"Loading checkpoint from {checkpoint_path}")
    state_dict = load_checkpoint(checkpoint_path)

    missing_keys, unexpected_keys = model.load_state_dict(state_dict, strict=strict)

    if missing_keys:
        logger.warning(f"Missing keys ({len(missing_keys)}): {missing_keys[:10]}...")
    if unexpected_keys:
        logger.warning(f"Unexpected keys ({len(unexpected_keys)}): {unexpected_keys[:10]}...")

    logger.info(f"Successfully loaded {len(state_dict)} parameters")
    return model


def load_cmvn_stats(stats_path: Path) -> Tuple[np.ndarray, np.ndarray]:
    """Load global feature normalization statistics.

    Args:
        stats_path: Path to an .npz file

    Returns:
        Tuple of (mean, std) arrays
    """
    stats = np.load(stats_path)

    # Stored either as mean/std or as accumulated sum/sum_square/count
    if "mean" in stats:
        mean = stats["mean"]
        std = stats["std"]
    elif "sum" in stats and "sum_square" in stats and "count" in stats:
        count = stats["count"]
        mean = stats["sum"] / count
        mean_square = stats["sum_square"] / count
        std = np.sqrt(np.maximum(mean_square - mean ** 2, 1e-10))
    else:
        raise ValueError(f"Unknown stats format. Keys: {list(stats.keys())}")

    logger.info(f"Loaded normalization stats: mean shape {mean.shape}, std shape {std.shape}")
    return mean, std


def find_checkpoint(model_dir: Path) -> Path:
    for name in CHECKPOINT_NAMES:
        path = model_dir / name
        if path.exists():
            return path
    raise FileNotFoundError(f"No checkpoint ({', '.join(CHECKPOINT_NAMES)}) found in {model_dir}")


def load_model_from_directory(
    model_dir: Union[str, Path],
    checkpoint_path: Optional[Union[str, Path]] = None,
) -> Tuple[ConformerASRModel, Dict]:
    """Build a ConformerASRModel from config.yaml and load its weights.

    Expected layout::

        model_dir/
            config.yaml        # vocab_size, input_dim, encoder_conf, decoder_conf, ...
            final.pt           # state dict
            global_cmvn.npz    # optional

    Args:
        model_dir: Model directory
        checkpoint_path: Explicit checkpoint (default: first of CHECKPOINT_NAMES)

    Returns:
        Tuple of (model in eval mode, config dict)
    """
    model_dir = Path(model_dir)

    config_path = model_dir / CONFIG_NAME
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    config = load_config(config_path)
    logger.info(f"Loaded config from {config_path}")

    if "vocab_size" not in config:
        raise ValueError(f"{config_path} does not define vocab_size")

    if checkpoint_path is None:
        checkpoint_path = find_checkpoint(model_dir)

    global_cmvn = None
    stats_path = model_dir / CMVN_NAME
    if stats_path.exists():
        mean, std = load_cmvn_stats(stats_path)
        global_cmvn = GlobalCMVN.from_stats(mean, std)
    else:
        logger.warning(f"Stats file not found: {stats_path}")

    model_conf = config.get("model_conf", {})
    model = ConformerASRModel.build_model(
        vocab_size=config["vocab_size"],
        input_size=config.get("input_dim", 80),
        encoder_conf=config.get("encoder_conf", {}),
        decoder_conf=config.get("decoder_conf", {}),
        decoder_type=config.get("decoder", "bitransformer"),
        global_cmvn=global_cmvn,
        sos=model_conf.get("sos"),
        eos=model_conf.get("eos"),
    )

    model = load_weights(model, Path(checkpoint_path), strict=False)
    model.eval()

    return model, config

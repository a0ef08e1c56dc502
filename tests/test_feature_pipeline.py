"""Tests for the feature frame queue."""

import numpy as np
import pytest
import torch

from chunkasr.feature_pipeline import FeaturePipeline


def test_read_in_order():
    pipeline = FeaturePipeline(4)
    first = torch.arange(12, dtype=torch.float32).view(3, 4)
    second = torch.arange(12, 20, dtype=torch.float32).view(2, 4)
    pipeline.accept_features(first)
    pipeline.accept_features(second)

    assert pipeline.num_queued_frames == 5
    frames, ok = pipeline.read(4)

    assert ok
    assert torch.equal(frames, torch.cat([first, second])[:4])
    assert pipeline.num_queued_frames == 1
    assert pipeline.num_frames == 5


def test_accepts_numpy():
    pipeline = FeaturePipeline()
    pipeline.accept_features(np.ones((3, 80), dtype=np.float64))

    frames, ok = pipeline.read(3)
    assert pipeline.feature_dim == 80
    assert frames.dtype == torch.float32
    assert frames.shape == (3, 80)


def test_short_read_open_stream():
    pipeline = FeaturePipeline(2)
    pipeline.accept_features(torch.zeros(3, 2))

    frames, ok = pipeline.read(5)
    assert ok
    assert frames.shape == (3, 2)


def test_short_read_finished_stream():
    pipeline = FeaturePipeline(2)
    pipeline.accept_features(torch.zeros(3, 2))
    pipeline.set_input_finished()

    frames, ok = pipeline.read(5)
    assert not ok
    assert frames.shape == (3, 2)

    frames, ok = pipeline.read(5)
    assert not ok
    assert frames.shape == (0, 2)


def test_exact_read_finished_stream():
    pipeline = FeaturePipeline(2)
    pipeline.accept_features(torch.zeros(4, 2))
    pipeline.set_input_finished()

    _, ok = pipeline.read(4)
    assert ok


def test_read_all():
    pipeline = FeaturePipeline(2)
    pipeline.accept_features(torch.zeros(7, 2))

    frames, ok = pipeline.read(-1)
    assert ok
    assert frames.shape == (7, 2)

    pipeline.set_input_finished()
    frames, ok = pipeline.read(-1)
    assert not ok
    assert frames.shape == (0, 2)


def test_invalid_input():
    pipeline = FeaturePipeline(2)

    with pytest.raises(ValueError):
        pipeline.accept_features(torch.zeros(3, 3))
    with pytest.raises(ValueError):
        pipeline.accept_features(torch.zeros(3))

    pipeline.set_input_finished()
    with pytest.raises(RuntimeError):
        pipeline.accept_features(torch.zeros(3, 2))


def test_reset():
    pipeline = FeaturePipeline(2)
    pipeline.accept_features(torch.zeros(3, 2))
    pipeline.set_input_finished()

    pipeline.reset()

    assert pipeline.num_queued_frames == 0
    assert pipeline.num_frames == 0
    assert not pipeline.input_finished
    pipeline.accept_features(torch.zeros(1, 2))

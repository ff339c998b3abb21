"""Tests for windowing and the chronological dataset split."""

from __future__ import annotations

import sys
from pathlib import Path
from unittest import TestCase

import numpy as np
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from stock_gru.data.windows import (
    DatasetSplit,
    build_windows,
    check_no_leakage,
    direction_labels,
    latest_window,
    split_dataset,
    stack_examples,
)
from stock_gru.exceptions import InsufficientDataError, InvalidSplitError, LeakageError


def _returns(length: int) -> np.ndarray:
    return np.array([(-1) ** idx * 0.001 * (idx + 1) for idx in range(length)], dtype=float)


class BuildWindowsTests(TestCase):
    """Window construction over a return series."""

    def test_worked_example(self) -> None:
        returns = _returns(10)
        windows = build_windows(returns, lookback=3, horizon=2)
        self.assertEqual(len(windows), 6)
        first = windows[0]
        np.testing.assert_array_equal(first.inputs, returns[0:3])
        np.testing.assert_array_equal(first.target, returns[3:5])
        self.assertEqual(first.input_span, (0, 3))
        self.assertEqual(first.target_span, (3, 5))

    def test_count_formula_and_short_input(self) -> None:
        for length, lookback, horizon in [(30, 5, 1), (30, 10, 5), (15, 10, 5), (14, 10, 5), (3, 10, 5)]:
            windows = build_windows(_returns(length), lookback, horizon)
            self.assertEqual(len(windows), max(0, length - lookback - horizon + 1))

    def test_rejects_non_positive_sizes(self) -> None:
        with self.assertRaises(ValueError):
            build_windows(_returns(10), 0, 2)
        with self.assertRaises(ValueError):
            build_windows(_returns(10), 3, 0)

    def test_sequence_is_restartable_and_sliceable(self) -> None:
        windows = build_windows(_returns(20), 4, 2)
        first_pass = [example.index for example in windows]
        second_pass = [example.index for example in windows]
        self.assertEqual(first_pass, second_pass)
        self.assertEqual(first_pass, list(range(15)))

        tail = windows[10:]
        self.assertEqual(len(tail), 5)
        self.assertEqual(tail.first_index, 10)
        self.assertEqual(tail[-1].index, 14)
        self.assertEqual(windows[-1].index, 14)


def test_direction_labels_treat_zero_as_up():
    labels = direction_labels(np.array([0.01, 0.0, -0.02]))
    assert labels.tolist() == [1.0, 1.0, 0.0]


def test_split_counts_match_worked_example():
    windows = build_windows(_returns(14), 3, 2)
    assert len(windows) == 10
    split = split_dataset(windows, 0.7, 0.2)
    assert (len(split.train), len(split.validation), len(split.test)) == (7, 2, 1)
    assert split.purged == 0


@pytest.mark.parametrize("length", [12, 57, 100, 333])
def test_split_preserves_count_and_order(length):
    windows = build_windows(_returns(length + 7), 5, 3)
    split = split_dataset(windows, 0.6, 0.25)
    assert len(split.train) + len(split.validation) + len(split.test) == len(windows)
    train_idx = [example.index for example in split.train]
    val_idx = [example.index for example in split.validation]
    test_idx = [example.index for example in split.test]
    assert train_idx + val_idx + test_idx == list(range(len(windows)))


@pytest.mark.parametrize(
    "train_fraction, validation_fraction",
    [(0.0, 0.2), (1.0, 0.1), (0.7, 0.0), (0.75, 0.25), (0.8, 0.5), (-0.1, 0.2)],
)
def test_split_rejects_invalid_fractions(train_fraction, validation_fraction):
    windows = build_windows(_returns(40), 5, 2)
    with pytest.raises(InvalidSplitError):
        split_dataset(windows, train_fraction, validation_fraction)


def test_purged_split_has_disjoint_targets():
    windows = build_windows(_returns(120), 10, 5)
    split = split_dataset(windows, 0.7, 0.15, purge=True)
    assert split.purged == 8
    assert split.train[-1].target_span[1] <= split.validation[0].target_span[0]
    assert split.validation[-1].target_span[1] <= split.test[0].target_span[0]
    assert len(split.train) + len(split.validation) + len(split.test) + split.purged == len(windows)


def test_unpurged_split_reports_overlapping_boundary_windows(caplog):
    windows = build_windows(_returns(120), 10, 5)
    with caplog.at_level("WARNING"):
        split = split_dataset(windows, 0.7, 0.15)
    assert split.purged == 0
    assert split.train[-1].target_span[1] > split.validation[0].target_span[0]
    assert any(message.startswith("8 boundary windows") for message in caplog.messages)


def test_leakage_check_detects_out_of_order_partitions():
    windows = build_windows(_returns(40), 5, 2)
    bad = DatasetSplit(train=windows[10:20], validation=windows[:10], test=windows[20:])
    with pytest.raises(LeakageError):
        check_no_leakage(bad)


def test_leakage_check_detects_overlapping_targets():
    windows = build_windows(_returns(40), 5, 3)
    adjacent = DatasetSplit(train=windows[:20], validation=windows[20:25], test=windows[25:])
    check_no_leakage(adjacent)
    with pytest.raises(LeakageError):
        check_no_leakage(adjacent, require_disjoint_targets=True)


def test_latest_window_uses_most_recent_returns():
    returns = _returns(30)
    window = latest_window(returns, 8)
    np.testing.assert_array_equal(window.inputs, returns[-8:])
    assert window.target is None
    assert window.index == 22
    with pytest.raises(InsufficientDataError):
        latest_window(returns[:5], 8)


def test_stack_examples_shapes_for_each_task():
    returns = _returns(30)
    windows = build_windows(returns, 6, 3)
    X, y = stack_examples(windows, "classification")
    assert X.shape == (22, 6, 1)
    assert y.shape == (22, 3)
    assert set(np.unique(y)).issubset({0.0, 1.0})

    _, raw = stack_examples(windows, "regression")
    np.testing.assert_allclose(raw[0], returns[6:9].astype(np.float32))

    X_empty, y_empty = stack_examples(windows[:0])
    assert X_empty.shape == (0, 6, 1)
    assert y_empty.shape == (0, 3)

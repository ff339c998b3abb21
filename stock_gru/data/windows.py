"""Sequence windowing and chronological train/validation/test splitting.

Windows are built over the daily return series. Example ``i`` uses returns
``[i, i + lookback)`` as inputs and returns ``[i + lookback, i + lookback +
horizon)`` as targets. Partitions are cut in time order and checked so that a
window's target never reaches into a later partition.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Iterator, NamedTuple, Optional, overload

import numpy as np

from ..exceptions import InsufficientDataError, InvalidSplitError, LeakageError

LOGGER = logging.getLogger(__name__)

# Guards floor(n * fraction) against values like 0.29 * 100 == 28.999999999999996.
_FRACTION_EPSILON = 1e-9


def direction_labels(values: np.ndarray, threshold: float = 0.0) -> np.ndarray:
    """Binarise ``values`` into 1.0 (up, ``>= threshold``) and 0.0 (down)."""

    return (np.asarray(values, dtype=float) >= threshold).astype(np.float32)


@dataclass(frozen=True)
class WindowedExample:
    """A lookback slice of returns with its following horizon (absent for live windows)."""

    index: int
    inputs: np.ndarray
    target: Optional[np.ndarray] = None

    @property
    def lookback(self) -> int:
        return int(self.inputs.shape[0])

    @property
    def horizon(self) -> int:
        return 0 if self.target is None else int(self.target.shape[0])

    @property
    def labels(self) -> Optional[np.ndarray]:
        if self.target is None:
            return None
        return direction_labels(self.target)

    @property
    def input_span(self) -> tuple[int, int]:
        return self.index, self.index + self.lookback

    @property
    def target_span(self) -> Optional[tuple[int, int]]:
        if self.target is None:
            return None
        start = self.index + self.lookback
        return start, start + self.horizon


class WindowSequence(Sequence):
    """Lazy, restartable view of the windows over a return series.

    Examples are sliced from the underlying array on access, so iterating a
    sequence twice yields the same windows and slicing produces another view
    rather than a copy.
    """

    def __init__(self, returns: np.ndarray, lookback: int, horizon: int, indices: Optional[range] = None) -> None:
        self._returns = returns
        self.lookback = lookback
        self.horizon = horizon
        if indices is None:
            indices = range(max(0, len(returns) - lookback - horizon + 1))
        self._indices = indices

    def __len__(self) -> int:
        return len(self._indices)

    @overload
    def __getitem__(self, item: int) -> WindowedExample: ...

    @overload
    def __getitem__(self, item: slice) -> "WindowSequence": ...

    def __getitem__(self, item):
        if isinstance(item, slice):
            return WindowSequence(self._returns, self.lookback, self.horizon, self._indices[item])
        start = self._indices[item]
        split = start + self.lookback
        return WindowedExample(
            index=start,
            inputs=self._returns[start:split],
            target=self._returns[split : split + self.horizon],
        )

    def __iter__(self) -> Iterator[WindowedExample]:
        for position in range(len(self._indices)):
            yield self[position]

    def __repr__(self) -> str:
        return (
            f"WindowSequence(size={len(self)}, lookback={self.lookback}, horizon={self.horizon}, "
            f"indices={self._indices!r})"
        )

    @property
    def indices(self) -> range:
        return self._indices

    @property
    def first_index(self) -> Optional[int]:
        return self._indices[0] if len(self._indices) else None

    @property
    def last_index(self) -> Optional[int]:
        return self._indices[-1] if len(self._indices) else None


class DatasetSplit(NamedTuple):
    """Chronological partitions of the windowed examples."""

    train: WindowSequence
    validation: WindowSequence
    test: WindowSequence
    purged: int = 0

    def sizes(self) -> dict[str, int]:
        return {
            "train": len(self.train),
            "validation": len(self.validation),
            "test": len(self.test),
            "purged": self.purged,
        }


def build_windows(returns: np.ndarray, lookback: int, horizon: int) -> WindowSequence:
    """Return every lookback/horizon window over ``returns``."""

    if int(lookback) < 1 or int(horizon) < 1:
        raise ValueError("lookback and horizon must both be at least 1.")
    values = np.asarray(returns, dtype=float)
    if values.ndim != 1:
        raise ValueError("Returns must be a one dimensional sequence.")
    windows = WindowSequence(values, int(lookback), int(horizon))
    LOGGER.debug(
        "Built %s windows from %s returns (lookback=%s, horizon=%s)",
        len(windows),
        values.size,
        lookback,
        horizon,
    )
    return windows


def _partition_size(total: int, fraction: float) -> int:
    return int(math.floor(total * fraction + _FRACTION_EPSILON))


def _purge_overlap(earlier: WindowSequence, later: WindowSequence) -> tuple[WindowSequence, int]:
    """Drop trailing windows of ``earlier`` whose targets reach ``later``'s first target."""

    if not len(earlier) or not len(later):
        return earlier, 0
    boundary = later[0].target_span[0]
    keep = len(earlier)
    while keep and earlier[keep - 1].target_span[1] > boundary:
        keep -= 1
    return earlier[:keep], len(earlier) - keep


def check_no_leakage(split: DatasetSplit, *, require_disjoint_targets: bool = False) -> None:
    """Raise :class:`LeakageError` when partitions are out of order or overlap.

    Every train window must start before every validation window, which must
    start before every test window. With ``require_disjoint_targets`` the
    target span of each partition's last window must also end at or before
    the first target of the next non-empty partition.
    """

    partitions = [(name, seq) for name, seq in zip(("train", "validation", "test"), split[:3]) if len(seq)]
    for (earlier_name, earlier), (later_name, later) in zip(partitions, partitions[1:]):
        if earlier.last_index >= later.first_index:
            raise LeakageError(
                f"{earlier_name} window {earlier.last_index} does not precede "
                f"{later_name} window {later.first_index}."
            )
        if require_disjoint_targets:
            earlier_end = earlier[-1].target_span[1]
            later_start = later[0].target_span[0]
            if earlier_end > later_start:
                raise LeakageError(
                    f"{earlier_name} targets reach return {earlier_end - 1}, inside the "
                    f"{later_name} targets starting at return {later_start}."
                )


def split_dataset(
    examples: WindowSequence,
    train_fraction: float,
    validation_fraction: float,
    *,
    purge: bool = False,
) -> DatasetSplit:
    """Partition ``examples`` chronologically into train, validation and test windows.

    The test partition receives whatever remains after train and validation.
    With ``purge`` the windows whose targets would overlap the next
    partition's targets are dropped and counted in ``DatasetSplit.purged``,
    and the leakage check also requires disjoint target spans.

    Without ``purge`` the leakage check only verifies start-index ordering,
    which contiguous slicing always satisfies. Boundary windows whose targets
    reach into the next partition are kept and their number is logged at
    WARNING.
    """

    for name, value in (("train_fraction", train_fraction), ("validation_fraction", validation_fraction)):
        if not 0 < value < 1:
            raise InvalidSplitError(f"{name} must be between 0 and 1, got {value!r}.")
    if train_fraction + validation_fraction >= 1:
        raise InvalidSplitError(
            f"train_fraction + validation_fraction must be below 1, got "
            f"{train_fraction + validation_fraction!r}."
        )

    total = len(examples)
    n_train = _partition_size(total, train_fraction)
    n_val = _partition_size(total, validation_fraction)

    train = examples[:n_train]
    validation = examples[n_train : n_train + n_val]
    test = examples[n_train + n_val :]

    purged = 0
    if purge:
        train, dropped = _purge_overlap(train, validation if len(validation) else test)
        purged += dropped
        validation, dropped = _purge_overlap(validation, test)
        purged += dropped
    else:
        overlapping = (
            _purge_overlap(train, validation if len(validation) else test)[1]
            + _purge_overlap(validation, test)[1]
        )
        if overlapping:
            LOGGER.warning(
                "%s boundary windows have targets overlapping the next partition; pass purge=True to drop them",
                overlapping,
            )

    split = DatasetSplit(train=train, validation=validation, test=test, purged=purged)
    check_no_leakage(split, require_disjoint_targets=purge)
    LOGGER.info(
        "Split %s windows into train=%s validation=%s test=%s (purged=%s)",
        total,
        len(train),
        len(validation),
        len(test),
        purged,
    )
    return split


def latest_window(returns: np.ndarray, lookback: int) -> WindowedExample:
    """Return the most recent ``lookback`` returns as a target-less example."""

    values = np.asarray(returns, dtype=float)
    if lookback < 1:
        raise ValueError("lookback must be at least 1.")
    if values.size < lookback:
        raise InsufficientDataError(
            "Not enough return history for a live window.", required=lookback, available=int(values.size)
        )
    start = values.size - lookback
    return WindowedExample(index=start, inputs=values[start:].copy(), target=None)


def stack_examples(examples: Sequence, task: str = "classification") -> tuple[np.ndarray, np.ndarray]:
    """Stack windows into ``X`` of shape ``(n, lookback, 1)`` and ``y`` of shape ``(n, horizon)``."""

    if task not in ("classification", "regression"):
        raise ValueError(f"Unsupported task {task!r}.")
    items = list(examples)
    lookback = getattr(examples, "lookback", items[0].lookback if items else 0)
    horizon = getattr(examples, "horizon", items[0].horizon if items else 0)
    if not items:
        return (
            np.empty((0, lookback, 1), dtype=np.float32),
            np.empty((0, horizon), dtype=np.float32),
        )
    X = np.stack([item.inputs for item in items]).astype(np.float32)[:, :, None]
    if task == "classification":
        y = np.stack([item.labels for item in items]).astype(np.float32)
    else:
        y = np.stack([item.target for item in items]).astype(np.float32)
    return X, y


__all__ = [
    "DatasetSplit",
    "WindowSequence",
    "WindowedExample",
    "build_windows",
    "check_no_leakage",
    "direction_labels",
    "latest_window",
    "split_dataset",
    "stack_examples",
]

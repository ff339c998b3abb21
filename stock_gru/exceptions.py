"""Typed failures raised by the data loader and the model wrapper."""

from __future__ import annotations


class ForecasterError(Exception):
    """Base class for every failure the controller knows how to report."""


class DataFetchError(ForecasterError):
    """Raised when price data cannot be retrieved from its source."""

    def __init__(self, message: str, *, source: str | None = None) -> None:
        super().__init__(message)
        self.source = source


class ParseError(DataFetchError):
    """Raised when retrieved text does not contain a usable price table."""


class InsufficientDataError(ForecasterError, ValueError):
    """Raised when a series or dataset is too short for the requested operation."""

    def __init__(self, message: str, *, required: int | None = None, available: int | None = None) -> None:
        details = [message]
        if required is not None and available is not None:
            details.append(f"(required {required}, available {available})")
        super().__init__(" ".join(details))
        self.required = required
        self.available = available


class InvalidSplitError(ForecasterError, ValueError):
    """Raised when train/validation fractions do not describe a valid partition."""


class LeakageError(InvalidSplitError):
    """Raised when a partition boundary lets targets reach into a later partition."""


class ModelStateError(ForecasterError, RuntimeError):
    """Raised when the model wrapper is used out of order."""


class NotConfiguredError(ModelStateError):
    """Raised when training is requested before a network has been configured."""


class NotTrainedError(ModelStateError):
    """Raised when evaluation or inference is requested before training completed."""


class TrainingDivergenceError(ForecasterError):
    """Raised when the training or validation loss stops being finite."""

    def __init__(self, epoch: int, train_loss: float, val_loss: float | None) -> None:
        super().__init__(
            f"Training diverged at epoch {epoch}: train_loss={train_loss!r}, val_loss={val_loss!r}"
        )
        self.epoch = epoch
        self.train_loss = train_loss
        self.val_loss = val_loss


__all__ = [
    "DataFetchError",
    "ForecasterError",
    "InsufficientDataError",
    "InvalidSplitError",
    "LeakageError",
    "ModelStateError",
    "NotConfiguredError",
    "NotTrainedError",
    "ParseError",
    "TrainingDivergenceError",
]

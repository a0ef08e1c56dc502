"""Exceptions raised by chunkasr."""


class MetadataError(ValueError):
    """A required model metadata key is missing or not an integer."""


class EmptyInputError(ValueError):
    """A chunk forward was requested with no feature frames at all."""


class UninitializedModelError(RuntimeError):
    """The streaming model was used before reset() set up its state."""

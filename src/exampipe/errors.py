"""Exception types shared across the pipeline."""

from __future__ import annotations


class ConfigurationError(RuntimeError):
    """Raised when a required setting is missing or malformed."""


class PartitionError(ValueError):
    """Raised when batch size and overlap cannot make forward progress."""


class PaperNotFoundError(LookupError):
    """Raised when the requested paper row does not exist."""


class QuestionNotFoundError(LookupError):
    """Raised when the requested question row does not exist."""


class DocumentFetchError(RuntimeError):
    """Raised when a source document cannot be downloaded."""


class CroppingError(RuntimeError):
    """Raised when the cropping service fails to return an image."""


class FigureDimensionsError(ValueError):
    """Raised when a figure rectangle lacks its reference page dimensions."""


class ExtractionParseError(ValueError):
    """Raised when model output cannot be repaired into JSON.

    Carries the raw text length and a bounded prefix for diagnostics.
    """

    PREFIX_LIMIT = 200

    def __init__(self, raw_text: str) -> None:
        self.raw_length = len(raw_text)
        self.prefix = raw_text[: self.PREFIX_LIMIT]
        super().__init__(
            f"Unable to parse model output ({self.raw_length} chars): {self.prefix!r}",
        )

"""Exception hierarchy for the tutor engine."""

from __future__ import annotations


class TutorError(Exception):
    """Base class for every error raised by the tutor engine."""


class EmptyWordListError(TutorError):
    """A session cannot start without at least one word."""


class SessionCompleteError(TutorError):
    """The word cursor is already past the end of the list."""


class RecognizerError(TutorError):
    """The streaming speech-to-text connection failed."""


class SynthesisError(TutorError):
    """Text-to-speech produced no usable audio."""


class ContentGenerationError(TutorError):
    """The LLM returned nothing usable for a word list or feedback."""


class SessionLimitError(TutorError):
    """The process already hosts its maximum number of live sessions."""

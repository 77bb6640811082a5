"""Domain errors raised while evaluating a quiz submission.

Each error carries the HTTP status the API layer answers with. Handlers in
``app.py`` turn them into ``{"success": false, "error": ...}`` bodies.
"""

from __future__ import annotations


class QuizSubmissionError(Exception):
    """Base class for recoverable submission failures."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class Unauthenticated(QuizSubmissionError):
    status_code = 401


class NotFound(QuizSubmissionError):
    status_code = 404


class MalformedInput(QuizSubmissionError):
    """Bad request payload or a stored quiz that cannot be evaluated."""

    status_code = 400


class AttemptNotAllowed(QuizSubmissionError):
    """Retakes are disabled or the attempt cap has been reached."""

    status_code = 400


class AttemptConflict(QuizSubmissionError):
    """A concurrent submission already claimed this attempt number."""

    status_code = 409

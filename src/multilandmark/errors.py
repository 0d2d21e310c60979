"""Errors raised while fitting and applying landmark registrations."""

from typing import Optional


class RegistrationError(Exception):
    """Base class for failures that abort a registration run.

    Once the failing image pair is known it is attached with `for_pair` so the
    caller can tell which landmarks need fixing.
    """

    def __init__(
        self, message: str, source: Optional[str] = None, target: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.source = source
        self.target = target

    def for_pair(self, source: str, target: str) -> "RegistrationError":
        if self.source is None:
            self.source = source
            self.target = target
        return self

    def __str__(self):
        if self.source is None:
            return self.message
        return f"{self.message} (from {self.source} to {self.target})"


class NotEnoughDataPoints(RegistrationError):
    """Fewer correspondences than the model family needs."""


class IllDefinedDataPoints(RegistrationError):
    """Enough correspondences, but too degenerate to define a unique model."""


class NoninvertibleModel(RegistrationError):
    """The linear part of a fitted model is singular."""

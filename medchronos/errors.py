"""
Exception hierarchy for the MedChronos AI service.

Provider failures are split by how callers must react to them:
transient errors are retried, safety blocks are surfaced to the user as a
"rephrase" condition, malformed responses are never retried.
"""
from typing import Optional


class MedChronosError(Exception):
    """Base class for all service errors."""


class ProviderError(MedChronosError):
    """An inference provider call failed."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Timeout, rate limit, 5xx or connection failure. Safe to retry."""


class SafetyBlockedError(ProviderError):
    """The provider refused to answer because of its safety filters."""

    user_message = "Response blocked due to safety settings. Please rephrase your query."


class MalformedResponseError(ProviderError):
    """The provider answered, but not in a shape we can use."""


class InvalidInputError(MedChronosError):
    """Input that will fail the same way no matter how often it is sent."""


class UnparseableReportError(MedChronosError):
    """Report synthesis output did not contain the mandatory JSON fields."""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class NotFoundError(MedChronosError):
    """A referenced patient, study, report or chat does not exist."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier

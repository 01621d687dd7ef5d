"""
Error taxonomy for ResearchDesk.

Every error carries a stable `kind` and a message that is safe to show to
users: no prompts, provider payloads or API keys.
"""
from typing import Dict


class ResearchDeskError(Exception):
    """Base class for errors surfaced to callers."""

    kind = "Error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class InputError(ResearchDeskError):
    """Text is empty or could not be extracted from the upload."""
    kind = "InputError"


class ExtractionFailure(ResearchDeskError):
    """AI extraction failed after its retry; document fields were left unchanged."""
    kind = "ExtractionFailure"


class NotFoundError(ResearchDeskError):
    kind = "NotFound"


class ResolutionError(ResearchDeskError):
    """A chat target (document, paper, batch) no longer exists."""
    kind = "ResolutionError"


class BusyError(ResearchDeskError):
    """The conversation already has an exchange in flight."""
    kind = "Busy"


class CapabilityError(ResearchDeskError):
    """The AI provider failed, or its stream ended before completion."""
    kind = "CapabilityError"


class CapabilityTimeout(CapabilityError):
    kind = "CapabilityTimeout"


class ConfigurationError(ResearchDeskError):
    """No usable model configuration is available."""
    kind = "ConfigurationError"

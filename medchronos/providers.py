"""
Inference provider interface and response-shape parsing.

Two concrete providers implement InferenceProvider: MedGemmaClient (the
specialized vision model, preferred for captioning and summarization) and
GeminiClient (the general model, used as fallback and for all synthesis and
streaming). Providers are constructed explicitly and passed into the
components that use them.

Raw provider payloads are parsed per provider shape. A payload that does not
match a known shape raises MalformedResponseError instead of yielding "".
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Optional, Sequence

from .errors import MalformedResponseError, SafetyBlockedError
from .prompts import STRUCTURED_FIELD_PROMPT, SUMMARIZE_CAPTIONS_PROMPT


class Tier(str, Enum):
    SPECIALIZED = "specialized"
    GENERAL = "general"
    SENTINEL = "sentinel"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"

    @classmethod
    def parse(cls, value: Any) -> "Confidence":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.NONE


@dataclass(frozen=True)
class FieldSpec:
    """Describes one auxiliary value to read off an image."""
    name: str
    instructions: str
    value_format: str


@dataclass(frozen=True)
class StructuredField:
    name: str
    value: Optional[str]
    confidence: Confidence
    original_text: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        # A literal value with confidence "none" is still a failed extraction
        return self.value is not None and self.confidence != Confidence.NONE


@dataclass(frozen=True)
class ChatTurn:
    """One conversation turn in provider vocabulary ("user" or "model")."""
    role: str
    text: str


IMAGING_DATE_FIELD = FieldSpec(
    name="imaging_date",
    instructions=(
        "Look for the imaging/acquisition date in the image. Common locations are "
        "the corners of the image, header information, DICOM overlay text and "
        "printed report sections."
    ),
    value_format="ISO date YYYY-MM-DD, or YYYY-MM-DDTHH:mm if a time is visible",
)

MODALITY_FIELD = FieldSpec(
    name="modality",
    instructions=(
        "Identify the imaging modality from image characteristics, text overlays "
        "and displayed technical parameters."
    ),
    value_format="one of CT, MRI, X-Ray, US, PET, NM, MG, FL, DEXA",
)


class InferenceProvider(ABC):
    """Capability surface shared by both inference backends."""

    name: str = "provider"
    tier: Tier = Tier.GENERAL

    @abstractmethod
    async def caption_image(self, image_base64: str) -> str:
        """Free-text technical description of one normalized JPEG image."""

    @abstractmethod
    async def summarize_texts(self, texts: Sequence[str]) -> str:
        """Collapse ordered per-slice captions into one study narrative."""

    @abstractmethod
    async def extract_structured_field(self, image_base64: str, field_spec: FieldSpec) -> StructuredField:
        """Read an auxiliary value (date, modality) off an image."""

    @abstractmethod
    async def generate_free_text(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Open-ended single-shot generation."""

    @abstractmethod
    def generate_free_text_stream(
        self,
        system_instruction: Optional[str],
        history: Sequence[ChatTurn],
        message: str,
    ) -> AsyncIterator[str]:
        """Stream a reply as text fragments, in arrival order. Single pass."""

    async def aclose(self) -> None:
        """Release network resources."""


# ---------------------------------------------------------------------------
# Shared prompt building
# ---------------------------------------------------------------------------

def format_slice_descriptions(texts: Sequence[str]) -> str:
    return "\n\n".join(f"Slice {i}: {caption}" for i, caption in enumerate(texts, 1))


def summarize_prompt(texts: Sequence[str]) -> str:
    return SUMMARIZE_CAPTIONS_PROMPT.format(slice_descriptions=format_slice_descriptions(texts))


def extraction_prompt(field_spec: FieldSpec) -> str:
    return STRUCTURED_FIELD_PROMPT.format(
        instructions=field_spec.instructions,
        value_format=field_spec.value_format,
    )


def parse_structured_field(field_spec: FieldSpec, data: dict) -> StructuredField:
    value = data.get("value", data.get(field_spec.name))
    if isinstance(value, str):
        value = value.strip() or None
    elif value is not None:
        value = str(value)
    original = data.get("original_text") or data.get("originalFormat")
    return StructuredField(
        name=field_spec.name,
        value=value,
        confidence=Confidence.parse(data.get("confidence", "none")),
        original_text=str(original) if original else None,
    )


# ---------------------------------------------------------------------------
# Response shapes
# ---------------------------------------------------------------------------

def _choice_content(choice: Any, provider: str) -> str:
    if not isinstance(choice, dict):
        raise MalformedResponseError(provider, f"choice is {type(choice).__name__}, expected object")
    message = choice.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str):
        raise MalformedResponseError(provider, "choice has no message content")
    if not content.strip():
        raise MalformedResponseError(provider, "empty message content")
    return content


def parse_medgemma_payload(payload: Any, provider: str = "medgemma") -> str:
    """Extract reply text from a MedGemma endpoint payload.

    Accepted shapes:
      - OpenAI chat completions: {"choices": [{"message": {"content": ...}}]}
      - Vertex predict, list form: {"predictions": [[{"message": {...}}]]}
        (or a flat list of choices)
      - Vertex predict, dict form: {"predictions": {"choices": [...]}}
    """
    if not isinstance(payload, dict):
        raise MalformedResponseError(provider, f"payload is {type(payload).__name__}, expected object")

    if "choices" in payload:
        choices = payload["choices"]
        if not isinstance(choices, list) or not choices:
            raise MalformedResponseError(provider, "empty choices")
        return _choice_content(choices[0], provider)

    if "predictions" in payload:
        predictions = payload["predictions"]
        if isinstance(predictions, dict):
            choices = predictions.get("choices")
            if not isinstance(choices, list) or not choices:
                raise MalformedResponseError(provider, "predictions has no choices")
            return _choice_content(choices[0], provider)
        if isinstance(predictions, list) and predictions:
            first = predictions[0]
            if isinstance(first, list):
                if not first:
                    raise MalformedResponseError(provider, "empty prediction list")
                first = first[0]
            return _choice_content(first, provider)
        raise MalformedResponseError(provider, "empty predictions")

    raise MalformedResponseError(provider, "payload has neither choices nor predictions")


BLOCKING_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "IMAGE_SAFETY"}


def _enum_name(value: Any) -> str:
    if value is None:
        return ""
    return str(getattr(value, "name", value)).rsplit(".", 1)[-1].upper()


def check_gemini_safety(response: Any, provider: str = "gemini") -> None:
    """Raise SafetyBlockedError if a Gemini response (or chunk) was blocked."""
    feedback = getattr(response, "prompt_feedback", None)
    block_reason = getattr(feedback, "block_reason", None) if feedback is not None else None
    if block_reason:
        raise SafetyBlockedError(provider, f"prompt blocked: {_enum_name(block_reason)}")

    candidates = getattr(response, "candidates", None) or []
    if candidates:
        finish_reason = _enum_name(getattr(candidates[0], "finish_reason", None))
        if finish_reason in BLOCKING_FINISH_REASONS:
            raise SafetyBlockedError(provider, f"response blocked: {finish_reason}")


def parse_gemini_response(response: Any, provider: str = "gemini") -> str:
    """Extract text from a google-genai GenerateContentResponse."""
    check_gemini_safety(response, provider)
    text = getattr(response, "text", None)
    if not isinstance(text, str) or not text.strip():
        raise MalformedResponseError(provider, "response contained no text")
    return text

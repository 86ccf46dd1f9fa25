"""Shared fakes for provider-facing tests."""
import asyncio
import io
from datetime import datetime, timezone
from typing import Optional

import pytest
from PIL import Image as PILImage

from medchronos.models import Patient, Study
from medchronos.providers import Confidence, InferenceProvider, StructuredField, Tier
from medchronos.retry import RetryPolicy


def _resolve(outcome):
    if isinstance(outcome, BaseException):
        raise outcome
    return outcome


class FakeProvider(InferenceProvider):
    """Scriptable provider.

    Outcomes are plain values or exceptions to raise. `caption_outcomes`
    maps an image payload to a queue of outcomes consumed one per call.
    """

    def __init__(self, name: str = "fake", tier: Tier = Tier.GENERAL):
        self.name = name
        self.tier = tier
        self.calls = []
        self.caption_outcomes: dict[str, list] = {}
        self.caption_default = f"{name} caption"
        self.summary_outcomes: list = []
        self.summary_default = f"{name} study summary"
        self.free_text_outcomes: list = []
        self.field_outcome = StructuredField("imaging_date", "2024-03-01", Confidence.HIGH)
        self.stream_chunks: list = []
        self.stream_delay = 0.0
        self.stream_closed = False
        self.closed = False

    def count(self, capability: str) -> int:
        return sum(1 for name, _ in self.calls if name == capability)

    async def caption_image(self, image_base64: str) -> str:
        self.calls.append(("caption_image", image_base64))
        queue = self.caption_outcomes.get(image_base64)
        if queue:
            return _resolve(queue.pop(0) if len(queue) > 1 else queue[0])
        return f"{self.caption_default} {image_base64}"

    async def summarize_texts(self, texts) -> str:
        self.calls.append(("summarize_texts", list(texts)))
        if self.summary_outcomes:
            return _resolve(self.summary_outcomes.pop(0))
        return self.summary_default

    async def extract_structured_field(self, image_base64, field_spec) -> StructuredField:
        self.calls.append(("extract_structured_field", field_spec.name))
        return _resolve(self.field_outcome)

    async def generate_free_text(self, prompt, system_instruction=None, timeout=None) -> str:
        self.calls.append(("generate_free_text", prompt))
        return _resolve(self.free_text_outcomes.pop(0))

    async def generate_free_text_stream(self, system_instruction, history, message):
        self.calls.append(("stream", (system_instruction, list(history), message)))
        try:
            for chunk in self.stream_chunks:
                if self.stream_delay:
                    await asyncio.sleep(self.stream_delay)
                yield _resolve(chunk)
        finally:
            self.stream_closed = True

    async def aclose(self) -> None:
        self.closed = True


class FakeGeneral(FakeProvider):
    """FakeProvider plus the general-tier extras."""

    def __init__(self, name: str = "gemini"):
        super().__init__(name, Tier.GENERAL)
        self.enhance_outcome = None  # None: deterministic rewrite
        self.study_summary_outcomes: list = []
        self.title_outcome = "Chest CT"
        self.modality_outcome: Optional[str] = "CT"
        self.chat_title_outcome = "Nodule follow-up"

    async def enhance_caption(self, raw_caption, slice_index, total_slices) -> str:
        self.calls.append(("enhance_caption", (raw_caption, slice_index, total_slices)))
        if self.enhance_outcome is not None:
            return _resolve(self.enhance_outcome)
        return f"Enhanced: {raw_caption}"

    async def summarize_study(self, captions, title=None, modality=None) -> str:
        self.calls.append(("summarize_study", list(captions)))
        if self.study_summary_outcomes:
            return _resolve(self.study_summary_outcomes.pop(0))
        return f"Summary of {len(captions)} slices"

    async def generate_study_title(self, image_base64, modality=None) -> str:
        self.calls.append(("generate_study_title", modality))
        return _resolve(self.title_outcome)

    async def extract_modality(self, image_base64) -> Optional[str]:
        self.calls.append(("extract_modality", None))
        return _resolve(self.modality_outcome)

    async def generate_chat_title(self, transcript) -> str:
        self.calls.append(("generate_chat_title", transcript))
        return _resolve(self.chat_title_outcome)


NO_WAIT = RetryPolicy(max_attempts=2, backoff_seconds=0)


@pytest.fixture
def specialized():
    return FakeProvider("medgemma", Tier.SPECIALIZED)


@pytest.fixture
def general():
    return FakeGeneral()


@pytest.fixture
def no_wait():
    return NO_WAIT


@pytest.fixture
def patient():
    return Patient(name="Jane Doe", age=54, sex="F", reason_for_imaging="Pulmonary nodule follow-up")


@pytest.fixture
def two_studies(patient):
    # Deliberately out of order
    later = Study(
        id="s2",
        patient_id=patient.id,
        title="Follow-up chest CT",
        modality="CT",
        imaging_datetime=datetime(2024, 6, 1, tzinfo=timezone.utc),
        series_summary="6 mm nodule, unchanged.",
    )
    earlier = Study(
        id="s1",
        patient_id=patient.id,
        title="Baseline chest CT",
        modality="CT",
        imaging_datetime=datetime(2024, 1, 1, tzinfo=timezone.utc),
        series_summary="6 mm right upper lobe nodule.",
    )
    return [later, earlier]


def make_png(width: int = 64, height: int = 48, color=(120, 120, 120)) -> bytes:
    buffer = io.BytesIO()
    PILImage.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def png_bytes():
    return make_png()

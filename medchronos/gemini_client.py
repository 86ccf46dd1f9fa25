"""
Gemini Client - google-genai wrapper for the general tier.

Serves as caption/summary fallback for MedGemma and handles everything
MedGemma does not: caption enhancement, study summaries, titles, modality
detection, report synthesis and streaming chat.
"""
import asyncio
import base64
import binascii
from contextlib import aclosing
from typing import Any, AsyncIterator, Optional, Sequence

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from .errors import InvalidInputError, MalformedResponseError, ProviderError, TransientProviderError
from .json_utils import JSONExtractionError, extract_json
from .prompts import (
    CAPTION_ENHANCEMENT_PROMPT,
    CHAT_TITLE_PROMPT,
    GENERAL_CAPTION_PROMPT,
    MODALITY_PROMPT,
    STUDY_SUMMARY_PROMPT,
    STUDY_TITLE_PROMPT,
)
from .providers import (
    ChatTurn,
    FieldSpec,
    InferenceProvider,
    StructuredField,
    Tier,
    check_gemini_safety,
    extraction_prompt,
    format_slice_descriptions,
    parse_gemini_response,
    parse_structured_field,
    summarize_prompt,
)
from .structured_logging import StructuredLogger

logger = StructuredLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300.0
CHAT_TITLE_MAX_CHARS = 50

# Clinical images and findings trip the default filters; only outright
# blocks reported by the API are treated as safety failures.
SAFETY_SETTINGS = [
    types.SafetySetting(category=category, threshold=types.HarmBlockThreshold.BLOCK_NONE)
    for category in (
        types.HarmCategory.HARM_CATEGORY_HARASSMENT,
        types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
        types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
        types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
    )
]

VALID_MODALITIES = {"CT", "MRI", "X-RAY", "US", "ULTRASOUND", "PET", "NM", "MG", "FL", "DEXA", "CR", "DX"}
MODALITY_ALIASES = {"ULTRASOUND": "US", "CR": "X-Ray", "DX": "X-Ray", "X-RAY": "X-Ray"}


def normalize_modality(raw: Optional[str]) -> Optional[str]:
    """Map a model's modality answer onto the supported abbreviations."""
    if not raw:
        return None
    modality = raw.strip().strip("\"'`.").upper()
    if modality not in VALID_MODALITIES:
        return None
    return MODALITY_ALIASES.get(modality, modality)


def clean_title(raw: str) -> str:
    """Remove wrapping quotes and a trailing period from a generated title."""
    title = raw.strip()
    if title[:1] in {'"', "'"}:
        title = title[1:]
    if title[-1:] in {'"', "'"}:
        title = title[:-1]
    if title.endswith("."):
        title = title[:-1]
    return title.strip()


def map_api_error(provider: str, error: Exception) -> ProviderError:
    """Translate a google-genai / transport error into the service taxonomy."""
    if isinstance(error, genai_errors.APIError):
        code = getattr(error, "code", None)
        message = getattr(error, "message", None) or str(error)
        if code is not None and (code in (408, 429) or code >= 500):
            return TransientProviderError(provider, f"API error {code}: {message}", code)
        return ProviderError(provider, f"API error {code}: {message}", code)
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return TransientProviderError(provider, "request timed out")
    if isinstance(error, httpx.TransportError):
        return TransientProviderError(provider, f"connection failed: {error}")
    return ProviderError(provider, str(error))


def _image_part(image_base64: str) -> types.Part:
    try:
        data = base64.b64decode(image_base64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidInputError(f"Image payload is not valid base64: {e}") from e
    return types.Part.from_bytes(data=data, mime_type="image/jpeg")


class GeminiClient(InferenceProvider):
    """General-tier provider backed by the Gemini API."""

    name = "gemini"
    tier = Tier.GENERAL

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gemini-2.5-pro",
        flash_model: str = "gemini-2.5-flash",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: Optional[Any] = None,
    ):
        if client is None:
            if not api_key:
                raise RuntimeError(
                    "No Gemini API key found. Set GEMINI_API_KEY or GOOGLE_API_KEY."
                )
            client = genai.Client(
                api_key=api_key,
                http_options=types.HttpOptions(timeout=int(timeout * 1000)),
            )
        self.client = client
        self.model = model
        self.flash_model = flash_model
        self.timeout = timeout
        logger.info("Gemini client initialized", model=model, flash_model=flash_model, timeout=timeout)

    def _config(
        self,
        system_instruction: Optional[str] = None,
        temperature: float = 0.4,
        max_output_tokens: Optional[int] = None,
    ) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            system_instruction=system_instruction,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            safety_settings=SAFETY_SETTINGS,
        )

    async def _generate(
        self,
        contents: Any,
        model: Optional[str] = None,
        system_instruction: Optional[str] = None,
        temperature: float = 0.4,
        max_output_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> str:
        try:
            response = await asyncio.wait_for(
                self.client.aio.models.generate_content(
                    model=model or self.model,
                    contents=contents,
                    config=self._config(system_instruction, temperature, max_output_tokens),
                ),
                timeout=timeout or self.timeout,
            )
        except (genai_errors.APIError, asyncio.TimeoutError, httpx.TransportError) as e:
            mapped = map_api_error(self.name, e)
            logger.warning("Gemini call failed", model=model or self.model, error=str(mapped))
            raise mapped from e
        return parse_gemini_response(response, self.name).strip()

    # ------------------------------------------------------------------
    # InferenceProvider capabilities
    # ------------------------------------------------------------------

    async def caption_image(self, image_base64: str) -> str:
        return await self._generate([_image_part(image_base64), GENERAL_CAPTION_PROMPT])

    async def summarize_texts(self, texts: Sequence[str]) -> str:
        return await self._generate(summarize_prompt(texts), temperature=0.3)

    async def extract_structured_field(self, image_base64: str, field_spec: FieldSpec) -> StructuredField:
        text = await self._generate(
            [_image_part(image_base64), extraction_prompt(field_spec)],
            model=self.flash_model,
            temperature=0.0,
        )
        try:
            data = extract_json(text)
        except JSONExtractionError as e:
            raise MalformedResponseError(self.name, f"{field_spec.name}: {e}") from e
        return parse_structured_field(field_spec, data)

    async def generate_free_text(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        return await self._generate(prompt, system_instruction=system_instruction, timeout=timeout)

    async def generate_free_text_stream(
        self,
        system_instruction: Optional[str],
        history: Sequence[ChatTurn],
        message: str,
    ) -> AsyncIterator[str]:
        contents = [
            types.Content(role=turn.role, parts=[types.Part.from_text(text=turn.text)])
            for turn in history
        ]
        contents.append(types.Content(role="user", parts=[types.Part.from_text(text=message)]))

        try:
            stream = await self.client.aio.models.generate_content_stream(
                model=self.model,
                contents=contents,
                config=self._config(system_instruction, temperature=0.5),
            )
            async with aclosing(stream):
                async for chunk in stream:
                    check_gemini_safety(chunk, self.name)
                    text = getattr(chunk, "text", None)
                    if text:
                        yield text
        except (genai_errors.APIError, httpx.TransportError) as e:
            raise map_api_error(self.name, e) from e

    # ------------------------------------------------------------------
    # General-tier extras
    # ------------------------------------------------------------------

    async def enhance_caption(self, raw_caption: str, slice_index: int, total_slices: int) -> str:
        """Rewrite a raw caption for readability without adding findings."""
        prompt = CAPTION_ENHANCEMENT_PROMPT.format(
            position=slice_index + 1,
            total=total_slices,
            raw_caption=raw_caption,
        )
        return await self._generate(prompt, model=self.flash_model, temperature=0.2)

    async def summarize_study(
        self,
        captions: Sequence[str],
        title: Optional[str] = None,
        modality: Optional[str] = None,
    ) -> str:
        prompt = STUDY_SUMMARY_PROMPT.format(
            title=title or "Untitled study",
            modality=modality or "Not specified",
            count=len(captions),
            slice_descriptions=format_slice_descriptions(captions),
        )
        return await self._generate(prompt, temperature=0.3)

    async def generate_study_title(self, image_base64: str, modality: Optional[str] = None) -> str:
        modality_line = f"\nImaging modality: {modality}\n" if modality else ""
        text = await self._generate(
            [_image_part(image_base64), STUDY_TITLE_PROMPT.format(modality_line=modality_line)],
            model=self.flash_model,
            temperature=0.2,
        )
        return clean_title(text)

    async def extract_modality(self, image_base64: str) -> Optional[str]:
        text = await self._generate(
            [_image_part(image_base64), MODALITY_PROMPT],
            model=self.flash_model,
            temperature=0.0,
        )
        return normalize_modality(text)

    async def generate_chat_title(self, transcript: str) -> str:
        text = await self._generate(
            CHAT_TITLE_PROMPT.format(transcript=transcript),
            model=self.flash_model,
            temperature=0.3,
        )
        return clean_title(text)[:CHAT_TITLE_MAX_CHARS]

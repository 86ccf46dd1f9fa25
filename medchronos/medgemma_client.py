"""
MedGemma Client - HTTP client for the specialized vision model.

Talks to either an OpenAI-compatible vLLM server (/v1/chat/completions) or a
Vertex AI endpoint (:predict with "@requestFormat": "chatCompletions").
Captions from this provider are framed for downstream machine consumption.
"""
import asyncio
import json
from typing import AsyncIterator, Optional, Sequence

import google.auth
import httpx
from google.auth.transport.requests import Request

from .errors import MalformedResponseError, ProviderError, TransientProviderError
from .json_utils import JSONExtractionError, extract_json
from .prompts import SPECIALIZED_CAPTION_PROMPT, SPECIALIZED_CAPTION_SYSTEM_PROMPT
from .providers import (
    ChatTurn,
    FieldSpec,
    InferenceProvider,
    StructuredField,
    Tier,
    extraction_prompt,
    parse_medgemma_payload,
    parse_structured_field,
    summarize_prompt,
)
from .refusal import is_pure_refusal, strip_refusal_preamble
from .structured_logging import StructuredLogger

logger = StructuredLogger(__name__)

MODEL_ID = "google/medgemma-4b-it"
DEFAULT_TIMEOUT = 300.0
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

REQUEST_FORMAT_OPENAI = "openai"
REQUEST_FORMAT_VERTEX = "vertex"

TRANSIENT_STATUS_CODES = {408, 429}


def is_transient_status(status_code: int) -> bool:
    return status_code in TRANSIENT_STATUS_CODES or status_code >= 500


class GoogleAccessTokenSource:
    """Bearer tokens from Application Default Credentials."""

    def __init__(self, scopes: Sequence[str] = (CLOUD_PLATFORM_SCOPE,)):
        self._scopes = list(scopes)
        self._credentials = None

    def _refresh(self) -> str:
        if self._credentials is None:
            self._credentials, _ = google.auth.default(scopes=self._scopes)
        if not self._credentials.valid:
            self._credentials.refresh(Request())
        return self._credentials.token

    async def get_token(self) -> str:
        # google-auth refresh is blocking I/O
        return await asyncio.to_thread(self._refresh)


class MedGemmaClient(InferenceProvider):
    """HTTP client for MedGemma (specialized tier)."""

    name = "medgemma"
    tier = Tier.SPECIALIZED

    def __init__(
        self,
        base_url: str,
        model_id: str = MODEL_ID,
        request_format: str = REQUEST_FORMAT_OPENAI,
        access_token: Optional[str] = None,
        token_source: Optional[GoogleAccessTokenSource] = None,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if request_format not in (REQUEST_FORMAT_OPENAI, REQUEST_FORMAT_VERTEX):
            raise ValueError(f"Unknown MedGemma request format: {request_format}")
        self.base_url = base_url.rstrip("/")
        self.model_id = model_id
        self.request_format = request_format
        self.timeout = timeout
        self._access_token = access_token
        self._token_source = token_source
        if request_format == REQUEST_FORMAT_VERTEX and not access_token and token_source is None:
            self._token_source = GoogleAccessTokenSource()
        self.client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def endpoint(self) -> str:
        if self.request_format == REQUEST_FORMAT_VERTEX:
            # Vertex: base_url is the full ...:predict endpoint
            return self.base_url
        return f"{self.base_url}/v1/chat/completions"

    async def aclose(self) -> None:
        await self.client.aclose()

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _messages(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        image_base64: Optional[str] = None,
        history: Sequence[ChatTurn] = (),
    ) -> list[dict]:
        messages = []
        if system_prompt:
            messages.append({
                "role": "system",
                "content": [{"type": "text", "text": system_prompt}],
            })
        for turn in history:
            messages.append({
                "role": "assistant" if turn.role == "model" else "user",
                "content": [{"type": "text", "text": turn.text}],
            })

        user_content = [{"type": "text", "text": prompt}]
        if image_base64 is not None:
            user_content.append({
                "type": "image_url",
                "image_url": {"url": f"data:image/jpeg;base64,{image_base64}"},
            })
        messages.append({"role": "user", "content": user_content})
        return messages

    def _body(self, messages: list[dict], max_tokens: int, temperature: float, stream: bool = False) -> dict:
        if self.request_format == REQUEST_FORMAT_VERTEX:
            return {
                "instances": [{
                    "@requestFormat": "chatCompletions",
                    "messages": messages,
                    "max_tokens": max_tokens,
                    "temperature": temperature,
                }]
            }
        body = {
            "model": self.model_id,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "top_p": 0.9,
        }
        if stream:
            body["stream"] = True
        return body

    async def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        token = self._access_token
        if not token and self._token_source is not None:
            try:
                token = await self._token_source.get_token()
            except Exception as e:
                raise ProviderError(self.name, f"could not obtain access token: {e}") from e
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _status_error(self, status_code: int, detail: str) -> ProviderError:
        message = f"HTTP {status_code}: {detail[:200]}"
        if is_transient_status(status_code):
            return TransientProviderError(self.name, message, status_code)
        return ProviderError(self.name, message, status_code)

    async def _chat(
        self,
        messages: list[dict],
        max_tokens: int = 1024,
        temperature: float = 0.3,
        timeout: Optional[float] = None,
    ) -> str:
        """POST one chat-completions request and return the reply text."""
        try:
            response = await self.client.post(
                self.endpoint,
                json=self._body(messages, max_tokens, temperature),
                headers=await self._headers(),
                timeout=timeout or self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "MedGemma HTTP error",
                status_code=e.response.status_code,
                detail=e.response.text[:500],
            )
            raise self._status_error(e.response.status_code, e.response.text) from e
        except httpx.TimeoutException as e:
            logger.warning("MedGemma request timed out", timeout=timeout or self.timeout)
            raise TransientProviderError(self.name, f"request timed out: {e}") from e
        except httpx.RequestError as e:
            logger.error("MedGemma connection error", error=str(e))
            raise TransientProviderError(self.name, f"connection failed: {e}") from e

        try:
            payload = response.json()
        except json.JSONDecodeError as e:
            raise MalformedResponseError(self.name, "response body is not JSON") from e
        return parse_medgemma_payload(payload, self.name)

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    async def caption_image(self, image_base64: str) -> str:
        text = await self._chat(
            self._messages(SPECIALIZED_CAPTION_PROMPT, SPECIALIZED_CAPTION_SYSTEM_PROMPT, image_base64),
            max_tokens=1024,
        )
        if is_pure_refusal(text):
            logger.warning("MedGemma returned a pure refusal caption", preview=text[:200])
            raise MalformedResponseError(self.name, "model refused to describe the image")
        return strip_refusal_preamble(text).strip()

    async def summarize_texts(self, texts: Sequence[str]) -> str:
        text = await self._chat(
            self._messages(summarize_prompt(texts), SPECIALIZED_CAPTION_SYSTEM_PROMPT),
            max_tokens=1024,
        )
        return text.strip()

    async def extract_structured_field(self, image_base64: str, field_spec: FieldSpec) -> StructuredField:
        text = await self._chat(
            self._messages(extraction_prompt(field_spec), image_base64=image_base64),
            max_tokens=256,
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
        return await self._chat(
            self._messages(prompt, system_instruction),
            max_tokens=4096,
            temperature=0.4,
            timeout=timeout,
        )

    async def generate_free_text_stream(
        self,
        system_instruction: Optional[str],
        history: Sequence[ChatTurn],
        message: str,
    ) -> AsyncIterator[str]:
        messages = self._messages(message, system_instruction, history=history)

        if self.request_format == REQUEST_FORMAT_VERTEX:
            # :predict has no streaming variant; deliver the reply as one chunk
            yield await self._chat(messages, max_tokens=4096, temperature=0.4)
            return

        try:
            async with self.client.stream(
                "POST",
                self.endpoint,
                json=self._body(messages, 4096, 0.4, stream=True),
                headers=await self._headers(),
            ) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise self._status_error(response.status_code, detail)
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError as e:
                        raise MalformedResponseError(self.name, "invalid stream event") from e
                    choices = event.get("choices") if isinstance(event, dict) else None
                    if not choices:
                        continue
                    delta = choices[0].get("delta") or {}
                    content = delta.get("content")
                    if content:
                        yield content
        except httpx.TimeoutException as e:
            raise TransientProviderError(self.name, f"stream timed out: {e}") from e
        except httpx.RequestError as e:
            raise TransientProviderError(self.name, f"stream connection failed: {e}") from e

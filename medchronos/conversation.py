"""
Conversational follow-up over a patient's studies and latest report.

The system prompt is rebuilt on every turn from the current patient, study
list and latest report. History is normalized to provider vocabulary and
must start on a user turn: the UI's assistant welcome message is stripped.
Replies are relayed chunk by chunk; the caller assembles and persists them.
"""
import asyncio
from contextlib import aclosing
from typing import Any, AsyncIterator, Optional, Sequence

from .citations import citation_instructions, strip_citations
from .errors import InvalidInputError, SafetyBlockedError, TransientProviderError
from .formatters import format_patient, format_report, format_studies, format_transcript
from .gemini_client import CHAT_TITLE_MAX_CHARS, GeminiClient
from .models import Patient, ReportOutput, Study
from .prompts import CHAT_SYSTEM_PROMPT, NO_REPORT_NOTICE
from .providers import ChatTurn
from .structured_logging import StructuredLogger

logger = StructuredLogger(__name__)

DEFAULT_CHAT_TITLE = "New Chat"
DEFAULT_CHUNK_TIMEOUT = 60.0
DEFAULT_TOTAL_TIMEOUT = 600.0

ROLE_MAP = {
    "user": "user",
    "assistant": "model",
    "model": "model",
}


def _turn_text(turn: Any) -> str:
    text = getattr(turn, "text", None)
    if text is None:
        text = getattr(turn, "content", "")
    return text or ""


def prepare_history(turns: Sequence[Any]) -> list[ChatTurn]:
    """Normalize prior turns for the provider.

    Roles map to "user"/"model", blank turns are dropped and leading model
    turns are removed so the sequence is empty or starts with the user.

    Raises:
        InvalidInputError: a turn has an unknown role
    """
    normalized = []
    for turn in turns:
        role = ROLE_MAP.get(str(turn.role).lower())
        if role is None:
            raise InvalidInputError(f"Unknown chat role: {turn.role}")
        text = _turn_text(turn)
        if not text.strip():
            continue
        normalized.append(ChatTurn(role=role, text=text))

    start = 0
    while start < len(normalized) and normalized[start].role == "model":
        start += 1
    if start:
        logger.debug("Stripped leading assistant turns", count=start)
    return normalized[start:]


def build_system_prompt(
    patient: Patient,
    studies: Sequence[Study],
    latest_report: Optional[ReportOutput],
) -> str:
    return CHAT_SYSTEM_PROMPT.format(
        citation_instructions=citation_instructions(),
        patient_block=format_patient(patient),
        studies_block=format_studies(studies),
        report_block=format_report(latest_report, NO_REPORT_NOTICE),
    )


class ConversationOrchestrator:
    """Streams grounded answers to follow-up questions."""

    def __init__(
        self,
        general: GeminiClient,
        chunk_timeout: float = DEFAULT_CHUNK_TIMEOUT,
        total_timeout: float = DEFAULT_TOTAL_TIMEOUT,
    ):
        self.general = general
        self.chunk_timeout = chunk_timeout
        self.total_timeout = total_timeout

    async def stream_reply(
        self,
        patient: Patient,
        studies: Sequence[Study],
        latest_report: Optional[ReportOutput],
        history: Sequence[Any],
        user_message: str,
    ) -> AsyncIterator[str]:
        """Yield reply fragments in arrival order.

        Closing this generator closes the provider stream.

        Raises:
            SafetyBlockedError: the provider blocked the prompt or reply
            TransientProviderError: a chunk or the whole reply took too long
            ProviderError: any other provider failure
        """
        if not user_message or not user_message.strip():
            raise InvalidInputError("Message cannot be empty")

        system_prompt = build_system_prompt(patient, studies, latest_report)
        turns = prepare_history(history)
        provider = self.general.name

        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self.total_timeout
        chunks = 0
        chars = 0

        stream = self.general.generate_free_text_stream(system_prompt, turns, user_message)
        try:
            async with aclosing(stream):
                while True:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise TransientProviderError(provider, f"reply exceeded {self.total_timeout}s")
                    try:
                        chunk = await asyncio.wait_for(
                            stream.__anext__(), timeout=min(self.chunk_timeout, remaining)
                        )
                    except StopAsyncIteration:
                        break
                    except asyncio.TimeoutError as e:
                        raise TransientProviderError(provider, "no data received from model in time") from e
                    chunks += 1
                    chars += len(chunk)
                    yield chunk
        except SafetyBlockedError as e:
            logger.warning("Chat reply blocked by safety filters", patient_id=patient.id, error=str(e))
            raise

        logger.info(
            "Chat stream completed",
            patient_id=patient.id,
            chunks=chunks,
            chars=chars,
            duration_ms=round((loop.time() - started) * 1000, 2),
        )

    async def generate_title(self, messages: Sequence[Any]) -> str:
        """Short title from the conversation, or the placeholder."""
        if len(messages) <= 1:
            return DEFAULT_CHAT_TITLE
        transcript = format_transcript(
            [(str(m.role), strip_citations(_turn_text(m))) for m in messages]
        )
        try:
            title = await self.general.generate_chat_title(transcript)
        except Exception as e:
            logger.warning("Chat title generation failed", error=str(e))
            return DEFAULT_CHAT_TITLE
        return title.strip()[:CHAT_TITLE_MAX_CHARS] or DEFAULT_CHAT_TITLE

"""
Per-study caption pipeline.

    CREATED -> IMAGES_CAPTIONING -> IMAGES_CAPTIONED -> SUMMARIZING -> SUMMARIZED
                                                                    \\-> FAILED

Every image is captioned concurrently through the fallback chain and then
(best effort) enhanced by the general model. Once all images have settled the
study summary is produced from the enhanced captions, falling back to the
chain over the raw captions, and finally to the summary sentinel.
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

from .errors import InvalidInputError
from .fallback import CAPTION_UNAVAILABLE, SUMMARY_UNAVAILABLE, FallbackChain, TieredResult
from .gemini_client import GeminiClient
from .providers import Tier
from .retry import DEFAULT_RETRY_POLICY, RetryPolicy
from .structured_logging import StructuredLogger

logger = StructuredLogger(__name__)


class PipelineState(str, Enum):
    CREATED = "created"
    IMAGES_CAPTIONING = "images_captioning"
    IMAGES_CAPTIONED = "images_captioned"
    SUMMARIZING = "summarizing"
    SUMMARIZED = "summarized"
    FAILED = "failed"


@dataclass(frozen=True)
class StudyContext:
    title: str
    modality: Optional[str] = None


@dataclass(frozen=True)
class SliceInput:
    slice_index: int
    image_base64: str


@dataclass(frozen=True)
class SliceCaption:
    slice_index: int
    raw_caption: str
    enhanced_caption: str
    tier: Optional[Tier]  # None for a caption retained from an earlier run

    @property
    def enhanced(self) -> bool:
        return self.enhanced_caption != self.raw_caption


@dataclass
class StudyCaptionResult:
    captions: list[SliceCaption] = field(default_factory=list)
    series_summary: str = SUMMARY_UNAVAILABLE
    state: PipelineState = PipelineState.CREATED
    summary_tier: Tier = Tier.SENTINEL


class CaptionPipeline:
    """Drives captioning and summarization for one study at a time."""

    def __init__(
        self,
        chain: FallbackChain,
        general: Optional[GeminiClient] = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        enhance_captions: bool = True,
        max_concurrency: int = 0,
        image_timeout: Optional[float] = None,
    ):
        self.chain = chain
        self.general = general
        self.retry_policy = retry_policy
        self.enhance_captions = enhance_captions and general is not None
        self.max_concurrency = max_concurrency
        self.image_timeout = image_timeout

    def _transition(self, result: StudyCaptionResult, state: PipelineState, context: StudyContext) -> None:
        logger.info(
            f"Study pipeline {result.state.value} -> {state.value}",
            study_title=context.title,
            from_state=result.state.value,
            to_state=state.value,
        )
        result.state = state

    async def _caption(self, item: SliceInput) -> TieredResult:
        if self.image_timeout is None:
            return await self.chain.caption_image(item.image_base64)
        try:
            return await asyncio.wait_for(self.chain.caption_image(item.image_base64), self.image_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Captioning timed out, using sentinel",
                slice_index=item.slice_index,
                timeout=self.image_timeout,
                tier=Tier.SENTINEL.value,
            )
            return TieredResult(CAPTION_UNAVAILABLE, Tier.SENTINEL)

    async def _enhance(self, raw: TieredResult, slice_index: int, total: int) -> str:
        if not self.enhance_captions or raw.is_sentinel:
            return raw.text
        try:
            enhanced = await self.retry_policy.run(
                lambda: self.general.enhance_caption(raw.text, slice_index, total),
                label="enhance_caption",
            )
        except Exception as e:
            logger.warning("Caption enhancement failed, keeping raw caption", slice_index=slice_index, error=str(e))
            return raw.text
        return enhanced.strip() or raw.text

    async def _process_image(self, item: SliceInput, total: int, semaphore: Optional[asyncio.Semaphore]) -> SliceCaption:
        if semaphore is None:
            raw = await self._caption(item)
            enhanced = await self._enhance(raw, item.slice_index, total)
        else:
            async with semaphore:
                raw = await self._caption(item)
                enhanced = await self._enhance(raw, item.slice_index, total)
        logger.debug("Image processed", slice_index=item.slice_index, tier=raw.tier.value)
        return SliceCaption(item.slice_index, raw.text, enhanced, raw.tier)

    async def _summarize(self, context: StudyContext, captions: list[SliceCaption]) -> TieredResult:
        if self.general is not None:
            try:
                summary = await self.retry_policy.run(
                    lambda: self.general.summarize_study(
                        [c.enhanced_caption for c in captions], context.title, context.modality
                    ),
                    label="summarize_study",
                )
                if summary.strip():
                    return TieredResult(summary.strip(), Tier.GENERAL)
            except Exception as e:
                logger.warning("Study summary from enhanced captions failed", study_title=context.title, error=str(e))

        logger.info("Summarizing raw captions through fallback chain", study_title=context.title)
        return await self.chain.summarize_texts([c.raw_caption for c in captions])

    async def run(
        self,
        context: StudyContext,
        slices: Sequence[SliceInput],
        retained: Sequence[SliceCaption] = (),
    ) -> StudyCaptionResult:
        """Caption every slice, then summarize the study.

        Args:
            context: Study title and modality
            slices: Images to (re)caption
            retained: Existing captions for images that are not recaptioned;
                they take part in the summary unchanged

        Raises:
            InvalidInputError: no images at all, or duplicate slice indices
        """
        if not slices and not retained:
            raise InvalidInputError("A study needs at least one image")
        indices = [s.slice_index for s in slices] + [c.slice_index for c in retained]
        if len(set(indices)) != len(indices):
            raise InvalidInputError("Duplicate slice_index in study")

        result = StudyCaptionResult()
        total = len(indices)
        semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency > 0 else None

        self._transition(result, PipelineState.IMAGES_CAPTIONING, context)
        captions = await asyncio.gather(*(self._process_image(s, total, semaphore) for s in slices))
        result.captions = sorted([*captions, *retained], key=lambda c: c.slice_index)
        self._transition(result, PipelineState.IMAGES_CAPTIONED, context)

        tiers = [c.tier for c in captions]
        logger.info(
            "All images captioned",
            study_title=context.title,
            image_count=total,
            retained=len(retained),
            specialized=tiers.count(Tier.SPECIALIZED),
            general=tiers.count(Tier.GENERAL),
            sentinel=tiers.count(Tier.SENTINEL),
        )

        self._transition(result, PipelineState.SUMMARIZING, context)
        summary = await self._summarize(context, result.captions)
        result.series_summary = summary.text
        result.summary_tier = summary.tier
        self._transition(
            result,
            PipelineState.FAILED if summary.is_sentinel else PipelineState.SUMMARIZED,
            context,
        )
        return result

"""
Two-tier fallback for captioning and summarization.

Specialized provider first (under the retry policy), then the general
provider (same policy), then a fixed sentinel. These capabilities never
raise: one image's failure must not abort the study.
"""
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from .errors import SafetyBlockedError
from .providers import InferenceProvider, Tier
from .retry import DEFAULT_RETRY_POLICY, RetryPolicy
from .structured_logging import StructuredLogger

logger = StructuredLogger(__name__)

CAPTION_UNAVAILABLE = "Caption unavailable: image analysis failed for this slice."
SUMMARY_UNAVAILABLE = "Summary unavailable: study summarization failed."


@dataclass(frozen=True)
class TieredResult:
    text: str
    tier: Tier

    @property
    def is_sentinel(self) -> bool:
        return self.tier == Tier.SENTINEL


class FallbackChain:
    """Specialized -> general -> sentinel."""

    def __init__(
        self,
        specialized: Optional[InferenceProvider],
        general: Optional[InferenceProvider],
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    ):
        if specialized is None and general is None:
            raise ValueError("FallbackChain needs at least one provider")
        self.specialized = specialized
        self.general = general
        self.retry_policy = retry_policy

    @property
    def tiers(self) -> list[InferenceProvider]:
        return [p for p in (self.specialized, self.general) if p is not None]

    async def _run(
        self,
        capability: str,
        call: Callable[[InferenceProvider], Awaitable[str]],
        sentinel: str,
    ) -> TieredResult:
        failures = []
        for provider in self.tiers:
            try:
                text = await self.retry_policy.run(
                    lambda: call(provider),
                    label=f"{provider.name}.{capability}",
                )
            except SafetyBlockedError as e:
                # Not retried on this provider; the next tier may still answer
                failures.append(f"{provider.name}: safety block")
                logger.warning(
                    f"{capability} blocked by {provider.name}",
                    capability=capability,
                    provider=provider.name,
                    error=str(e),
                )
                continue
            except Exception as e:
                failures.append(f"{provider.name}: {e}")
                logger.warning(
                    f"{capability} failed on {provider.name}",
                    capability=capability,
                    provider=provider.name,
                    error=str(e),
                )
                continue

            if not text or not text.strip():
                failures.append(f"{provider.name}: empty output")
                logger.warning(f"{capability} returned empty output", capability=capability, provider=provider.name)
                continue

            logger.info(
                f"{capability} served by {provider.tier.value} tier",
                capability=capability,
                tier=provider.tier.value,
                provider=provider.name,
                fallback=bool(failures),
            )
            return TieredResult(text=text, tier=provider.tier)

        logger.error(
            f"{capability} failed on all tiers, using sentinel",
            capability=capability,
            tier=Tier.SENTINEL.value,
            failures=failures,
        )
        return TieredResult(text=sentinel, tier=Tier.SENTINEL)

    async def caption_image(self, image_base64: str) -> TieredResult:
        return await self._run(
            "caption_image",
            lambda provider: provider.caption_image(image_base64),
            CAPTION_UNAVAILABLE,
        )

    async def summarize_texts(self, texts: Sequence[str]) -> TieredResult:
        return await self._run(
            "summarize_texts",
            lambda provider: provider.summarize_texts(texts),
            SUMMARY_UNAVAILABLE,
        )

"""
Refusal detection for image captions.

The specialized model sometimes answers an image with nothing but
disclaimers, or prefixes a usable description with refusal boilerplate.
A pure refusal is not a caption: the provider reports it as a malformed
response so the fallback chain moves on to the next tier.
"""
import re

# Minimum characters of real content left after removing disclaimers.
MIN_CONTENT_CHARS = 50
# Minimum characters that must follow a "However, ..." transition before
# the leading refusal is stripped.
MIN_PREAMBLE_TAIL_CHARS = 100

_DISCLAIMERS = [
    r"(?:I am|I'm) (?:a |an )?(?:large )?(?:language model|AI|artificial intelligence)[^.]*\.",
    r"As an AI(?:\s+language model)?[^.]*\.",
    r"(?:I'm not|I am not) a (?:medical |healthcare )?(?:professional|doctor|physician|radiologist)[^.]*\.",
    r"(?:I cannot|I can't|I am unable to|I'm unable to) (?:provide|give|offer) (?:a )?(?:clinical |medical |radiological )?(?:interpretation|diagnosis|analysis|advice|description)[^.]*\.",
    r"(?:This|The following) is not (?:intended as )?medical advice[^.]*\.",
    r"(?:It is (?:essential|important) to |Please |Always )?consult (?:with )?(?:a |your )?(?:qualified )?(?:healthcare|medical) (?:professional|provider|doctor)[^.]*\.",
    r"(?:Interpreting|Analyzing) medical images requires[^.]*\.",
    r"If you have a medical image[^.]*\.",
]

_DISCLAIMER_PATTERNS = [
    re.compile(r"(?:^|\n)\s*" + p + r"\s*", re.IGNORECASE) for p in _DISCLAIMERS
]
# A "Disclaimer:" heading swallows everything after it
_DISCLAIMER_BLOCK = re.compile(r"(?:^|\n)\s*\*{0,2}Disclaimer\*{0,2}:?\s*.*", re.IGNORECASE | re.DOTALL)

_TRANSITION = re.compile(
    r"\b(?:However|That said|Nevertheless|With that (?:said|in mind)),?\s*"
    r"(?:I can |I am able to |here is |below is )?",
    re.IGNORECASE,
)


def _remove_disclaimers(text: str) -> str:
    cleaned = text
    for pattern in _DISCLAIMER_PATTERNS:
        # Sentences can follow each other on one line; apply until stable
        previous = None
        while previous != cleaned:
            previous = cleaned
            cleaned = pattern.sub("\n", cleaned)
    cleaned = _DISCLAIMER_BLOCK.sub("\n", cleaned)
    return re.sub(r"\n{3,}", "\n\n", cleaned).strip()


def is_pure_refusal(text: str) -> bool:
    """True when the text holds no description beyond disclaimers."""
    return len(_remove_disclaimers(text or "")) < MIN_CONTENT_CHARS


def strip_refusal_preamble(text: str) -> str:
    """Drop a leading refusal when a real description follows it.

    Trailing disclaimers are kept. Returns the text unchanged when there is
    no "However, ..." style transition, when the text before it is not
    refusal boilerplate, or when too little content follows it.
    """
    match = _TRANSITION.search(text)
    if not match:
        return text
    # Only a prefix made entirely of disclaimers counts as a preamble
    prefix = text[:match.start()]
    if not prefix.strip() or _remove_disclaimers(prefix):
        return text
    remaining = text[match.end():].strip()
    if len(remaining) <= MIN_PREAMBLE_TAIL_CHARS:
        return text
    return remaining[0].upper() + remaining[1:]

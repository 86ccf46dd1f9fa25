"""
Inline citation protocol.

Generated prose grounds statements in source studies with tokens of the form
[CITE:<id>] or [CITE:<id1>,<id2>] for comparative statements. The tokens are
persisted verbatim; display numbering happens only at render time.

Numbering: the first time a distinct id appears anywhere in the text it gets
the next integer starting at 1; later references reuse it. A token citing
several ids renders as adjacent markers, e.g. "[1],[2]".

Anything that does not match the grammar exactly (unterminated bracket,
empty id list, empty id between commas) is left as literal text.
"""
import re
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Union

_ID = r"[^\s,\[\]]+"
CITATION_PATTERN = re.compile(r"\[CITE:\s*(" + _ID + r"(?:\s*,\s*" + _ID + r")*)\s*\]")

CITATION_KEY_PREFIX = "cite_"


@dataclass(frozen=True)
class CitationToken:
    token: str
    ids: tuple[str, ...]
    start: int
    end: int


@dataclass(frozen=True)
class TextSegment:
    text: str


@dataclass(frozen=True)
class CitationSegment:
    token: str
    ids: tuple[str, ...]
    numbers: tuple[int, ...]


Segment = Union[TextSegment, CitationSegment]


@dataclass(frozen=True)
class ResolvedCitation:
    study_id: str
    label: str
    found: bool
    number: Optional[int] = None


def extract_citations(text: str) -> list[CitationToken]:
    """Scan left to right for well-formed citation tokens."""
    tokens = []
    for match in CITATION_PATTERN.finditer(text or ""):
        ids = tuple(part.strip() for part in match.group(1).split(","))
        tokens.append(CitationToken(match.group(0), ids, match.start(), match.end()))
    return tokens


def cited_ids(*texts: str) -> list[str]:
    """Distinct cited ids in first-seen order across the given texts."""
    seen: list[str] = []
    for text in texts:
        for token in extract_citations(text):
            for study_id in token.ids:
                if study_id not in seen:
                    seen.append(study_id)
    return seen


def assign_display_numbers(
    text: str,
    id_to_number: Optional[dict[str, int]] = None,
) -> tuple[list[Segment], dict[str, int]]:
    """Split text into plain and citation segments with display numbers.

    Pass the returned map back in to continue one numbering sequence across
    several fields (findings, impression, next steps of one report).
    """
    numbers = dict(id_to_number or {})
    segments: list[Segment] = []
    cursor = 0
    for token in extract_citations(text):
        if token.start > cursor:
            segments.append(TextSegment(text[cursor:token.start]))
        assigned = []
        for study_id in token.ids:
            if study_id not in numbers:
                numbers[study_id] = len(numbers) + 1
            assigned.append(numbers[study_id])
        segments.append(CitationSegment(token.token, token.ids, tuple(assigned)))
        cursor = token.end
    if cursor < len(text or ""):
        segments.append(TextSegment(text[cursor:]))
    return segments, numbers


def build_citation_map(*texts: str) -> dict[str, str]:
    """Persisted registry of distinct cited ids: {"cite_1": id, ...}.

    Computed over the concatenation of all citation-bearing fields,
    independent of display numbering.
    """
    return {
        f"{CITATION_KEY_PREFIX}{i}": study_id
        for i, study_id in enumerate(cited_ids(*texts), 1)
    }


StudyLookup = Union[Mapping[str, str], Iterable]


def _study_labels(studies: Optional[StudyLookup]) -> dict[str, str]:
    """Accept either {id: label} or objects with id/title/imaging_datetime."""
    if studies is None:
        return {}
    if isinstance(studies, Mapping):
        return dict(studies)
    labels = {}
    for study in studies:
        when = getattr(study, "imaging_datetime", None)
        title = getattr(study, "title", None) or study.id
        labels[study.id] = f"{title} ({when:%Y-%m-%d})" if when else title
    return labels


def resolve_citations(
    ids: Iterable[str],
    studies: Optional[StudyLookup],
    id_to_number: Optional[Mapping[str, int]] = None,
) -> list[ResolvedCitation]:
    """Look ids up in the current study list.

    Unknown ids resolve to their raw id as label with found=False: the study
    may have been deleted since the text was generated.
    """
    labels = _study_labels(studies)
    numbers = id_to_number or {}
    resolved = []
    for study_id in ids:
        found = study_id in labels
        resolved.append(ResolvedCitation(
            study_id=study_id,
            label=labels[study_id] if found else study_id,
            found=found,
            number=numbers.get(study_id),
        ))
    return resolved


def _marker(number: int, study_id: str, labels: Mapping[str, str], link_template: Optional[str]) -> str:
    if not link_template:
        return f"[{number}]"
    href = link_template.format(study_id=study_id)
    title = labels.get(study_id, study_id).replace('"', "'")
    return f'[{number}]({href} "{title}")'


def render_citations(
    text: str,
    studies: Optional[StudyLookup] = None,
    link_template: Optional[str] = None,
    id_to_number: Optional[dict[str, int]] = None,
) -> tuple[str, dict[str, int]]:
    """Replace citation tokens with numbered markdown markers.

    Args:
        text: Prose containing [CITE:...] tokens
        studies: Study lookup used for marker tooltips
        link_template: e.g. "#study-{study_id}" for interactive markers
        id_to_number: Numbering carried over from previously rendered fields

    Returns:
        (rendered text, id -> display number)
    """
    labels = _study_labels(studies)
    segments, numbers = assign_display_numbers(text, id_to_number)
    parts = []
    for segment in segments:
        if isinstance(segment, TextSegment):
            parts.append(segment.text)
        else:
            parts.append(",".join(
                _marker(number, study_id, labels, link_template)
                for study_id, number in zip(segment.ids, segment.numbers)
            ))
    return "".join(parts), numbers


def strip_citations(text: str) -> str:
    """Remove citation tokens for plain-text surfaces."""
    stripped = CITATION_PATTERN.sub("", text or "")
    stripped = re.sub(r"[ \t]+([.,;:!?])", r"\1", stripped)
    return re.sub(r"[ \t]{2,}", " ", stripped).strip()


def unresolved_ids(text: str, known_ids: Iterable[str]) -> list[str]:
    known = set(known_ids)
    return [study_id for study_id in cited_ids(text) if study_id not in known]


def citation_instructions() -> str:
    """Prompt block teaching the citation grammar."""
    return """CITATION RULES:
- Every clinical statement must cite the study it comes from using [CITE:<study_id>], with the study_id exactly as given in the data.
- For comparisons across studies, cite all compared studies in one token: [CITE:<study_id_1>,<study_id_2>].
- Place the token at the end of the statement, before the period.
- Only cite study ids that appear in the data. Never invent ids.
Example: "Interval decrease in the right lower lobe consolidation [CITE:abc123,def456]."
"""

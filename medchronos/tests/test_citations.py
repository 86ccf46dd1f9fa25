"""
Test suite for the inline [CITE:id] citation protocol.
Covers extraction, first-seen numbering, the persisted map, resolution
against current studies and rendering.
"""
from datetime import datetime, timezone

from medchronos.citations import (
    CitationSegment,
    TextSegment,
    assign_display_numbers,
    build_citation_map,
    cited_ids,
    citation_instructions,
    extract_citations,
    render_citations,
    resolve_citations,
    strip_citations,
    unresolved_ids,
)
from medchronos.models import Study


class TestExtractCitations:
    """Test token extraction."""

    def test_single_and_multi_id(self):
        tokens = extract_citations("Nodule [CITE:s1]. Stable [CITE:s1,s2].")
        assert [t.ids for t in tokens] == [("s1",), ("s1", "s2")]
        assert tokens[0].token == "[CITE:s1]"

    def test_whitespace_inside_token(self):
        tokens = extract_citations("Stable [CITE: s1 , s2 ].")
        assert tokens[0].ids == ("s1", "s2")

    def test_positions_cover_token(self):
        text = "a [CITE:x] b"
        token = extract_citations(text)[0]
        assert text[token.start:token.end] == "[CITE:x]"

    def test_malformed_tokens_ignored(self):
        assert extract_citations("foo [CITE:bar") == []
        assert extract_citations("empty [CITE:]") == []
        assert extract_citations("gap [CITE:a,,b]") == []

    def test_none_text(self):
        assert extract_citations(None) == []


class TestDisplayNumbering:
    """Test first-seen display numbering."""

    def test_repeated_id_reuses_number(self):
        text = "A [CITE:a]. B [CITE:b,a]. C [CITE:a]."
        segments, numbers = assign_display_numbers(text)

        assert numbers == {"a": 1, "b": 2}
        citation_numbers = [s.numbers for s in segments if isinstance(s, CitationSegment)]
        assert citation_numbers == [(1,), (2, 1), (1,)]

    def test_map_has_one_entry_per_distinct_id(self):
        text = "A [CITE:a]. B [CITE:b,a]. C [CITE:a]."
        assert build_citation_map(text) == {"cite_1": "a", "cite_2": "b"}

    def test_numbering_continues_across_fields(self):
        _, numbers = assign_display_numbers("Findings [CITE:s2].")
        _, numbers = assign_display_numbers("Impression [CITE:s1,s2].", numbers)
        assert numbers == {"s2": 1, "s1": 2}

    def test_text_segments_preserved(self):
        segments, _ = assign_display_numbers("before [CITE:x] after")
        assert segments[0] == TextSegment("before ")
        assert segments[-1] == TextSegment(" after")

    def test_cited_ids_across_texts(self):
        assert cited_ids("x [CITE:b]", "y [CITE:a,b]") == ["b", "a"]


class TestRenderCitations:
    """Test rendering tokens to numbered markers."""

    def test_zero_citations_unchanged(self):
        text = "No prior imaging for comparison."
        rendered, numbers = render_citations(text)
        assert rendered == text
        assert numbers == {}
        assert build_citation_map(text) == {}

    def test_unterminated_token_left_literal(self):
        rendered, numbers = render_citations("foo [CITE:bar")
        assert rendered == "foo [CITE:bar"
        assert numbers == {}

    def test_multi_id_renders_adjacent_markers(self):
        rendered, _ = render_citations("Stable nodule [CITE:s1,s2].")
        assert rendered == "Stable nodule [1],[2]."

    def test_linked_markers(self):
        studies = {"s1": "Baseline CT (2024-01-01)"}
        rendered, _ = render_citations("Nodule [CITE:s1].", studies, link_template="#study-{study_id}")
        assert rendered == 'Nodule [1](#study-s1 "Baseline CT (2024-01-01)").'

    def test_unknown_study_uses_raw_id_as_title(self):
        rendered, _ = render_citations("X [CITE:gone].", {}, link_template="#study-{study_id}")
        assert rendered == 'X [1](#study-gone "gone").'

    def test_strip_citations(self):
        assert strip_citations("Stable nodule [CITE:s1,s2]. Resolved [CITE:s3] .") == "Stable nodule. Resolved."


class TestResolveCitations:
    """Test resolution against the current study list."""

    def test_resolves_study_objects(self):
        study = Study(
            id="s1",
            patient_id="p",
            title="Baseline CT",
            imaging_datetime=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        resolved = resolve_citations(["s1", "deleted"], [study], {"s1": 1, "deleted": 2})

        assert resolved[0].found and resolved[0].label == "Baseline CT (2024-01-01)"
        assert resolved[0].number == 1
        assert not resolved[1].found
        assert resolved[1].label == "deleted"

    def test_unresolved_ids(self):
        assert unresolved_ids("a [CITE:s1] b [CITE:s9]", ["s1"]) == ["s9"]


class TestCitationInstructions:
    """Test the prompt block teaching the grammar."""

    def test_mentions_both_forms(self):
        text = citation_instructions()
        assert "[CITE:<study_id>]" in text
        assert "[CITE:<study_id_1>,<study_id_2>]" in text

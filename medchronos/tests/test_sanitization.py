"""Tests for input sanitization."""
from medchronos.input_sanitization import (
    MAX_CHAT_MESSAGE_LENGTH,
    sanitize_chat_message,
    sanitize_filename,
    sanitize_free_text,
    sanitize_text,
    sanitize_title,
    validate_image_type,
)


class TestSanitizeText:
    """Test text sanitization."""

    def test_strips_tags_and_scripts(self):
        assert sanitize_text("<b>Chest</b> CT<script>alert(1)</script>") == "Chest CT"

    def test_comparisons_and_ampersands_kept(self):
        assert sanitize_text("nodule < 6 mm & stable") == "nodule < 6 mm & stable"

    def test_measurement_ranges_in_question_kept(self):
        question = "Did the nodule grow from <5 mm to >8 mm between studies?"
        assert sanitize_chat_message(question) == question

    def test_tags_stripped_around_comparisons(self):
        assert sanitize_chat_message("<i>Is it</i> >3 cm?") == "Is it >3 cm?"

    def test_control_chars_removed(self):
        assert sanitize_text("a\x00b\x07c") == "abc"

    def test_newlines_kept(self):
        assert sanitize_text("line1\nline2") == "line1\nline2"

    def test_truncation(self):
        assert len(sanitize_chat_message("x" * (MAX_CHAT_MESSAGE_LENGTH + 10))) == MAX_CHAT_MESSAGE_LENGTH

    def test_empty(self):
        assert sanitize_text("") == ""
        assert sanitize_title("   ") == ""

    def test_optional_free_text(self):
        assert sanitize_free_text(None) is None
        assert sanitize_free_text("  ") is None
        assert sanitize_free_text(" cough ") == "cough"


class TestSanitizeFilename:
    """Test filename sanitization."""

    def test_path_traversal(self):
        assert sanitize_filename("../../etc/passwd") == "passwd"

    def test_windows_path(self):
        assert sanitize_filename("C:\\scans\\slice 1.png") == "slice_1.png"

    def test_hidden_file(self):
        assert sanitize_filename(".hidden.png") == "hidden.png"

    def test_empty(self):
        assert sanitize_filename("") == "unnamed"


class TestValidateImageType:
    """Test image content-type validation."""

    def test_allowed(self):
        assert validate_image_type("image/png")
        assert validate_image_type("IMAGE/JPEG; charset=binary")

    def test_rejected(self):
        assert not validate_image_type("application/pdf")
        assert not validate_image_type("")
        assert not validate_image_type(None)

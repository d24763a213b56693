"""Unit tests for résumé text preparation."""

import pytest

from vitae.utils.text_cleaner import (
    TRUNCATION_MARKER,
    clean_extracted_text,
    limit_text_length,
    prepare_for_llm,
    remove_common_headers,
)


@pytest.mark.unit
def test_clean_normalizes_whitespace_and_line_breaks():
    """Test CRLF, form feeds, runs of spaces and excess blank lines."""
    raw = "Ada   Lovelace\r\nEngineer\t\tLondon\f\n\n\n\nExperience"
    assert clean_extracted_text(raw) == "Ada Lovelace\nEngineer London\n\nExperience"


@pytest.mark.unit
def test_clean_folds_bullets_and_drops_exotic_characters():
    raw = "• Python\n▪ SQL\nShipped → production​ 🚀"
    assert clean_extracted_text(raw) == "- Python\n- SQL\nShipped production"


@pytest.mark.unit
def test_clean_keeps_accented_latin():
    assert clean_extracted_text("Zoë Müller, Kraków") == "Zoë Müller, Kraków"


@pytest.mark.unit
@pytest.mark.parametrize(
    "raw",
    ["Анна Петрова\nИнженер-программист", "Γιώργος Παπαδόπουλος", "דוד כהן", "王小明\n软件工程师", "佐藤 花子"],
)
def test_clean_keeps_non_latin_scripts(raw):
    """Test that names and titles in other scripts survive cleaning."""
    assert clean_extracted_text(raw) == raw


@pytest.mark.unit
def test_clean_drops_controls_and_format_characters():
    """Test control characters become spaces and soft hyphens disappear."""
    assert clean_extracted_text("Engi\u00adneer\x07at\x00Acme ✔ ☎ ╔═╗") == "Engineer at Acme"


@pytest.mark.unit
def test_prepare_for_llm_non_latin_resume_not_empty():
    assert prepare_for_llm("Резюме\nАнна Петрова", max_chars=1000) == "Резюме\nАнна Петрова"


@pytest.mark.unit
@pytest.mark.parametrize("raw", ["", None, 42])
def test_clean_non_text_input(raw):
    assert clean_extracted_text(raw) == ""


@pytest.mark.unit
def test_remove_common_headers():
    """Test page counters and document titles are dropped, content kept."""
    text = "\n\nCurriculum Vitae\nAda Lovelace\nPage 1 of 2\nResume writing workshop lead\nPAGE 2"
    assert remove_common_headers(text) == "Ada Lovelace\nResume writing workshop lead"


class TestLimitTextLength:
    """Test length capping."""

    @pytest.mark.unit
    def test_short_text_unchanged(self):
        assert limit_text_length("short text", max_chars=100) == "short text"

    @pytest.mark.unit
    def test_cuts_at_late_sentence_boundary(self):
        text = "A" * 90 + ". " + "B" * 50
        result = limit_text_length(text, max_chars=100)
        assert result == "A" * 90 + "." + TRUNCATION_MARKER

    @pytest.mark.unit
    def test_hard_cut_when_boundary_too_early(self):
        text = "A" * 10 + ". " + "B" * 200
        result = limit_text_length(text, max_chars=100)
        assert result == text[:100] + TRUNCATION_MARKER


@pytest.mark.unit
def test_prepare_for_llm_pipeline():
    raw = "Résumé\n• Python  developer\n\n\n\nPage 1"
    assert prepare_for_llm(raw, max_chars=1000) == "- Python developer"

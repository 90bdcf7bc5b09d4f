"""Tests for the local knowledge base."""

import pytest

from conductor.decisions.knowledge import KnowledgeBase, normalize_question
from conductor.exceptions import ConfigurationError


def test_normalize_question():
    """Test that case, whitespace and trailing question marks are ignored."""
    assert normalize_question("  Which   DB\tdo we use?? ") == "which db do we use"


def test_lookup_is_exact_after_normalization(knowledge):
    """Test that lookups match normalized questions only."""
    assert knowledge.lookup("which test framework do we use").answer == "pytest"
    assert knowledge.lookup("Which test framework should we use?") is None


def test_from_mapping():
    """Test building a knowledge base from a plain mapping."""
    kb = KnowledgeBase.from_mapping({"Use black?": "yes"})

    assert len(kb) == 1
    assert kb.lookup("use black").answer == "yes"


class TestFromYaml:
    """Tests for loading knowledge base files."""

    def test_list_of_entries(self, tmp_path):
        """Test the list form with categories."""
        path = tmp_path / "kb.yaml"
        path.write_text("- question: Which test framework?\n  answer: pytest\n  category: tooling\n")

        kb = KnowledgeBase.from_yaml(path)

        entry = kb.lookup("which test framework")
        assert entry.answer == "pytest"
        assert entry.category == "tooling"

    def test_mapping_form(self, tmp_path):
        """Test the mapping form."""
        path = tmp_path / "kb.yaml"
        path.write_text("Default branch?: main\nMax line length?: 120\n")

        kb = KnowledgeBase.from_yaml(path)

        assert kb.lookup("max line length").answer == 120

    def test_empty_file(self, tmp_path):
        """Test that an empty file is an empty knowledge base."""
        path = tmp_path / "kb.yaml"
        path.write_text("")

        assert len(KnowledgeBase.from_yaml(path)) == 0

    def test_missing_file(self, tmp_path):
        """Test that a missing file is a configuration error."""
        with pytest.raises(ConfigurationError, match="not found"):
            KnowledgeBase.from_yaml(tmp_path / "missing.yaml")

    def test_entry_without_answer(self, tmp_path):
        """Test that list entries need both question and answer."""
        path = tmp_path / "kb.yaml"
        path.write_text("- question: Orphan?\n")

        with pytest.raises(ConfigurationError, match="'question' and 'answer'"):
            KnowledgeBase.from_yaml(path)

    def test_scalar_rejected(self, tmp_path):
        """Test that a scalar document is rejected."""
        path = tmp_path / "kb.yaml"
        path.write_text("just text\n")

        with pytest.raises(ConfigurationError, match="mapping or a list"):
            KnowledgeBase.from_yaml(path)

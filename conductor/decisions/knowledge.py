"""Local knowledge base consulted before any reasoning call.

Answers in the knowledge base are authoritative. The file is YAML and holds
either a mapping of questions to answers or a list of entries::

    - question: "Which test framework do we use?"
      answer: pytest
      category: tooling

Lookup is an exact match after normalization (case-folded, whitespace
collapsed, trailing question marks stripped). There is no fuzzy matching.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
import yaml

from conductor.exceptions import ConfigurationError

log = structlog.get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_question(question: str) -> str:
    return _WHITESPACE.sub(" ", question).strip().rstrip("?").strip().casefold()


@dataclass(frozen=True)
class KnowledgeEntry:
    question: str
    answer: Any
    category: str | None = None


@dataclass
class KnowledgeBase:
    """In-memory index of authoritative answers."""

    entries: dict[str, KnowledgeEntry] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, answers: Mapping[str, Any]) -> KnowledgeBase:
        kb = cls()
        for question, answer in answers.items():
            kb.add(question, answer)
        return kb

    @classmethod
    def from_yaml(cls, path: str | Path) -> KnowledgeBase:
        """Load a knowledge base file.

        Raises:
            ConfigurationError: If the file is missing or malformed.
        """
        kb_path = Path(path)
        if not kb_path.exists():
            raise ConfigurationError(f"Knowledge base file not found: {kb_path}")

        try:
            raw = yaml.safe_load(kb_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {kb_path}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read knowledge base file: {kb_path}") from e

        kb = cls()
        if raw is None:
            pass
        elif isinstance(raw, dict):
            for question, answer in raw.items():
                kb.add(str(question), answer)
        elif isinstance(raw, list):
            for item in raw:
                if not isinstance(item, dict) or "question" not in item or "answer" not in item:
                    raise ConfigurationError(
                        f"Knowledge base entries in {kb_path} need 'question' and 'answer' keys: {item!r}"
                    )
                kb.add(str(item["question"]), item["answer"], item.get("category"))
        else:
            raise ConfigurationError(f"Knowledge base {kb_path} must be a mapping or a list of entries")

        log.info("knowledge_base_loaded", path=str(kb_path), entries=len(kb))
        return kb

    def add(self, question: str, answer: Any, category: str | None = None) -> None:
        self.entries[normalize_question(question)] = KnowledgeEntry(question, answer, category)

    def lookup(self, question: str) -> KnowledgeEntry | None:
        return self.entries.get(normalize_question(question))

    def __len__(self) -> int:
        return len(self.entries)

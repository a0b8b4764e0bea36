"""File-system access to the tracking document and prompt documents."""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional

from loopforge.constants import TRACKING_DOCUMENT, get_prompt_document, get_tracking_document


logger = logging.getLogger(__name__)

UNCHECKED_ITEM = re.compile(r"^[ \t]*-[ \t]*\[[ \t]*\]", re.MULTILINE)
DEFAULT_TRACKING_HEADER = "# Implementation Plan\n"


def has_unchecked_items(content: str) -> bool:
    return UNCHECKED_ITEM.search(content) is not None


class ProjectDocuments:
    """Reads and writes the documents an agent loop works from."""

    def __init__(self, project_path: str | Path) -> None:
        self.project_path = Path(project_path)

    @property
    def tracking_path(self) -> Path:
        return get_tracking_document(self.project_path)

    def has_tracking_document(self) -> bool:
        return self.tracking_path.is_file()

    def prompt_path(self, prompt_file: str) -> Path:
        return get_prompt_document(self.project_path, prompt_file)

    def prompt_exists(self, prompt_file: str) -> bool:
        return self.prompt_path(prompt_file).is_file()

    def read_prompt(self, prompt_file: str) -> str:
        return self.prompt_path(prompt_file).read_text(encoding="utf-8")

    def write_document(self, name: str, content: str) -> Path:
        path = self.project_path / name
        path.write_text(content, encoding="utf-8")
        logger.debug(f"Wrote {path} ({len(content)} chars)")
        return path

    def read_tracking(self) -> Optional[str]:
        try:
            return self.tracking_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def is_plan_exhausted(self) -> bool:
        """True when the tracking document has no unchecked checklist items.

        A missing or unreadable document never counts as exhausted.
        """
        try:
            content = self.tracking_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.debug(f"{TRACKING_DOCUMENT} not readable, treating plan as open: {e}")
            return False
        return not has_unchecked_items(content)

    def append_to_tracking(self, section: str) -> Path:
        """Append a section, creating the document with a default header if needed."""
        existing = self.read_tracking()
        if existing is None:
            existing = DEFAULT_TRACKING_HEADER
        return self.write_document(TRACKING_DOCUMENT, existing + section)

"""Text utilities for teacher-entered notes and tags."""
import re
from typing import Iterable, List


def sanitize_text(text: str) -> str:
    """Clean and normalize free-text notes before they are persisted.

    Preserves UTF-8 characters (Arabic script included), newlines and basic
    formatting while removing control characters that could break JSON
    documents or terminal output.

    Examples:
        >>> sanitize_text("  Good   tajweed\\n\\n\\n\\nkeep going ")
        'Good tajweed\\n\\nkeep going'
        >>> sanitize_text(None)
        ''
    """
    if text is None:
        return ""

    text = str(text)

    # Keep \t, \n, \r; drop the rest of C0/C1 controls
    text = re.sub(r'[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F-\x9F]', '', text)

    # Collapse runs of spaces/tabs (but NOT newlines)
    text = re.sub(r'[ \t]+', ' ', text)

    # At most one blank line between paragraphs
    text = re.sub(r'\n{3,}', '\n\n', text)

    lines = [line.strip() for line in text.split('\n')]
    return '\n'.join(lines).strip()


def sanitize_tags(tags: Iterable[str]) -> List[str]:
    """Sanitize tag labels, dropping blanks and duplicates, keeping order."""
    seen = set()
    out: List[str] = []
    for tag in tags or []:
        clean = sanitize_text(tag)
        if clean and clean not in seen:
            seen.add(clean)
            out.append(clean)
    return out

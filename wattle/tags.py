"""
Tagged-section parser for model output.

Prompts ask the model to wrap each answer part in ``<NAME>...</NAME>``.
Sections that are missing, unclosed or mismatched are treated as absent.
"""
import re
from typing import Dict, Mapping, Optional

OPEN_TAG_RE = re.compile(r"<([A-Za-z][A-Za-z0-9_]*)>")


def parse_sections(text: str) -> Dict[str, str]:
    """Return every well-formed section keyed by its upper-case name"""
    text = text or ""
    sections: Dict[str, str] = {}
    pos = 0
    while True:
        m = OPEN_TAG_RE.search(text, pos)
        if not m:
            break
        name = m.group(1)
        close = re.compile(rf"</{re.escape(name)}>", re.IGNORECASE)
        end = close.search(text, m.end())
        if not end:
            pos = m.end()
            continue
        key = name.upper()
        if key not in sections:
            sections[key] = text[m.end():end.start()].strip()
        pos = end.end()
    return sections


def extract_section(text: str, name: str, default: Optional[str] = None) -> Optional[str]:
    return parse_sections(text).get((name or "").upper(), default)


def clean_value(value: Optional[str]) -> str:
    """Trim a single-line value and drop a leading list dash"""
    value = (value or "").strip()
    if "\n" not in value and value.startswith("-"):
        value = value[1:].strip()
    return value


def render_sections(sections: Mapping[str, str]) -> str:
    return "\n\n".join(f"<{name.upper()}>\n{(body or '').strip()}\n</{name.upper()}>" for name, body in sections.items())

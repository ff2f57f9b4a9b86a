"""
Markdown note parsing — YAML frontmatter, title, lifecycle fields and
``[[wikilinks]]``.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

_FRONTMATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
_WIKILINK_RE = re.compile(r"\[\[([^\]]+?)\]\]")
_HEADING_RE = re.compile(r"^#\s+(.+?)\s*#*\s*$", re.MULTILINE)

SUMMARY_MAX_CHARS = 200


@dataclass
class WikiLink:
    """A ``[[target|alias]]`` reference found in a note."""

    target: str
    alias: Optional[str] = None
    position: int = 0

    @property
    def note_name(self) -> str:
        """Target without a ``#heading`` / ``^block`` suffix."""
        return re.split(r"[#^]", self.target, maxsplit=1)[0].strip()


@dataclass
class ParsedNote:
    """Everything the indexer needs from one markdown file."""

    title: str
    body: str
    frontmatter: dict[str, Any] = field(default_factory=dict)
    state: Optional[str] = None
    confidence: Optional[str] = None
    summary: Optional[str] = None
    dependencies: list[str] = field(default_factory=list)
    wikilinks: list[WikiLink] = field(default_factory=list)


def split_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    """
    Separate a leading ``---`` YAML block from the note body.

    Malformed YAML is logged and treated as absent frontmatter.
    """
    match = _FRONTMATTER_RE.match(text)
    if not match:
        return {}, text
    body = text[match.end():]
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        logger.warning("[Vault indexer] Invalid frontmatter: %s", exc)
        return {}, body
    return (data if isinstance(data, dict) else {}), body


def extract_wikilinks(text: str) -> list[WikiLink]:
    """Return every ``[[...]]`` link in *text*, in document order."""
    links: list[WikiLink] = []
    for match in _WIKILINK_RE.finditer(text):
        inner = match.group(1)
        if "|" in inner:
            target, alias = inner.split("|", 1)
            alias = alias.strip() or None
        else:
            target, alias = inner, None
        target = target.strip()
        if target:
            links.append(WikiLink(target=target, alias=alias, position=match.start()))
    return links


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None]
    return [str(value)]


def _strip_link(value: str) -> str:
    value = value.strip()
    links = extract_wikilinks(value)
    if links:
        return links[0].note_name
    return value


def _first_paragraph(body: str) -> Optional[str]:
    for block in re.split(r"\n\s*\n", body):
        block = block.strip()
        if not block or block.startswith(("#", "```", ">", "---")):
            continue
        text = " ".join(block.split())
        if len(text) > SUMMARY_MAX_CHARS:
            text = text[:SUMMARY_MAX_CHARS - 3].rstrip() + "..."
        return text
    return None


def parse_note(text: str, filename: str) -> ParsedNote:
    """
    Parse a markdown note.

    Parameters
    ----------
    text:
        Full file contents.
    filename:
        File name (or vault-relative path); used as the title fallback.

    Returns
    -------
    ParsedNote
        ``state`` / ``confidence`` are returned as written (lower-cased);
        the caller decides what to do with unknown values.
    """
    meta, body = split_frontmatter(text)

    title = meta.get("title")
    if not isinstance(title, str) or not title.strip():
        heading = _HEADING_RE.search(body)
        title = heading.group(1) if heading else os.path.splitext(os.path.basename(filename))[0]
    title = title.strip()

    state = meta.get("state")
    confidence = meta.get("confidence")
    summary = meta.get("summary") or meta.get("description")
    if not isinstance(summary, str) or not summary.strip():
        summary = _first_paragraph(body)

    return ParsedNote(
        title=title,
        body=body,
        frontmatter=meta,
        state=str(state).strip().lower() if state is not None else None,
        confidence=str(confidence).strip().lower() if confidence is not None else None,
        summary=summary.strip() if summary else None,
        dependencies=[d for d in (_strip_link(v) for v in _as_list(meta.get("dependencies"))) if d],
        wikilinks=extract_wikilinks(body),
    )


def set_lifecycle_state(
    text: str,
    new_state: str,
    reason: str,
    confidence: Optional[str] = None,
    previous_state: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> str:
    """
    Return *text* with its frontmatter moved to *new_state*.

    Sets ``state``, ``confidence`` (when given) and ``modified``, and appends
    an entry to ``state_history``.  Other frontmatter keys and the body are
    kept.  A note without frontmatter gets a new block.
    """
    meta, body = split_frontmatter(text)
    if previous_state is None and meta.get("state") is not None:
        previous_state = str(meta["state"]).strip().lower()
    timestamp = timestamp or datetime.now(timezone.utc).isoformat(timespec="seconds")

    meta["state"] = new_state
    if confidence:
        meta["confidence"] = confidence
    meta["modified"] = timestamp

    entry: dict[str, Any] = {
        "from": previous_state,
        "to": new_state,
        "timestamp": timestamp,
        "reason": reason,
    }
    if confidence:
        entry["confidence"] = confidence
    history = meta.get("state_history")
    if not isinstance(history, list):
        history = []
    history.append(entry)
    meta["state_history"] = history

    dumped = yaml.safe_dump(meta, sort_keys=False, allow_unicode=True, default_flow_style=False)
    return f"---\n{dumped}---\n{body}"

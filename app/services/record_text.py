"""Normalize source records into plain text and typed chunk metadata."""

from __future__ import annotations

import re
from typing import List

from app.models.knowledge_chunk import ChunkMetadata, Collection
from app.services.sources import SourceRecord

_HTML_RULES = [
    (re.compile(r"<br\s*/?>", re.IGNORECASE), "\n"),
    (re.compile(r"</p>", re.IGNORECASE), "\n\n"),
    (re.compile(r"</li>", re.IGNORECASE), "\n"),
    (re.compile(r"</h[1-6]>", re.IGNORECASE), "\n\n"),
    (re.compile(r"<[^>]+>"), ""),
]

_ENTITIES = {
    "&nbsp;": " ",
    "&amp;": "&",
    "&lt;": "<",
    "&gt;": ">",
    "&quot;": '"',
    "&#39;": "'",
}

_EXTRA_BLANK_LINES = re.compile(r"\n{3,}")

KIND_LABELS = {
    Collection.INCIDENT: "Incident",
    Collection.CHANGE: "Change",
    Collection.DOCUMENT: "Document",
}


def strip_html(html: str | None) -> str:
    """Convert an HTML fragment into plain text, keeping paragraph breaks."""
    if not html:
        return ""
    text = html
    for pattern, replacement in _HTML_RULES:
        text = pattern.sub(replacement, text)
    for entity, char in _ENTITIES.items():
        text = text.replace(entity, char)
    return _EXTRA_BLANK_LINES.sub("\n\n", text).strip()


def record_header(record: SourceRecord) -> str:
    """First line of a record's text; also prefixed to every split chunk."""
    return f"{KIND_LABELS[record.collection]} {record.reference}: {record.title}"


def _meta_line(pairs: List[tuple[str, str | None]]) -> str:
    return " | ".join(f"{label}: {value}" for label, value in pairs if value)


def _log_lines(record: SourceRecord) -> List[str]:
    lines = []
    for entry in record.log_entries:
        message = entry.message or strip_html(entry.message_html)
        if message:
            lines.append(f"[{entry.date}] {entry.user_login}: {message}")
    return lines


def build_record_text(record: SourceRecord) -> str:
    """Render a source record as the plain text that gets chunked and embedded.

    Returns an empty string when the record has no title, body or log text.
    """
    if not (record.title.strip() or strip_html(record.body) or _log_lines(record)):
        return ""

    if record.collection == Collection.DOCUMENT:
        content = strip_html(record.body)
        return "\n\n".join(part for part in (record_header(record), content) if part)

    parts = [record_header(record)]

    if record.collection == Collection.CHANGE:
        parts.append(
            _meta_line([("Status", record.status), ("Type", record.change_type), ("Impact", record.impact)])
        )
        meta = _meta_line([
            ("Team", record.team),
            ("Agent", record.agent),
            ("Supervisor", record.supervisor),
            ("Outage", record.outage if record.outage and record.outage != "no" else None),
        ])
        log_title = "Change Log:"
    else:
        parts.append(
            _meta_line([
                ("Status", record.status),
                ("Severity", record.severity),
                ("Priority", f"P{record.priority}" if record.priority else None),
            ])
        )
        meta = _meta_line([
            ("Team", record.team),
            ("Agent", record.agent),
            ("Service", record.service),
            ("Origin", record.origin),
        ])
        log_title = "Investigation Log:"

    if meta:
        parts.append(meta)

    # Blank lines between sections and log entries are chunk boundaries
    sections = ["\n".join(part for part in parts if part)]

    description = strip_html(record.body)
    if description:
        sections.append(f"Description: {description}")
    if record.collection == Collection.CHANGE and record.fallback:
        sections.append(f"Fallback Plan: {strip_html(record.fallback)}")

    log_lines = _log_lines(record)
    if log_lines:
        sections.append(log_title)
        sections.extend(log_lines)

    return "\n\n".join(sections)


def build_chunk_metadata(record: SourceRecord) -> ChunkMetadata:
    return ChunkMetadata(
        status=record.status,
        category=record.collection.value,
        severity=record.severity,
        priority=record.priority,
        impact=record.impact,
        urgency=record.urgency,
        team=record.team,
        agent=record.agent,
        service=record.service,
        origin=record.origin,
        caller=record.caller,
        supervisor=record.supervisor,
        change_type=record.change_type,
        outage=record.outage,
        start_date=record.start_date,
        log_entry_count=len(record.log_entries),
    )

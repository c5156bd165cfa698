"""Pull an embedded ``add_medication`` command out of free-form assistant text.

The model is asked to append ``{"action": "add_medication", "medication": {...}}``
when the user wants to add a medication, but nothing guarantees the formatting.
Candidates are located with an ordered list of patterns, strictest first; a
candidate that fails to parse or validate falls through to the next pattern.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from shared.contracts.enums import MedicationCategory
from shared.contracts.models import ExtractedReply, MedicationDraft, NoAction

logger = logging.getLogger(__name__)

ADD_MEDICATION = "add_medication"
DRAFT_ACKNOWLEDGEMENT = "I'll help you add {name} to your list. Opening the review form in a moment..."
FALLBACK_REPLY = "Is there anything else you'd like to know?"
MIN_DISPLAY_LENGTH = 3

ACTION_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "compact",
        re.compile(r'\{"action":\s*"add_medication"[^}]*"medication":\s*\{[^}]*\}[^}]*\}'),
    ),
    (
        "multiline",
        re.compile(r'\{"action":\s*"add_medication".*?"medication":\s*\{.*?\}.*?\}', re.S),
    ),
    (
        "spaced",
        re.compile(r'\{"action"\s*:\s*"add_medication".*?"medication"\s*:\s*\{[^}]*\}[^}]*\}', re.S),
    ),
    (
        "padded",
        re.compile(r'\{\s*"action"\s*:\s*"add_medication".*?"medication"\s*:\s*\{[^}]*\}\s*\}', re.S),
    ),
)

_FENCED_JSON = re.compile(r"```json[\s\S]*?```", re.I)
_FENCED = re.compile(r"```[\s\S]*?```")
_RESIDUAL_ACTION = re.compile(r'\{"action":\s*"[^"]+"[^}]*\}')
_RESIDUAL_MEDICATION = re.compile(r'\{[^}]*"medication"[^}]*\}')
_BLANK_RUNS = re.compile(r"\n{3,}")


def _clean_field(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in {"null", "none"}:
        return None
    return text


def _category(value: Any) -> Optional[MedicationCategory]:
    text = _clean_field(value)
    if text is None:
        return None
    try:
        return MedicationCategory(text.lower())
    except ValueError:
        return None


def parse_action(candidate: str) -> Optional[MedicationDraft]:
    """Parse one candidate substring; any problem yields None."""
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as exc:
        logger.debug("medication action candidate is not valid JSON: %s", exc)
        return None

    if not isinstance(data, dict) or data.get("action") != ADD_MEDICATION:
        return None
    medication = data.get("medication")
    if not isinstance(medication, dict):
        return None
    name = _clean_field(medication.get("name"))
    if name is None:
        return None

    return MedicationDraft(
        name=name,
        generic_name=_clean_field(medication.get("generic_name")),
        dosage=_clean_field(medication.get("dosage")),
        frequency=_clean_field(medication.get("frequency")),
        description=_clean_field(medication.get("description")),
        category=_category(medication.get("category")),
    )


def find_medication_action(text: str) -> Optional[MedicationDraft]:
    for label, pattern in ACTION_PATTERNS:
        match = pattern.search(text)
        if match is None:
            continue
        draft = parse_action(match.group(0))
        if draft is not None:
            logger.info("medication action found with %s pattern: %s", label, draft.name)
            return draft
    return None


def strip_balanced_objects(text: str) -> str:
    """Remove every brace-balanced ``{...}`` span, at any nesting depth.

    Runs in one pass. An unclosed ``{`` stays in the text while balanced spans
    after it are still removed. Quotes only count while some brace is open.
    """
    spans: list[tuple[int, int]] = []
    opened: list[int] = []
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == "{":
            opened.append(index)
        elif not opened:
            continue
        elif char == '"':
            in_string = True
        elif char == "}":
            start = opened.pop()
            # spans closed inside this one are covered by it
            while spans and spans[-1][0] > start:
                spans.pop()
            spans.append((start, index))

    out: list[str] = []
    cursor = 0
    for start, end in spans:
        out.append(text[cursor:start])
        cursor = end + 1
    out.append(text[cursor:])
    return "".join(out)


def clean_display_text(text: str) -> str:
    cleaned = _FENCED_JSON.sub("", text)
    cleaned = _FENCED.sub("", cleaned)
    cleaned = strip_balanced_objects(cleaned)
    cleaned = _RESIDUAL_ACTION.sub("", cleaned)
    cleaned = _RESIDUAL_MEDICATION.sub("", cleaned)
    cleaned = "\n".join(line.strip() for line in cleaned.splitlines())
    cleaned = _BLANK_RUNS.sub("\n\n", cleaned)
    return cleaned.strip()


def extract(raw_text: Optional[str]) -> ExtractedReply:
    """Split an assistant reply into the text to show and an optional draft."""
    text = raw_text or ""
    draft = find_medication_action(text)
    if draft is not None:
        return ExtractedReply(display_text=DRAFT_ACKNOWLEDGEMENT.format(name=draft.name), action=draft)

    display = clean_display_text(text)
    if len(display) < MIN_DISPLAY_LENGTH:
        display = FALLBACK_REPLY
    return ExtractedReply(display_text=display, action=NoAction())

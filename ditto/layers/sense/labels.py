"""
Label derivation cascade.

The capture script collects raw label evidence for an element (text of an
associated ``<label>``, a column header, a dropdown container title...).
Each heuristic below reads that evidence and either returns a candidate
label or None. The first non-empty candidate, in list order, wins.
Results are never combined.
"""

from typing import Any, Callable, List, Mapping, NamedTuple, Optional
import re

MAX_LABEL_LENGTH = 100

Evidence = Mapping[str, Any]


class LabelHeuristic(NamedTuple):
    name: str
    extract: Callable[[Evidence], Optional[str]]


def clean_label(text: Optional[str]) -> str:
    """Strip required-field asterisks, collapse whitespace and cap length."""
    if not text:
        return ""
    text = str(text).replace("*", " ")
    text = re.sub(r"\s+", " ", text).strip().rstrip(":").strip()
    return text[:MAX_LABEL_LENGTH].rstrip()


def _field(key: str) -> Callable[[Evidence], Optional[str]]:
    def extract(evidence: Evidence) -> Optional[str]:
        return evidence.get(key) or None
    extract.__name__ = f"from_{key}"
    return extract


def _labelled_by(evidence: Evidence) -> Optional[str]:
    parts = evidence.get("labelledBy") or []
    if isinstance(parts, str):
        return parts or None
    return " ".join(p for p in parts if p) or None


def _dropdown(evidence: Evidence) -> Optional[str]:
    # select2 renders the real <select> hidden next to a styled container.
    return evidence.get("select2Label") or evidence.get("dropdownLabel") or None


def _inner_text(evidence: Evidence) -> Optional[str]:
    if evidence.get("tag") in ("button", "a") or evidence.get("type") in ("submit", "button"):
        return evidence.get("innerText") or None
    return None


def _value(evidence: Evidence) -> Optional[str]:
    # Only for controls whose value is a caption, never for typed text.
    if evidence.get("type") in ("submit", "button", "reset"):
        return evidence.get("value") or None
    return None


HEURISTICS: List[LabelHeuristic] = [
    LabelHeuristic("label_for", _field("labelFor")),
    LabelHeuristic("wrapping_label", _field("wrappingLabel")),
    LabelHeuristic("labelled_by", _labelled_by),
    LabelHeuristic("aria_label", _field("ariaLabel")),
    LabelHeuristic("form_entity", _field("formEntityLabel")),
    LabelHeuristic("question_heading", _field("questionHeading")),
    LabelHeuristic("column_header", _field("columnHeader")),
    LabelHeuristic("previous_column", _field("previousColumn")),
    LabelHeuristic("container_label", _field("containerLabel")),
    LabelHeuristic("sibling_text", _field("siblingText")),
    LabelHeuristic("previous_cell", _field("previousCell")),
    LabelHeuristic("dropdown", _dropdown),
    LabelHeuristic("placeholder", _field("placeholder")),
    LabelHeuristic("name", _field("name")),
    LabelHeuristic("data_role", _field("dataRole")),
    LabelHeuristic("value", _value),
    LabelHeuristic("inner_text", _inner_text),
]


def derive_label(evidence: Evidence, heuristics: Optional[List[LabelHeuristic]] = None) -> str:
    """Return the first non-empty cleaned label, or an empty string."""
    _, label = derive_label_with_source(evidence, heuristics)
    return label


def derive_label_with_source(evidence: Evidence, heuristics: Optional[List[LabelHeuristic]] = None):
    """Like ``derive_label`` but also returns the name of the heuristic that won."""
    for heuristic in heuristics or HEURISTICS:
        try:
            candidate = clean_label(heuristic.extract(evidence))
        except (TypeError, AttributeError, KeyError):
            # Malformed evidence degrades to the next heuristic.
            continue
        if candidate:
            return heuristic.name, candidate
    return None, ""

"""
Tabular input - CSV rows and per-step value resolution.
"""

from typing import Dict, Iterable, List, Mapping, Optional
import csv
import logging
import re

from ditto.core.models import ActionKind, Sequence, Step

logger = logging.getLogger(__name__)

_STRIP = re.compile(r"[\s_]+")


def normalize_column(name: str) -> str:
    """Lowercase and drop whitespace and underscores: ``"First_Name "`` -> ``"firstname"``."""
    return _STRIP.sub("", (name or "").lower())


def load_rows(path: str, encoding: str = "utf-8-sig") -> List[Dict[str, str]]:
    """
    Read a CSV file whose first row is the header.

    Blank lines are dropped. Missing trailing cells become empty strings.
    """
    rows: List[Dict[str, str]] = []
    with open(path, newline="", encoding=encoding) as f:
        reader = csv.DictReader(f)
        for raw in reader:
            row = {k: (v or "") for k, v in raw.items() if k is not None}
            if any(v.strip() for v in row.values()):
                rows.append(row)
    logger.debug("Loaded %d rows from %s", len(rows), path)
    return rows


def parse_mappings(pairs: Iterable[str]) -> Dict[str, str]:
    """Parse ``COLUMN=LABEL`` strings into a column -> label dict."""
    mappings: Dict[str, str] = {}
    for pair in pairs:
        column, sep, label = pair.partition("=")
        if not sep or not column.strip() or not label.strip():
            raise ValueError(f"Invalid mapping '{pair}', expected COLUMN=LABEL")
        mappings[column.strip()] = label.strip()
    return mappings


def _cell(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    return value


def find_column_value(
    label: str,
    row: Mapping[str, str],
    mappings: Mapping[str, str],
) -> Optional[str]:
    """
    Look up the row value intended for the step labelled ``label``.

    Explicit mappings (column -> label) are consulted first, then any column
    whose normalized header equals the normalized label. Empty cells count
    as no value.
    """
    if not label:
        return None
    wanted = normalize_column(label)
    normalized_row = {normalize_column(k): v for k, v in row.items()}

    for column, mapped_label in mappings.items():
        if normalize_column(mapped_label) != wanted:
            continue
        if column in row:
            value = _cell(row[column])
        else:
            value = _cell(normalized_row.get(normalize_column(column)))
        if value is not None:
            return value

    return _cell(normalized_row.get(wanted))


def resolve_step_value(
    step: Step,
    row: Mapping[str, str],
    mappings: Mapping[str, str],
    data_driven: bool,
) -> Optional[str]:
    """
    Value a step should act with for one row.

    Falls back to the captured payload when the row holds nothing for the
    step. Returns None only when neither source has a value.
    """
    if data_driven:
        value = find_column_value(step.label, row, mappings)
        if value is not None:
            return value
    return step.value


def should_skip(step: Step, row: Mapping[str, str], mappings: Mapping[str, str], data_driven: bool) -> bool:
    """A text-entry step with no row value is skipped in data-driven runs."""
    if not data_driven or step.action is not ActionKind.TEXT_ENTRY:
        return False
    return find_column_value(step.label, row, mappings) is None


def row_matches_sequence(row: Mapping[str, str], sequence: Sequence) -> bool:
    """True when at least one column of ``row`` feeds a step of ``sequence``."""
    labels = {normalize_column(label) for label in sequence.labels()}
    if not labels:
        return False
    mapped = {
        normalize_column(column)
        for column, label in sequence.mappings.items()
        if normalize_column(label) in labels
    }
    for column in row:
        key = normalize_column(column)
        if key in labels or key in mapped:
            return True
    return False

"""Text normalization applied before content hashing."""

import re

from clara_ingest.core.constants import DATE_PLACEHOLDER

MONTHS = r"(?:jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)\.?"

# Optional clock time after a date: "10:00", "t10:00:00z", ", 3:15 pm", " at 09:30 utc"
TIME_VALUE = (
    r"(?:(?:,?\s+(?:at\s+)?|t)\d{1,2}:\d{2}(?::\d{2}(?:\.\d+)?)?"
    r"(?:\s*[ap]\.?m\.?)?(?:z|\s*(?:utc|gmt)\b|[+-]\d{2}:?\d{2})?)?"
)

DATE_VALUE = (
    r"(?:"
    r"\d{4}-\d{2}-\d{2}"
    r"|\d{1,2}[/.-]\d{1,2}[/.-]\d{2,4}"
    rf"|{MONTHS}\s+\d{{1,2}}(?:st|nd|rd|th)?,?\s+\d{{4}}"
    rf"|\d{{1,2}}(?:st|nd|rd|th)?[\s-]+{MONTHS}[\s,-]+\d{{2,4}}"
    rf"|{MONTHS}\s+\d{{4}}"
    r")"
    + TIME_VALUE
)

# "last updated: ...", "page last reviewed or updated: ...", "**last updated**: ...", "modified on ..."
DATE_STAMP_PATTERN = re.compile(
    r"((?:page\s+)?(?:last\s+)?(?:updated|reviewed|modified|revised)(?:\s+or\s+(?:updated|reviewed))?"
    r"(?:\s+on)?\s*\**\s*[:\-]?\s*\**\s*)"
    + DATE_VALUE,
)

ISO_TIMESTAMP_PATTERN = re.compile(
    r"\b\d{4}-\d{2}-\d{2}t\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:z|[+-]\d{2}:?\d{2})?"
)


def collapse_whitespace(text: str) -> str:
    """Replace every whitespace run with a single space."""
    return re.sub(r"\s+", " ", text).strip()


def mask_date_stamps(text: str) -> str:
    """Replace "last updated"-style stamps and ISO timestamps with a placeholder.

    Expects lowercase input. Dates that are part of the prose (no stamp
    keyword in front) are left untouched.
    """
    text = DATE_STAMP_PATTERN.sub(lambda m: f"{m.group(1)}{DATE_PLACEHOLDER}", text)
    return ISO_TIMESTAMP_PATTERN.sub(DATE_PLACEHOLDER, text)


def normalize_for_hash(text: str) -> str:
    """Canonical form of normalized text used as hash input."""
    return mask_date_stamps(collapse_whitespace(text).lower())

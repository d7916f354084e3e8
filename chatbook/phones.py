"""Phone number normalization.

Every comparison of two phones for ownership or duplicate purposes goes
through :func:`normalize_phone`; the display form is only ever shown.
"""

import re
from typing import NamedTuple

_NON_DIGITS = re.compile(r"\D")

LOOKUP_KEY_LENGTH = 10
MIN_PHONE_DIGITS = 8


class Phone(NamedTuple):
    """A phone number in both canonical forms."""

    lookup: str
    display: str


def phone_digits(raw: str | None) -> str:
    """Return only the digits of ``raw``."""
    if not raw:
        return ""
    return _NON_DIGITS.sub("", str(raw))


def normalize_phone(raw: str | None) -> str:
    """
    Map a raw phone string to its lookup key.

    Non-digits are stripped and only the last ten digits are kept. Inputs
    with fewer than eight digits are invalid and map to ``""``, which must
    never be matched against stored records.

    Examples:
        >>> normalize_phone("+91 98765-43210")
        '9876543210'
        >>> normalize_phone("12345")
        ''
    """
    digits = phone_digits(raw)
    if len(digits) > LOOKUP_KEY_LENGTH:
        return digits[-LOOKUP_KEY_LENGTH:]
    if len(digits) < MIN_PHONE_DIGITS:
        return ""
    return digits


def format_phone(raw: str | None) -> str:
    """
    Map a raw phone string to its display form.

    Digits only, keeping a leading ``+`` when the input started with one.

    Examples:
        >>> format_phone("+1 (415) 555-0100")
        '+14155550100'
    """
    digits = phone_digits(raw)
    if not digits:
        return ""
    if str(raw).strip().startswith("+"):
        return "+" + digits
    return digits


def parse_phone(raw: str | None) -> Phone:
    """Return both canonical forms of ``raw``."""
    return Phone(lookup=normalize_phone(raw), display=format_phone(raw))

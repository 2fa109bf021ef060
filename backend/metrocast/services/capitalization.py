"""Display-name normalization for feed-provided names and headsigns."""

from __future__ import annotations

import re

# Tokens that stay upper-cased after normalization.
KNOWN_ACRONYMS = frozenset(
    {
        "USM",  # University of Southern Maine
        "MMC",  # Maine Medical Center
        "JC",  # JC Penney
        "CBHS",  # Casco Bay High School
        "IDEXX",  # IDEXX Laboratories
        "HS",  # High School, e.g. "Deering HS"
        "IB",  # Inbound
        "OB",  # Outbound
        "SMCC",  # Southern Maine Community College
    }
)

# Words keep their apostrophes so "SHAW'S" becomes "Shaw's", not "Shaw'S".
_TOKEN_SPLIT_RE = re.compile(r"(\s+|[^A-Za-z']+)")
_HAS_LETTER_RE = re.compile(r"[A-Za-z]")


def fix_capitalization(value: str, acronyms: frozenset[str] = KNOWN_ACRONYMS) -> str:
    """Title-case each word of ``value`` while leaving known acronyms upper-cased.

    Punctuation, digits and whitespace are preserved as-is.

    >>> fix_capitalization("CONGRESS & FOREST")
    'Congress & Forest'
    >>> fix_capitalization("usm gorham")
    'USM Gorham'
    """
    tokens = _TOKEN_SPLIT_RE.split(value)
    processed = []
    for token in tokens:
        if not _HAS_LETTER_RE.search(token):
            processed.append(token)
            continue

        upper = token.upper()
        if upper in acronyms:
            processed.append(upper)
            continue

        lower = token.lower()
        # A token may start with an apostrophe ("'til"), capitalize the first letter.
        first_letter = _HAS_LETTER_RE.search(lower)
        index = first_letter.start() if first_letter else 0
        processed.append(lower[:index] + lower[index].upper() + lower[index + 1 :])

    return "".join(processed)

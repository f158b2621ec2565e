"""
Address cleaning for valuation lookups and source write-back.

Listing feeds prefix display addresses with internal ids and lot numbers
("ID:4242/Lot 7, 12 Smith St") which the valuation site cannot resolve.
"""
from __future__ import annotations

import re
from typing import Optional

_ID_PREFIX = re.compile(r"^ID:\d+/")
_LOT_PREFIX = re.compile(r"^Lot \d+,\s*")
_PAREN_LOT_PREFIX = re.compile(r"^\(Lot \d+\)\s*")
_WHITESPACE = re.compile(r"\s+")
_KEY_PUNCTUATION = re.compile(r"[^\w\s/-]")
_LETTER = re.compile(r"[^\W\d_]")


def clean_address(raw: Optional[str]) -> str:
    """Strip id/lot prefixes and collapse whitespace; '' for missing input."""
    if not raw:
        return ""
    address = raw.strip()
    address = _ID_PREFIX.sub("", address)
    address = _LOT_PREFIX.sub("", address)
    address = _PAREN_LOT_PREFIX.sub("", address)
    return _WHITESPACE.sub(" ", address).strip()


def address_key(raw: Optional[str]) -> str:
    """Comparison key: two addresses refer to the same listing iff keys are equal."""
    address = clean_address(raw).casefold()
    address = _KEY_PUNCTUATION.sub(" ", address)
    return _WHITESPACE.sub(" ", address).strip()


def is_searchable(raw: Optional[str]) -> bool:
    address = clean_address(raw)
    return bool(address) and _LETTER.search(address) is not None

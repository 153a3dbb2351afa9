"""Normalization and validation functions for scraped ranking/leaderboard rows.

All parsers accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
import unicodedata
from decimal import Decimal, InvalidOperation

UNRANKED = 999

_UNKNOWN_COUNTRIES = frozenset({"", "UNK", "UNKNOWN", "N/A", "-"})

# Header/label text that occasionally leaks into name cells.
_HEADER_TOKENS = frozenset({
    "pos", "position", "rank", "ranking", "pts", "points", "earning", "earnings",
    "country", "nat", "nationality", "score", "total", "round", "player", "name",
    "to", "par", "thru", "today", "events", "avg",
})
_JUNK_TOKEN_RE = re.compile(r"\b(undefined|null|nan|none)\b", re.IGNORECASE)

_NAME_CHARS_RE = re.compile(r"^[\w\s.\-']+$")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_name  (identity key)
# ---------------------------------------------------------------------------

def normalize_name(value: str | None) -> str | None:
    """Casefold, drop accents and punctuation, collapse spaces.

    The result is the identity key of a canonical entity, so
    "Rory McIlroy", " rory  mcilroy " and "Rory McIlroy." all map to
    "rory mcilroy".  Hyphens and apostrophes become spaces / vanish so
    "Byeong-Hun An" and "Byeong Hun An" collide.
    """
    v = trim(value)
    if v is None:
        return None
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = v.casefold()
    v = v.replace("'", "").replace("’", "")
    v = re.sub(r"[^\w\s]", " ", v)
    v = re.sub(r"\s+", " ", v).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 4: validate_name  (plausibility predicate)
# ---------------------------------------------------------------------------

def validate_name(value: str | None) -> str | None:
    """Return a rejection reason for an implausible person name, else None.

    Rejection rules, checked in order:
      empty_name            -- blank after whitespace normalization
      numeric_name          -- no letters at all ("12", "3.45", "12 34")
      too_short             -- fewer than 4 characters
      no_separating_space   -- a single token ("Scheffler")
      invalid_characters    -- anything outside letters, digits, space, . - '
      short_token           -- any whitespace token shorter than 2 characters
      forbidden_token       -- only header labels ("Total Points"), or
                               an undefined/null/nan placeholder
    """
    v = normalize_space(value)
    if v is None:
        return "empty_name"
    if not any(ch.isalpha() for ch in v):
        return "numeric_name"
    if len(v) < 4:
        return "too_short"
    if " " not in v:
        return "no_separating_space"
    if not _NAME_CHARS_RE.match(v) or "_" in v:
        return "invalid_characters"
    if any(len(tok) < 2 for tok in v.split(" ")):
        return "short_token"
    tokens = v.casefold().split(" ")
    if all(tok.strip(".") in _HEADER_TOKENS for tok in tokens) or _JUNK_TOKEN_RE.search(v):
        return "forbidden_token"
    return None


def is_plausible_name(value: str | None) -> bool:
    return validate_name(value) is None


# ---------------------------------------------------------------------------
# Rule 5: normalize_country
# ---------------------------------------------------------------------------

def normalize_country(value: str | None) -> str | None:
    """Uppercase a country code; unknown placeholders and long text → None."""
    v = trim(value)
    if v is None:
        return None
    v = v.upper()
    if v in _UNKNOWN_COUNTRIES or len(v) > 5:
        return None
    return v


def is_unknown_country(value: str | None) -> bool:
    return value is None or value.strip().upper() in _UNKNOWN_COUNTRIES


# ---------------------------------------------------------------------------
# Rule 6: parse_rank
# ---------------------------------------------------------------------------

def parse_rank(value: str | int | None) -> int | None:
    """Parse a world ranking.

    "1" → 1, "T5" → 5, "=12" → 12.  Non-positive values → None.
    Values at or beyond UNRANKED collapse to the UNRANKED sentinel.
    """
    if value is None:
        return None
    if isinstance(value, int):
        n = value
    else:
        digits = re.sub(r"\D", "", value.strip())
        if not digits:
            return None
        n = int(digits)
    if n <= 0:
        return None
    return min(n, UNRANKED)


def is_ranked(rank: int | None) -> bool:
    return rank is not None and 0 < rank < UNRANKED


# ---------------------------------------------------------------------------
# Rule 7: parse_numeric
# ---------------------------------------------------------------------------

def parse_numeric(value: str | None) -> Decimal | None:
    """Parse a decimal number, tolerating thousands separators and '$'."""
    v = trim(value)
    if v is None:
        return None
    v = v.replace(",", "").replace("$", "")
    try:
        d = Decimal(v)
    except InvalidOperation:
        return None
    return d if d.is_finite() else None


def parse_int(value: str | None) -> int | None:
    d = parse_numeric(value)
    return int(d) if d is not None else None


# ---------------------------------------------------------------------------
# Rule 8: parse_score_to_par
# ---------------------------------------------------------------------------

_TO_PAR_RE = re.compile(r"^([+-]?)(\d+)$")


def parse_score_to_par(value: str | None) -> int | None:
    """Parse a to-par score: 'E'/'EVEN' → 0, '+3' → 3, '-12' → -12.

    Unparseable values (e.g. 'CUT', 'WD', '--') → None.
    """
    v = trim(value)
    if v is None:
        return None
    v = v.upper().replace("−", "-")
    if v in ("E", "EVEN"):
        return 0
    m = _TO_PAR_RE.match(v)
    if not m:
        return None
    n = int(m.group(2))
    return -n if m.group(1) == "-" else n


# ---------------------------------------------------------------------------
# Rule 9: parse_position
# ---------------------------------------------------------------------------

def parse_position(value: str | None) -> tuple[str | None, int | None]:
    """Return (display_position, numeric_position) for a leaderboard cell.

    "T3" → ("T3", 3), "1" → ("1", 1), "CUT" → ("CUT", None).
    """
    v = normalize_space(value)
    if v is None:
        return None, None
    v = v.upper()
    digits = re.sub(r"\D", "", v)
    return v, (int(digits) if digits else None)

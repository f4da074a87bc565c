"""Address normalization utilities."""

import re
import unicodedata

from rapidfuzz import fuzz

# Common Mexican street-type abbreviations
STREET_TYPES = {
    r"\bav\b": "avenida",
    r"\bave\b": "avenida",
    r"\bblvd\b": "boulevard",
    r"\bblvr\b": "boulevard",
    r"\bcalz\b": "calzada",
    r"\bcarr\b": "carretera",
    r"\bcda\b": "cerrada",
    r"\bpriv\b": "privada",
    r"\bprol\b": "prolongacion",
    r"\bcto\b": "circuito",
    r"\bc\b": "calle",
}

# Neighborhood/settlement prefixes that carry no identity
SETTLEMENT_PREFIXES = re.compile(
    r"^(colonia|col|fraccionamiento|fracc|barrio|residencial|conjunto)\b\s*",
)

_NON_ALNUM = re.compile(r"[^a-z0-9#\s]")
_STREET_NUMBER = re.compile(r"(#\s*\d+[a-z]?|\bno\s*\d+[a-z]?\b|\bnum\s*\d+[a-z]?\b)")


def strip_accents(value: str) -> str:
    """Remove diacritics ("Colonia Juárez" -> "Colonia Juarez")."""
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_place_name(value: str | None) -> str:
    """Normalize a neighborhood, city or state name for comparison.

    Handles:
    - "Col. Juárez" -> "juarez"
    - "Fracc. Las Águilas" -> "las aguilas"
    - "  CIUDAD   de México " -> "ciudad de mexico"

    Args:
        value: Raw place name, possibly None.

    Returns:
        Lowercase, accent-free name with settlement prefixes removed.
    """
    if not value:
        return ""
    text = strip_accents(value).lower()
    text = _NON_ALNUM.sub(" ", text)
    text = " ".join(text.split())
    return SETTLEMENT_PREFIXES.sub("", text).strip()


def normalize_street(address: str | None) -> str:
    """Extract and normalize the street portion of a free-text address.

    Handles:
    - "Av. Insurgentes Sur #1234, Col. Del Valle" -> "avenida insurgentes sur"
    - "Calle Durango No. 12" -> "calle durango"

    Args:
        address: Full address string.

    Returns:
        Normalized street text (lowercase, expanded abbreviations, no numbers).
    """
    if not address:
        return ""
    text = strip_accents(address).lower()

    # The street is the first comma-separated part; the rest is colonia/city
    text = text.split(",")[0]

    text = _NON_ALNUM.sub(" ", text)
    text = _STREET_NUMBER.sub(" ", text)

    for abbrev, full in STREET_TYPES.items():
        text = re.sub(abbrev, full, text)

    # Remove any remaining bare numbers (exterior/interior numbers)
    text = re.sub(r"\b\d+[a-z]?\b", " ", text)
    text = text.replace("#", " ")

    return " ".join(text.split())


def text_similarity(a: str, b: str) -> float:
    """Token-order-insensitive similarity of two normalized strings, in [0, 1]."""
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return fuzz.token_sort_ratio(a, b) / 100.0

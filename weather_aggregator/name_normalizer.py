"""
City name normalization, validation and cache key generation.

Handles names with diacritics, districts in parentheses, smart punctuation and
non-Latin scripts. All functions are pure and accept any input type; anything
that is not a string is treated as empty.
"""

import re
import unicodedata
from typing import List

# Letter ranges accepted by is_valid(): Latin (basic, Latin-1 supplement,
# extended A/B, extended additional), Cyrillic, CJK unified ideographs,
# Hebrew, Arabic and Arabic supplement.
LETTER_RANGES = (
    "a-zA-Z"
    "\u00C0-\u024F"
    "\u1E00-\u1EFF"
    "\u0400-\u04FF"
    "\u4E00-\u9FFF"
    "\u0590-\u05FF"
    "\u0600-\u06FF"
    "\u0750-\u077F"
)

# ASCII word characters; \w in Python regexes is Unicode-aware
_WORD = "A-Za-z0-9_"

_COMBINING_MARKS = re.compile("[\u0300-\u036F]")
_WHITESPACE = re.compile(r"\s+")
_EDGE_PUNCTUATION = re.compile(rf"^[^{_WORD}\s]+|[^{_WORD}\s]+$")

_KEY_UNSAFE = re.compile(r"[^a-z0-9\s-]")
_HYPHEN_RUNS = re.compile(r"-+")

_HAS_LETTER = re.compile(f"[{LETTER_RANGES}]")
_EXCESSIVE_PUNCTUATION = re.compile(r"[.]{3,}|[,]{2,}|[;]{2,}")
_EXCESSIVE_WHITESPACE = re.compile(r"\s{3,}")
_BAD_START = re.compile(f"^[^{_WORD}{LETTER_RANGES}(]")
_BAD_END = re.compile(f"[^{_WORD}{LETTER_RANGES})]$")

_DOUBLE_QUOTES = re.compile("[\u201C\u201D\u201E]")
_SINGLE_QUOTES = re.compile("[\u2018\u2019\u2032]")
_DASHES = re.compile("[\u2013\u2014]")

_PARENTHESES = re.compile(r"\([^)]*\)")
DISTRICT_SEPARATORS = ("/", "\\", "-", "\u2013", "\u2014")

MAX_NAME_LENGTH = 100


def normalize(name) -> str:
    """
    Normalize a city name for comparison and cache keys.

    Diacritics are removed from decomposed Latin characters and the result is
    lowercased with single spaces. Leading and trailing characters that are
    neither ASCII word characters nor whitespace are stripped, so names written
    entirely in a non-Latin script normalize to an empty string.

    Args:
        name: City name

    Returns:
        Normalized name, or "" for empty or non-string input
    """
    if not name or not isinstance(name, str):
        return ""

    normalized = unicodedata.normalize("NFD", name.strip())
    normalized = _COMBINING_MARKS.sub("", normalized)
    normalized = normalized.lower()
    normalized = _WHITESPACE.sub(" ", normalized)
    normalized = _EDGE_PUNCTUATION.sub("", normalized)
    return normalized.strip()


def _key_part(value) -> str:
    part = _KEY_UNSAFE.sub("", normalize(value))
    part = _WHITESPACE.sub("-", part)
    part = _HYPHEN_RUNS.sub("-", part)
    return part.strip("-")


def cache_key(city, country="") -> str:
    """
    Generate a cache-safe key from a city and an optional country.

    Args:
        city: City name
        country: Country code or name (optional)

    Returns:
        Lowercase key made of letters, digits and single hyphens,
        e.g. "sao-paulo-br"
    """
    city_key = _key_part(city)
    country_key = _key_part(country)
    return f"{city_key}-{country_key}" if country_key else city_key


def is_valid(name) -> bool:
    """
    Check whether a city name is acceptable for provider requests.

    Args:
        name: City name

    Returns:
        True if the name is valid
    """
    if not name or not isinstance(name, str):
        return False

    trimmed = name.strip()
    if not 1 <= len(trimmed) <= MAX_NAME_LENGTH:
        return False

    if not _HAS_LETTER.search(trimmed):
        return False
    if _EXCESSIVE_PUNCTUATION.search(trimmed):
        return False
    if _EXCESSIVE_WHITESPACE.search(trimmed):
        return False
    # Parentheses are allowed at the edges for districts
    if _BAD_START.search(trimmed) or _BAD_END.search(trimmed):
        return False

    return True


def clean_for_api(name) -> str:
    """Collapse whitespace and normalize smart quotes and dashes."""
    if not name or not isinstance(name, str):
        return ""

    cleaned = _WHITESPACE.sub(" ", name.strip())
    cleaned = _DOUBLE_QUOTES.sub('"', cleaned)
    cleaned = _SINGLE_QUOTES.sub("'", cleaned)
    cleaned = _DASHES.sub("-", cleaned)
    return cleaned.strip()


def extract_main_name(name) -> str:
    """
    Extract the main city name from a name with districts or areas.

    "Zürich (Kreis 11) / Oerlikon" becomes "Zürich". A first segment of two
    characters or less is treated as an abbreviation and not used.
    """
    if not name or not isinstance(name, str):
        return ""

    main_name = _PARENTHESES.sub("", name.strip()).strip()

    for separator in DISTRICT_SEPARATORS:
        if separator in main_name:
            first_part = main_name.split(separator)[0].strip()
            if len(first_part) > 2:
                main_name = first_part
                break

    return main_name.strip()


def fallback_names(name) -> List[str]:
    """
    Build the ordered list of name variations to try against the provider.

    The original name always comes first, followed by the cleaned name, the
    main name without districts and the normalized name, each only when it
    adds something new.

    Args:
        name: Original city name

    Returns:
        Unique, non-empty variations in retry order
    """
    if not name or not isinstance(name, str):
        return []

    original = name.strip()
    variations = [original]

    cleaned = clean_for_api(original)
    if cleaned and cleaned != original:
        variations.append(cleaned)

    main_name = extract_main_name(original)
    if main_name and main_name != original and main_name != cleaned:
        variations.append(main_name)

    normalized = normalize(original)
    if normalized and normalized != original.lower():
        variations.append(normalized)

    unique = []
    for variation in variations:
        if variation and variation not in unique:
            unique.append(variation)
    return unique

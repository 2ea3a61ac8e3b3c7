"""Merchant name normalization and similarity scoring.

Raw card-statement merchant strings carry processor prefixes, terminal ids and
legal suffixes that hide the actual merchant:

    "PAYPAL *SPOTIFY 4029357733"  → "spotify"
    "SQ *BLUE BOTTLE COFFEE"      → "blue bottle coffee"
    "UBER TECHNOLOGIES INC"       → "uber technologies"
    "STARBUCKS STORE #1234"       → "starbucks"

Similarity is pg_trgm style trigram overlap, falling back to character-set
overlap when a string produces no trigrams.
"""

import re

# ── Normalization patterns ──────────────────────────────────────

_PROCESSOR_PREFIX_RE = re.compile(r"^(PAYPAL\s*\*|SQ\s*\*|SQUARE\s*\*|TST\s*\*|POS\s+|CCD\s+)", re.I)
_STAR_SEPARATOR_RE = re.compile(r"\s*\*\s*")
_TRAILING_DIGITS_RE = re.compile(r"\s+\d{4,}$")
_TRAILING_HASH_NUMBER_RE = re.compile(r"\s*#\d+$")
_LEGAL_SUFFIX_RE = re.compile(r"\s+(INC|LLC|LTD|CORP|CO|COMPANY)\.?$", re.I)
_STORE_MARKER_RE = re.compile(r"\s+(STORE|LOCATION)\s*#?\s*\d+", re.I)
_NON_WORD_RE = re.compile(r"[^\w\s&'-]")
_WHITESPACE_RE = re.compile(r"\s+")
_WORD_RE = re.compile(r"[^\W_]+")

# ── Known merchants ─────────────────────────────────────────────

# normalized brand key → display name
KNOWN_MERCHANTS: dict[str, str] = {
    "uber": "Uber",
    "lyft": "Lyft",
    "amazon": "Amazon",
    "walmart": "Walmart",
    "target": "Target",
    "starbucks": "Starbucks",
    "mcdonalds": "McDonald's",
    "netflix": "Netflix",
    "spotify": "Spotify",
}

# Words that may follow a brand name without making it a different merchant
BRAND_DESCRIPTOR_WORDS = frozenset(
    {
        "trip", "trips", "ride", "rides", "technologies", "tech", "com", "online", "digital",
        "store", "stores", "supercenter", "mktp", "marketplace", "us", "usa", "subscription",
        "payment", "payments", "bill",
    }
)


def normalize_merchant_name(raw: str | None) -> str:
    """Reduce a raw merchant string to its comparable lowercase form."""
    if not raw:
        return ""
    name = raw.strip()
    name = _PROCESSOR_PREFIX_RE.sub("", name)
    name = _STAR_SEPARATOR_RE.sub(" ", name).strip()
    name = _STORE_MARKER_RE.sub("", name)
    name = _TRAILING_DIGITS_RE.sub("", name)
    name = _TRAILING_HASH_NUMBER_RE.sub("", name)
    name = _LEGAL_SUFFIX_RE.sub("", name)
    name = _NON_WORD_RE.sub(" ", name)
    name = _WHITESPACE_RE.sub(" ", name).strip()
    return name.lower()


def brand_key(normalized: str) -> str | None:
    """Known brand of a normalized name ('uber trip' → 'uber').

    Only the bare brand or the brand followed by descriptor words folds, so
    'target range club' stays its own merchant.
    """
    words = normalized.split() if normalized else []
    if not words:
        return None
    first_word, *rest = words
    first_word = first_word.replace("'", "")
    if first_word in KNOWN_MERCHANTS and all(word in BRAND_DESCRIPTOR_WORDS for word in rest):
        return first_word
    compact = normalized.replace("'", "").replace(" ", "")
    return compact if compact in KNOWN_MERCHANTS else None


def canonical_key(normalized: str) -> str:
    """Name under which a normalized merchant is stored as canonical."""
    return brand_key(normalized) or normalized


def beautify_merchant_name(name: str) -> str:
    """Display form: known brand spelling, else title case."""
    key = brand_key(name)
    if key is not None and key == name.replace("'", "").replace(" ", ""):
        return KNOWN_MERCHANTS[key]
    return " ".join(word.capitalize() for word in name.split())


# ── Similarity ──────────────────────────────────────────────────


def trigrams(text: str) -> set[str]:
    """pg_trgm trigram set: each word padded with two leading and one trailing space."""
    grams: set[str] = set()
    for word in _WORD_RE.findall(text.lower()):
        padded = f"  {word} "
        grams.update(padded[i : i + 3] for i in range(len(padded) - 2))
    return grams


def trigram_similarity(a: str, b: str) -> float | None:
    """Jaccard overlap of trigram sets, or None when either side has no trigrams."""
    grams_a, grams_b = trigrams(a), trigrams(b)
    if not grams_a or not grams_b:
        return None
    return len(grams_a & grams_b) / len(grams_a | grams_b)


def character_overlap_similarity(a: str, b: str) -> float:
    """Distinct shared characters over the longer string length."""
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return len(set(a) & set(b)) / max(len(a), len(b))


def similarity(a: str, b: str, strategy: str = "trigram") -> float:
    """Similarity in [0, 1] between two normalized merchant names."""
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    if strategy == "trigram":
        score = trigram_similarity(a, b)
        if score is not None:
            return score
    return character_overlap_similarity(a, b)

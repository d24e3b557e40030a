import re
import unicodedata

# Chat shorthand seen in customer messages; applied after folding.
_ALIAS_PATTERNS = (
    (r"\bdnr\b", "doner"),
    (r"\bdner\b", "doner"),
    (r"\btvk\b", "tavuk"),
    (r"\btavk\b", "tavuk"),
    (r"\blmc\b", "lahmacun"),
    (r"\blahmcn\b", "lahmacun"),
    (r"\bayrn\b", "ayran"),
    (r"\b(?:cola|coke)\b", "kola"),
    (r"\biskndr\b", "iskender"),
    (r"\bbi\b", "bir"),
    (r"\bpide\s+ler\b", "pide"),
)

# Characters NFKD does not decompose.
_TURKISH_FOLD = str.maketrans({"ı": "i", "İ": "i", "I": "i"})

_NUMBER_WORDS = {
    "bir": 1,
    "iki": 2,
    "uc": 3,
    "dort": 4,
    "bes": 5,
    "alti": 6,
    "yedi": 7,
    "sekiz": 8,
    "dokuz": 9,
    "on": 10,
}

# Words around a quantity that carry no item meaning ("bir de ayran", "iki tane pide").
FILLER_TOKENS = {"de", "da", "tane", "adet", "porsiyon", "x", "tanede", "lutfen", "ile", "bana", "istiyorum", "alayim"}

_SEGMENT_SPLIT = re.compile(r"\s*(?:,|\+|;|\n)\s*|\s+(?:ve|ayrica)\s+(?=\S)")


def _apply_aliases(text: str) -> str:
    for pattern, replacement in _ALIAS_PATTERNS:
        text = re.sub(pattern, replacement, text)
    return text


def fold(text: str) -> str:
    """Lower-case and strip diacritics the Turkish way (ı/İ -> i, ş -> s, ğ -> g)."""
    text = (text or "").translate(_TURKISH_FOLD).lower()
    text = unicodedata.normalize("NFKD", text)
    return "".join(char for char in text if not unicodedata.combining(char))


def normalize(text: str) -> str:
    text = fold(text)
    text = re.sub(r"[-_/']", " ", text)
    text = re.sub(r"[^\w\s]", " ", text)
    text = re.sub(r"\s+", " ", text).strip()
    if not text:
        return ""
    text = _apply_aliases(text)
    text = re.sub(r"\s+", " ", text).strip()
    return text


def tokenize(text: str) -> list[str]:
    normalized = normalize(text)
    return normalized.split() if normalized else []


def parse_qty(token: str) -> int | None:
    token = normalize(token)
    if token.isdigit():
        value = int(token)
        return value if value > 0 else None
    match = re.fullmatch(r"(\d+)x|x(\d+)", token)
    if match:
        return int(match.group(1) or match.group(2))
    return _NUMBER_WORDS.get(token)


def contains_phrase(normalized_text: str, normalized_phrase: str) -> bool:
    if not normalized_text or not normalized_phrase:
        return False
    return re.search(rf"(?<!\w){re.escape(normalized_phrase)}(?!\w)", normalized_text) is not None


def split_segments(text: str) -> list[str]:
    """Split a free-form order message into one chunk per mentioned item.

    "2 tavuk döner, bir de ayran" -> ["2 tavuk döner", "bir de ayran"].
    The leading "bir de" of a chunk is kept so its quantity is not lost.
    """
    raw_text = (text or "").strip()
    if not raw_text:
        return []

    # keep "bir de X" as a quantity marker instead of a separator
    prepared = re.sub(r"(?i)\s+(bir\s*de|bide|birde)\s+", r", \1 ", raw_text)
    parts = _SEGMENT_SPLIT.split(prepared)
    return [part.strip() for part in parts if part and part.strip()]


def parse_order_text(text: str) -> list[dict]:
    """Split text into {"raw_name", "qty"} entries.

    Quantities may lead ("2 lahmacun", "iki tane pide") or trail
    ("lahmacun x2", "pide 2 adet"); filler words are dropped.
    """
    results: list[dict] = []
    for segment in split_segments(text):
        tokens = tokenize(segment)
        tokens = [token for token in tokens if token not in {"birde", "bide"}]
        if not tokens:
            continue

        qty = None
        if len(tokens) > 1:
            leading = parse_qty(tokens[0])
            trailing = parse_qty(tokens[-1])
            if leading:
                qty = leading
                tokens = tokens[1:]
            elif trailing:
                qty = trailing
                tokens = tokens[:-1]
            elif len(tokens) > 2 and tokens[-1] in {"tane", "adet", "porsiyon"} and parse_qty(tokens[-2]):
                qty = parse_qty(tokens[-2])
                tokens = tokens[:-2]

        name_tokens = [token for token in tokens if token not in FILLER_TOKENS]
        if not name_tokens:
            continue
        results.append({"raw_name": " ".join(name_tokens), "qty": qty or 1})

    return results

import re
from datetime import datetime, timezone
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

# Query parameters the image CDN uses for resized variants
RESIZE_PARAMS = {"w", "h", "mode"}

COLOR_ALIASES = {
    "blk": "black",
    "blu": "blue",
    "brn": "brown",
    "brz": "bronze",
    "burg": "burgundy",
    "char": "charcoal",
    "gld": "gold",
    "grn": "green",
    "gry": "gray",
    "grey": "gray",
    "mrn": "maroon",
    "org": "orange",
    "pur": "purple",
    "sil": "silver",
    "tan": "tan",
    "wht": "white",
    "yel": "yellow",
    "grey/silver": "silver",
}

_US_DATE = re.compile(r"(\d{1,2}/\d{1,2}/\d{4})")
_WHITESPACE = re.compile(r"\s+")


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


def slugify(text: str) -> str:
    """Lowercase and hyphenate spaces: 'Grand Cherokee' -> 'grand-cherokee'."""
    return "-".join(text.lower().split(" "))


def absolute_url(href: str, base: str) -> str:
    return urljoin(base.rstrip("/") + "/", href) if href else ""


def strip_resize_params(url: str) -> str:
    """Drop w/h/mode from an image URL to get the full-size original."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.query:
        return url
    pairs = parse_qsl(parts.query, keep_blank_values=True)
    kept = [(k, v) for k, v in pairs if k not in RESIZE_PARAMS]
    if len(kept) == len(pairs):
        return url
    return urlunsplit(parts._replace(query=urlencode(kept)))


def parse_iso_datetime(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_us_date(text: str) -> datetime | None:
    """Find the first M/D/YYYY in ``text``."""
    match = _US_DATE.search(text or "")
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), "%m/%d/%Y").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _is_valid_color(color: str) -> bool:
    if not color or color in ("UNKNOWN", "Other"):
        return False
    if color.startswith("FIELD - ") or color.startswith("["):
        return False
    return True


def normalize_color(color: str | None) -> str | None:
    """Canonical lowercase color key, or None for placeholder values."""
    if not color or not _is_valid_color(color.strip()):
        return None
    lower = color.strip().lower()
    return COLOR_ALIASES.get(lower, lower)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)

"""Field normalization for scraped app data.

Every function here is total: malformed input degrades to ``None`` or a
best-effort string instead of raising.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Iterable, Optional
from urllib.parse import quote

from selectolax.parser import HTMLParser

from catalog_ingest.config import settings

logger = logging.getLogger(__name__)

# Characters encodeURI leaves alone, plus '%' so already-encoded URLs survive.
_URI_SAFE = ";,/?:@&=+$-_.!~*'()#%[]"

_WS_RE = re.compile(r"\s+")
_TAG_GAP_RE = re.compile(r">\s+<")
_LINE_BREAK_TAG_RE = re.compile(r"<\s*br\s*/?\s*>|</\s*(?:p|li|div|h[1-6]|tr|ul|ol)\s*>", re.IGNORECASE)
_SIZE_IN_TEXT_RE = re.compile(r"\d+(?:\.\d+)?\s*(?:MB|GB|TB)", re.IGNORECASE)
_SIZE_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(mb|gb|tb|kb)?", re.IGNORECASE)
_FILE_SIZE_TEXT_RE = re.compile(r"Size:\s*([\d.]+\s*[MG]B)", re.IGNORECASE)

# Line classifiers for free-text requirements (multi-line input)
SYSTEM_LINE_PATTERNS = (
    re.compile(r"^(?:macOS|Mac OS X|OS X)(?:\s+\d+|\s+[A-Za-z]+)", re.IGNORECASE),
    re.compile(r"(?:macOS|Mac OS X|OS X)\s+(?:\d+|\w+).*(?:Architecture|Intel|Apple Silicon|M1|M2|x86|arm)", re.IGNORECASE),
    re.compile(r"^(?:System|Memory|RAM|Storage|Hard\s+Drive|Disk\s+Space):", re.IGNORECASE),
    re.compile(r"^(?:Processor|CPU|Graphics|GPU|Video\s+Card):", re.IGNORECASE),
    re.compile(r"^(?:Architecture|64-bit|32-bit|Intel|Apple\s+Silicon|M1|M2|x86|arm)", re.IGNORECASE),
    re.compile(r"\d+\s*(?:GB|MB|GHz|MHz)", re.IGNORECASE),
    re.compile(r"(?:Intel|AMD)\s+(?:Core|Xeon|Ryzen)", re.IGNORECASE),
    re.compile(r"Architecture:.*(?:Intel|Apple Silicon|M1|M2|x86|arm)", re.IGNORECASE),
)

# Narrower set used when the whole requirement is a single line
SYSTEM_SINGLE_PATTERNS = (
    SYSTEM_LINE_PATTERNS[0],
    SYSTEM_LINE_PATTERNS[1],
    re.compile(r"^(?:System|Memory|RAM|Storage|Processor|CPU|Graphics|GPU):", re.IGNORECASE),
    re.compile(r"^(?:Architecture|64-bit|32-bit|Intel|Apple\s+Silicon)", re.IGNORECASE),
    SYSTEM_LINE_PATTERNS[5],
    SYSTEM_LINE_PATTERNS[7],
)

# Labelled hardware lines inside structured requirement lists
LABELLED_SYSTEM_PATTERNS = (
    re.compile(r"^(?:Memory|RAM):\s+", re.IGNORECASE),
    re.compile(r"^(?:Storage|Disk Space|Hard Drive):\s+", re.IGNORECASE),
    re.compile(r"^(?:Processor|CPU):\s+", re.IGNORECASE),
    re.compile(r"^(?:Graphics|GPU|Video Card):\s+", re.IGNORECASE),
)


# =============================================================================
# Text
# =============================================================================

def _html_text(html: str) -> str:
    tree = HTMLParser(html)
    root = tree.body or tree.root
    if root is None:
        return ""
    return root.text(separator=" ")


def clean_html(html: Any, preserve_html: bool = False) -> str:
    """Turn an HTML fragment into plain text, or tidy its whitespace.

    With ``preserve_html`` the markup is kept and only whitespace is
    collapsed. Otherwise tags are stripped, entities decoded and whitespace
    collapsed to single spaces.
    """
    if not html:
        return ""
    if not isinstance(html, str):
        html = str(html)

    if preserve_html:
        return _TAG_GAP_RE.sub("><", _WS_RE.sub(" ", html)).strip()

    try:
        text = _html_text(html)
    except (ValueError, TypeError) as e:
        logger.debug(f"Falling back to regex tag strip: {e}")
        text = re.sub(r"<[^>]+>", "", html)
    return _WS_RE.sub(" ", text).strip()


def html_to_lines(html: str) -> list[str]:
    """Split an HTML or plain-text block into trimmed non-empty lines."""
    if not html:
        return []
    marked = _LINE_BREAK_TAG_RE.sub("\n", html)
    try:
        text = _html_text(marked)
    except (ValueError, TypeError):
        text = re.sub(r"<[^>]+>", "", marked)
    lines = []
    for raw_line in re.split(r"[\n\r]+", text):
        line = re.sub(r"[ \t\f\v\xa0]+", " ", raw_line).strip()
        if line:
            lines.append(line)
    return lines


def clean_app_name(name: Optional[str]) -> str:
    """Strip version numbers, prices and decorations from a scraped listing name."""
    if not name:
        return ""
    head = re.split(r"[-–—|,]|\s{3,}", name)[0]
    head = re.sub(r"\d+\.\d+(?:\.\d+)?", "", head)
    head = re.sub(r"\$\d+(?:\.\d+)?", "", head)
    head = re.sub(r"\s*\([^)]*\)", "", head)
    head = re.sub(r"\s+-.*$", "", head)
    head = re.sub(r"\s*:.*$", "", head)
    return _WS_RE.sub(" ", head).strip()


def slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-")


# =============================================================================
# Price / size
# =============================================================================

def format_price(raw: Any) -> str:
    """
    Format a source price as display text.

    ``{"value": 999}`` and bare numbers are cents and become ``"$9.99"``.
    Strings that read "free" become ``"Free"``, numeric strings are
    re-formatted and anything else passes through. Missing or unparsable
    prices default to ``"Free"``.
    """
    if not raw or isinstance(raw, bool):
        return "Free"

    try:
        if isinstance(raw, dict):
            value = raw.get("value")
            if value:
                return f"${float(value) / 100:.2f}"
        elif isinstance(raw, (int, float)):
            return f"${raw / 100:.2f}"
        elif isinstance(raw, str):
            if raw.strip().lower() == "free":
                return "Free"
            numeric = re.sub(r"[^0-9.]", "", raw)
            try:
                return f"${float(numeric):.2f}"
            except ValueError:
                return raw
    except (TypeError, ValueError) as e:
        logger.debug(f"Unparsable price {raw!r}: {e}")
    return "Free"


def _format_number(value: float) -> str:
    if value == int(value):
        return str(int(value))
    return str(value)


def format_size(size: str) -> str:
    """Normalize a size string, rolling MB over to GB and GB to TB at 1024."""
    if not size:
        return size
    normalized = re.sub(r"\s+", "", str(size).lower())
    match = _SIZE_RE.search(normalized)
    if not match:
        return size
    try:
        value = float(match.group(1))
    except ValueError:
        return size
    unit = (match.group(2) or "").lower()

    if unit == "mb" and value >= 1024:
        return f"{value / 1024:.1f} GB"
    if unit == "gb" and value >= 1024:
        return f"{value / 1024:.1f} TB"
    return f"{_format_number(value)} {unit.upper()}".strip()


def size_to_bytes(size: Any) -> int:
    """Best-effort byte count from ``12345`` or ``"12.5 MB"``; 0 when unknown."""
    if size is None or isinstance(size, bool):
        return 0
    if isinstance(size, (int, float)):
        return max(0, int(size))
    match = _SIZE_RE.search(str(size).replace(",", ""))
    if not match:
        return 0
    try:
        value = float(match.group(1))
    except ValueError:
        return 0
    multiplier = {
        "kb": 1024,
        "mb": 1024 ** 2,
        "gb": 1024 ** 3,
        "tb": 1024 ** 4,
    }.get((match.group(2) or "").lower(), 1)
    return int(value * multiplier)


def _format_sizes_in_line(line: str) -> str:
    return _SIZE_IN_TEXT_RE.sub(lambda m: format_size(m.group(0)), line)


# =============================================================================
# Requirements
# =============================================================================

@dataclass
class ProcessedRequirements:
    requirements: Optional[str] = None
    other_requirements: Optional[str] = None

    def __bool__(self) -> bool:
        return bool(self.requirements or self.other_requirements)


def _join(lines: Iterable[str]) -> Optional[str]:
    lines = [line for line in lines if line]
    return "\n".join(lines) if lines else None


def _is_system_line(line: str, patterns) -> bool:
    return any(p.search(line) for p in patterns)


def _requirements_from_text(text: str) -> ProcessedRequirements:
    lines = html_to_lines(text)
    if not lines:
        return ProcessedRequirements()

    if len(lines) > 1:
        system_reqs: list[str] = []
        other_reqs: list[str] = []
        for line in lines:
            if _is_system_line(line, SYSTEM_LINE_PATTERNS):
                system_reqs.append(_format_sizes_in_line(line))
            else:
                other_reqs.append(line)
        return ProcessedRequirements(_join(system_reqs), _join(other_reqs))

    line = lines[0]
    if _is_system_line(line, SYSTEM_SINGLE_PATTERNS):
        return ProcessedRequirements(_format_sizes_in_line(line), None)
    return ProcessedRequirements(None, line)


def _clean_requirement_item(item: str) -> str:
    cleaned = clean_html(item)
    cleaned = re.sub(r"^[•\-]\s*", "", cleaned)
    return re.sub(r"\.$", "", cleaned).strip()


def _normalize_architecture(arch: str) -> str:
    lowered = arch.lower()
    if "arm" in lowered:
        return "Apple Silicon"
    if "x86_64" in lowered or "intel 64" in lowered:
        return "Intel 64-bit"
    return arch


def _requirements_from_mapping(req: dict) -> ProcessedRequirements:
    system_reqs: list[str] = []
    # dict keeps insertion order, giving an ordered set
    other_reqs: dict[str, None] = {}

    minimum_os = req.get("minimum_os")
    if isinstance(minimum_os, str) and minimum_os.strip():
        os_version = re.sub(r"^(?:Mac OS X|macOS)\s+", "", minimum_os.strip(), flags=re.IGNORECASE)
        system_reqs.append(f"macOS {os_version}")

    architectures = req.get("architectures")
    if isinstance(architectures, list) and architectures:
        arch_list = [_normalize_architecture(str(a)) for a in architectures if a]
        if arch_list:
            system_reqs.append(f"Architecture: {', '.join(arch_list)}")

    def classify(item: str) -> None:
        cleaned = _clean_requirement_item(item)
        if not cleaned:
            return
        if _is_system_line(cleaned, LABELLED_SYSTEM_PATTERNS):
            system_reqs.append(_format_sizes_in_line(cleaned))
        else:
            other_reqs[cleaned] = None

    # other_list is the cleanest source, then other_requirements; the "other"
    # HTML blob only fills in when neither produced anything.
    for key in ("other_list", "other_requirements"):
        items = req.get(key)
        if isinstance(items, list):
            for item in items:
                if item and isinstance(item, str):
                    classify(item)

    other_blob = req.get("other")
    if isinstance(other_blob, str) and other_blob.strip() and not other_reqs:
        for line in html_to_lines(other_blob):
            classify(line)

    if req.get("is_64bit") is True:
        system_reqs.append("64-bit only" if req.get("is_32bit") is False else "64-bit compatible")

    return ProcessedRequirements(_join(system_reqs), _join(other_reqs))


def process_requirements(raw: Any) -> ProcessedRequirements:
    """
    Split requirement data into system requirements and other requirements.

    Accepts a JSON string, an HTML/plain-text block, a list of lines, or the
    structured object form (``minimum_os``, ``architectures``, ``other_list``,
    ``other_requirements``, ``other``, ``is_64bit``, ``is_32bit``).

    Returns:
        ProcessedRequirements with newline-joined ``requirements`` and
        ``other_requirements`` (either may be None)
    """
    if not raw:
        return ProcessedRequirements()

    try:
        if isinstance(raw, str):
            stripped = raw.strip()
            if stripped.startswith("{"):
                try:
                    parsed = json.loads(stripped)
                except json.JSONDecodeError:
                    parsed = None
                if isinstance(parsed, dict):
                    return _requirements_from_mapping(parsed)
            return _requirements_from_text(raw)

        if isinstance(raw, dict):
            return _requirements_from_mapping(raw)

        if isinstance(raw, list):
            return _requirements_from_text("\n".join(str(item) for item in raw if item))
    except (TypeError, ValueError, AttributeError) as e:
        logger.warning(f"Could not process requirements {raw!r}: {e}")

    return ProcessedRequirements()


def merge_requirements(primary: Any, fallback: Any) -> ProcessedRequirements:
    """Process ``requirements`` and ``system_requirements`` together.

    The fallback is used alone when the primary yields nothing and merged in
    when both are present.
    """
    processed = process_requirements(primary)
    if not fallback:
        return processed

    secondary = process_requirements(fallback)
    if not primary or not processed:
        return secondary

    return ProcessedRequirements(
        _join([processed.requirements, secondary.requirements]),
        _join([processed.other_requirements, secondary.other_requirements]),
    )


# =============================================================================
# URLs / images
# =============================================================================

def clean_url(raw: Any, base_url: Optional[str] = None) -> Optional[str]:
    """Make a URL absolute against the source site and percent-encode it."""
    if not raw:
        return None
    url = raw.get("url") if isinstance(raw, dict) else raw
    if not url or not isinstance(url, str):
        return None
    url = url.strip()
    if not url:
        return None

    if url.startswith("//"):
        url = f"https:{url}"
    if not url.startswith(("http://", "https://")):
        base = (base_url or settings.source_base_url).rstrip("/")
        url = f"{base}/{url.lstrip('/')}"
    return quote(url, safe=_URI_SAFE)


def get_best_screenshot_url(raw: Any) -> Optional[str]:
    """Pick the largest available rendition (large, medium, small PNG)."""
    if not raw:
        return None
    if isinstance(raw, str):
        return clean_url(raw)
    if isinstance(raw, dict):
        for key in ("l_png", "m_png", "s_png", "url"):
            candidate = raw.get(key)
            if candidate:
                cleaned = clean_url(candidate)
                if cleaned:
                    return cleaned
    return None


# =============================================================================
# Dates
# =============================================================================

def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_date(value: Any) -> Optional[datetime]:
    """Best-effort datetime from ISO strings, RFC 2822 strings, epochs or dicts."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _to_naive_utc(value)
    if isinstance(value, dict):
        return parse_date(value.get("date"))

    try:
        if isinstance(value, (int, float)):
            # Millisecond epochs are what JS-rendered payloads carry
            seconds = value / 1000 if value > 1e11 else value
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)

        if isinstance(value, str):
            text = value.strip()
            if not text:
                return None
            try:
                return _to_naive_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
            except ValueError:
                pass
            try:
                return _to_naive_utc(parsedate_to_datetime(text))
            except (TypeError, ValueError, IndexError):
                pass
            for fmt in ("%Y-%m-%d %H:%M:%S", "%Y/%m/%d", "%m/%d/%Y", "%B %d, %Y", "%b %d, %Y"):
                try:
                    return datetime.strptime(text, fmt)
                except ValueError:
                    continue
    except (OverflowError, OSError, ValueError) as e:
        logger.debug(f"Invalid date {value!r}: {e}")
    return None


def first_date(*values: Any) -> Optional[datetime]:
    """First candidate that parses as a date."""
    for value in values:
        parsed = parse_date(value)
        if parsed is not None:
            return parsed
    return None


# =============================================================================
# Categories / file size
# =============================================================================

def parse_category_text(text: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """
    Split DOM category text into ``(name, parent_name)``.

    ``"Productivity --> Calendars"`` gives ``("Calendars", "Productivity")``;
    plain text is a single top-level category.
    """
    if not text:
        return None, None
    cleaned = _WS_RE.sub(" ", text).strip()
    if not cleaned:
        return None, None
    if "-->" in cleaned:
        parts = [p.strip() for p in cleaned.split("-->") if p.strip()]
        if len(parts) >= 2:
            return parts[1], parts[0]
        if parts:
            return parts[0], None
        return None, None
    return cleaned, None


def categories_from_json_ld(items: list[Any]) -> tuple[Optional[str], Optional[str]]:
    """Read ``applicationCategory`` from JSON-LD blocks as ``(name, parent_name)``."""
    for item in items:
        candidates = item if isinstance(item, list) else [item]
        for candidate in candidates:
            if not isinstance(candidate, dict):
                continue
            category = candidate.get("applicationCategory")
            if isinstance(category, list):
                names = [str(c).strip() for c in category if c and str(c).strip()]
                if len(names) >= 2:
                    return names[1], names[0]
                if names:
                    return names[0], None
            elif isinstance(category, str) and category.strip():
                return category.strip(), None
    return None, None


def extract_file_size(payload: Optional[dict], tree: Optional[HTMLParser] = None) -> Optional[str]:
    """File size from payload fields, else from a ``Size: N MB`` label in the page."""
    if payload:
        stats = payload.get("stats") if isinstance(payload.get("stats"), dict) else {}
        for value in (
            payload.get("file_size"),
            payload.get("fileSize"),
            payload.get("size"),
            stats.get("size"),
        ):
            if value:
                return str(value)

    if tree is None:
        return None

    for selector in (".app-size", ".file-size", ".download-size"):
        for node in tree.css(selector):
            match = _FILE_SIZE_TEXT_RE.search(node.text() or "")
            if match:
                return match.group(1).strip()

    match = _FILE_SIZE_TEXT_RE.search(tree.html or "")
    if match:
        return match.group(1).strip()
    return None

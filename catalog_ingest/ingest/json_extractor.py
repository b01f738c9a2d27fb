"""Extract data from JSON embedded in server-rendered pages."""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from selectolax.parser import HTMLParser

logger = logging.getLogger(__name__)

# Candidate payload paths, tried in order. The source has moved these around.
DETAIL_PAYLOAD_PATHS = (
    "props.pageProps.appData.data",
    "props.pageProps.app",
    "props.pageProps.initialData.app",
)

LISTING_PAYLOAD_PATHS = (
    "props.pageProps.apps",
    "props.pageProps.data.apps",
    "props.pageProps.initialData.apps",
)

TAXONOMY_PAYLOAD_PATHS = (
    "props.pageProps.categoriesData.data",
)


def _as_tree(html_or_tree) -> HTMLParser:
    if isinstance(html_or_tree, HTMLParser):
        return html_or_tree
    return HTMLParser(html_or_tree or "")


def extract_next_data(html) -> Optional[Dict[str, Any]]:
    """
    Extract __NEXT_DATA__ script tag content.

    Accepts raw HTML or an already parsed tree. Returns None when the tag is
    absent or does not contain a JSON object.
    """
    try:
        tree = _as_tree(html)
        node = tree.css_first("script#__NEXT_DATA__")
        if node is None:
            return None
        data = json.loads(node.text())
        if isinstance(data, dict):
            return data
    except (json.JSONDecodeError, AttributeError, TypeError) as e:
        logger.debug(f"Failed to extract __NEXT_DATA__: {e}")
    return None


def extract_json_ld(html) -> List[Any]:
    """
    Extract JSON-LD structured data from script tags.

    Returns list of JSON-LD objects found in the page.
    """
    results = []
    tree = _as_tree(html)
    for script in tree.css('script[type="application/ld+json"]'):
        try:
            results.append(json.loads(script.text()))
        except (json.JSONDecodeError, TypeError):
            continue
    return results


def get_path(data: Any, path: str) -> Any:
    """Walk a dotted path through nested dicts; missing keys give None."""
    current = data
    for key in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
        if current is None:
            return None
    return current


def is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, dict)) and not value)


def first_non_empty(data: Any, paths: Iterable[str]) -> Any:
    """Return the value at the first path that yields something non-empty."""
    for path in paths:
        value = get_path(data, path)
        if not is_empty(value):
            return value
    return None


def first_value(*values: Any) -> Any:
    """First argument that is not empty, or None."""
    for value in values:
        if not is_empty(value):
            return value
    return None

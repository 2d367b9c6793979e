"""Anti-forgery token extraction from login pages."""

import logging
import re
from typing import Optional, Pattern

import soupsieve as sv
from bs4 import BeautifulSoup
from soupsieve import SelectorSyntaxError

logger = logging.getLogger(__name__)


def _compile_css(selector: str) -> Optional[sv.SoupSieve]:
    try:
        return sv.compile(selector)
    except SelectorSyntaxError:
        return None


def _compile_regex(selector: str) -> Optional[Pattern[str]]:
    try:
        pattern = re.compile(selector, re.IGNORECASE | re.DOTALL)
    except re.error:
        return None
    return pattern if pattern.groups > 0 else None


def extract_csrf_token(html: str, selector: str) -> Optional[str]:
    """
    Extract a CSRF token from an HTML document.

    A valid CSS selector always wins: the first matching element yields its
    ``value`` attribute, then ``content``, then its text. A selector that is
    not valid CSS but compiles to a regular expression with a capture group
    returns the first group of the first match.
    """
    if not html or not selector:
        return None

    css = _compile_css(selector)
    if css is None:
        pattern = _compile_regex(selector)
        if pattern is None:
            logger.warning(f"Invalid CSRF selector {selector!r}")
            return None
        match = pattern.search(html)
        if not match:
            return None
        token = (match.group(1) or "").strip()
        return token or None

    element = css.select_one(BeautifulSoup(html, "html.parser"))
    if element is None:
        return None

    for attribute in ("value", "content"):
        value = element.get(attribute)
        if isinstance(value, str) and value.strip():
            return value.strip()

    text = element.get_text(strip=True)
    return text or None

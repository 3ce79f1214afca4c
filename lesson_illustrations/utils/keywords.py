"""
Helpers for handling AI-supplied image keywords.
"""
import re
from typing import Optional
from urllib.parse import quote

from lesson_illustrations.config import config


# Keywords that search better on the stock-photo source
NATURE_KEYWORDS = (
    'nature', 'wildlife', 'animal', 'forest', 'ocean',
    'mountain', 'landscape', 'flower', 'bird', 'tree',
    'sunset', 'sky',
)

QUOTE_PATTERN = re.compile(r'["\']+')
EDGE_QUOTE_PATTERN = re.compile(r'^["\'`]+|["\'`]+$')


def normalize_keyword(keywords: Optional[str]) -> str:
    """Cache key form of a keyword: lowercase and trimmed."""
    return (keywords or "").lower().strip()


def strip_quotes(keywords: Optional[str]) -> str:
    """Remove every quote character; models often wrap phrases in quotes."""
    return QUOTE_PATTERN.sub('', keywords or '').strip()


def strip_edge_quotes(text: Optional[str]) -> str:
    """Remove quotes surrounding a phrase, keeping inner apostrophes."""
    return EDGE_QUOTE_PATTERN.sub('', (text or '').strip()).strip()


def is_nature_topic(keywords: Optional[str]) -> bool:
    """True when the keyword names a generic visual subject (landscape, animal, ...)"""
    lower = (keywords or "").lower()
    return any(k in lower for k in NATURE_KEYWORDS)


def placeholder_url(keywords: Optional[str]) -> str:
    """Deterministic placeholder graphic labelled with the keyword."""
    text = (keywords or "")[:config.placeholder_text_length]
    return config.placeholder_template.format(text=quote(text, safe="!~*'()"))


def is_placeholder_url(url: Optional[str]) -> bool:
    if not url:
        return False
    prefix = config.placeholder_template.split('{text}', 1)[0]
    return url.startswith(prefix)

"""Text helpers for routing conversation text to a research collaborator."""
import re
from typing import List, Optional

from ..session.dedup import normalize_key

_URL_RE = re.compile(r'https?://[^\s<>"\'`]+', re.IGNORECASE)
_URL_TRAILING_RE = re.compile(r'[.,;:!?)\]}>\'"]+$')

_ABOUT_ME_RE = re.compile(
    r'\b(what do you know about me|tell me about (?:me|myself|my company)|who am i|about me)\b',
    re.IGNORECASE,
)

SEARCH_INTENT_WORDS = ('search', 'find', 'look up', 'research', 'latest', 'news', 'what is', 'who is')
# Matched at a word start with any ending, so "researching", "finding" and
# "searches" count while "unsearchable" does not.
_SEARCH_RE = re.compile(
    r'\b(' + '|'.join(re.escape(w) for w in SEARCH_INTENT_WORDS) + r')',
    re.IGNORECASE,
)

MIN_SELECTION_LENGTH = 3


def extract_urls(text: str) -> List[str]:
    """Find http(s) URLs, dropping trailing sentence punctuation, in order and de-duplicated."""
    urls = []
    for match in _URL_RE.findall(text or ''):
        url = _URL_TRAILING_RE.sub('', match)
        if url and url not in urls:
            urls.append(url)
    return urls


def is_about_me(text: str) -> bool:
    return bool(_ABOUT_ME_RE.search(text or ''))


def has_search_intent(text: str) -> bool:
    return bool(_SEARCH_RE.search(text or ''))


def pick_text(text: str, selection: Optional[str] = None) -> str:
    """A highlighted selection wins over the message when it is long enough to mean something."""
    if selection and len(selection.strip()) > MIN_SELECTION_LENGTH:
        return selection.strip()
    return (text or '').strip()


def trigger_key(text: str) -> str:
    urls = extract_urls(text)
    if urls:
        return 'url:' + ','.join(urls)
    return 'text:' + normalize_key(text, strip_punctuation=True)

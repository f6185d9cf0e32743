"""
Text helpers: reply fallback stripping, snippets, mime guessing, fuzzy matching
"""
import difflib
from typing import Optional

SNIPPET_LENGTH = 50

# Matches below this similarity ratio are not considered typo-close
FUZZY_RATIO_CUTOFF = 0.6

_MIME_TYPES = {
    'png': 'image/png',
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
    'gif': 'image/gif',
    'webp': 'image/webp',
    'svg': 'image/svg+xml',
}


def strip_reply_fallback(body: str) -> str:
    """Strip the quoted fallback from a reply body.

    Reply bodies look like ``"> <@user:server> quoted\\n> more\\n\\nActual reply"``.
    The original body is returned if stripping would leave nothing.
    """
    lines = body.split('\n')
    idx = 0
    while idx < len(lines) and lines[idx].startswith('> '):
        idx += 1
    if idx < len(lines) and lines[idx] == '':
        idx += 1
    remaining = '\n'.join(lines[idx:])
    return remaining if remaining else body


def snippet(body: Optional[str], length: int = SNIPPET_LENGTH) -> str:
    if not body:
        return ''
    if len(body) > length:
        return body[:length] + '...'
    return body


def mime_from_extension(ext: str) -> str:
    return _MIME_TYPES.get(ext.lower().lstrip('.'), 'application/octet-stream')


def fuzzy_score(query: str, text: str) -> Optional[float]:
    """Score how well ``query`` matches ``text``; higher is better.

    Substring hits score 70-120 (earlier and prefix hits higher), in-order
    subsequence hits 30-60, typo-close matches (difflib ratio) up to 30.

    Returns:
        The score, or None when ``text`` does not match at all
    """
    q = query.strip().lower()
    if not q:
        return 0.0
    t = (text or '').lower()
    if not t:
        return None

    pos = t.find(q)
    if pos >= 0:
        return 100.0 - min(pos, 50) + (20.0 if pos == 0 else 0.0)

    first = -1
    gaps = 0
    cursor = 0
    for ch in q:
        found = t.find(ch, cursor)
        if found < 0:
            break
        if first < 0:
            first = found
        elif found > cursor:
            gaps += found - cursor
        cursor = found + 1
    else:
        return max(30.0, 60.0 - gaps - first)

    ratio = difflib.SequenceMatcher(None, q, t).ratio()
    if ratio >= FUZZY_RATIO_CUTOFF:
        return ratio * 30.0
    return None

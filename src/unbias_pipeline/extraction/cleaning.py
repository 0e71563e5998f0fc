"""Text cleanup applied to locally extracted article bodies."""

from __future__ import annotations

import re

# Markers where article prose ends and navigation, teasers or footers begin.
_SENTINELS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(Mehr lesen über|Lesen Sie auch|Weitere Artikel|Lesen Sie mehr zum Thema)\b", re.I),
    re.compile(
        r"\b(Recommended|More from|Read more|Most read|Trending|You might also like"
        r"|Related articles?|More on this topic)\b",
        re.I,
    ),
    re.compile(r"\b(Kommentare|Abonnieren|Newsletter|Comments|Subscribe)\b", re.I),
    re.compile(
        r"\b(webpage capture|no other snapshots|short link|long link|html code|wiki code)\b",
        re.I,
    ),
)
_PRESERVE = re.compile(r"(Transparenzhinweis|Offenlegung)[\s\S]*$", re.I)
_FOOTER_REGION = 0.8


def trim_at_sentinels(text: str) -> str:
    """Cut at the earliest sentinel found in the last fifth of ``text``.

    Editorial disclosure notes at the end survive the cut.
    """

    if not text:
        return text

    footer_start = int(len(text) * _FOOTER_REGION)
    cut = len(text)
    for sentinel in _SENTINELS:
        for match in sentinel.finditer(text, footer_start):
            cut = min(cut, match.start())
            break

    trimmed = text[:cut].strip()
    preserved = _PRESERVE.search(text)
    if preserved and preserved.start() >= cut:
        trimmed = f"{trimmed}\n\n{preserved.group(0).strip()}"
    return trimmed


def normalize_title(title: str | None) -> str | None:
    """Collapse multi-line titles (headline + kicker) into one line."""

    if not title:
        return None
    collapsed = re.sub(r"\s*\n+\s*", ": ", title.strip())
    return re.sub(r"\s+", " ", collapsed) or None

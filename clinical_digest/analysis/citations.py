"""
Citation formatting for provenance records.

Supported styles: AMA (default), APA, Vancouver. A citation is built from
DocumentMetadata; when a required field (authors, title, journal, year) is
missing the citation is still produced, but marked incomplete and tagged with
an explicit marker instead of silently omitting the gap.
"""

import re
from typing import List, Tuple

from clinical_digest.models import Citation, DocumentMetadata

STYLES = ("AMA", "APA", "Vancouver")
INCOMPLETE_MARKER = "[incomplete citation]"

_STYLE_ALIASES = {
    "ama": "AMA",
    "apa": "APA",
    "vancouver": "Vancouver",
    "icmje": "Vancouver",
    "nlm": "Vancouver",
}


def normalize_style(style: str) -> str:
    key = str(style or "AMA").strip().lower()
    normalized = _STYLE_ALIASES.get(key)
    if not normalized:
        raise ValueError(f"Unsupported citation style '{style}'. Allowed: {', '.join(STYLES)}")
    return normalized


def split_author(name: str) -> Tuple[str, str]:
    """Return (surname, initials) for "Jane Q. Smith", "Smith, Jane" or "Smith JQ"."""
    name = re.sub(r"\s+", " ", name).strip()
    if "," in name:
        surname, given = [p.strip() for p in name.split(",", 1)]
    else:
        parts = name.split(" ")
        if len(parts) > 1 and re.fullmatch(r"[A-Z]{1,3}", parts[-1]):
            return " ".join(parts[:-1]), parts[-1]
        surname, given = parts[-1], " ".join(parts[:-1])
    initials = "".join(p[0].upper() for p in re.split(r"[\s.\-]+", given) if p)
    return surname, initials


def missing_fields(metadata: DocumentMetadata) -> List[str]:
    missing = []
    if not [a for a in metadata.authors if a.strip()]:
        missing.append("authors")
    if not metadata.title.strip():
        missing.append("title")
    if not (metadata.journal or "").strip():
        missing.append("journal")
    if metadata.year is None:
        missing.append("year")
    return missing


def _vancouver_authors(authors: List[str]) -> str:
    names = [f"{s} {i}".strip() for s, i in (split_author(a) for a in authors)]
    if len(names) > 6:
        names = names[:3] + ["et al"]
    return ", ".join(names)


def _apa_authors(authors: List[str]) -> str:
    names = []
    for a in authors:
        surname, initials = split_author(a)
        dotted = " ".join(f"{c}." for c in initials)
        names.append(f"{surname}, {dotted}".rstrip(", "))
    if len(names) > 20:
        names = names[:19] + ["...", names[-1]]
        return ", ".join(names)
    if len(names) == 1:
        return names[0]
    return ", ".join(names[:-1]) + ", & " + names[-1]


def _locator(metadata: DocumentMetadata) -> str:
    loc = ""
    if metadata.volume:
        loc += metadata.volume
        if metadata.issue:
            loc += f"({metadata.issue})"
    if metadata.pages:
        loc += f":{metadata.pages}" if loc else metadata.pages
    return loc


def _numbered(metadata: DocumentMetadata, authors: List[str], trailer: str) -> str:
    """Shared AMA/Vancouver layout: Authors. Title. Journal. Year;Vol(Issue):Pages."""
    parts = []
    if authors:
        parts.append(_vancouver_authors(authors) + ".")
    if metadata.title.strip():
        parts.append(metadata.title.strip().rstrip(".") + ".")
    tail = (metadata.journal or "").strip()
    if tail:
        tail += "."
    if metadata.year:
        tail += f" {metadata.year}"
        loc = _locator(metadata)
        tail += f";{loc}." if loc else "."
    if tail.strip():
        parts.append(tail.strip())
    if trailer:
        parts.append(trailer)
    return " ".join(parts)


def _ama(metadata: DocumentMetadata, authors: List[str]) -> str:
    return _numbered(metadata, authors, f"doi:{metadata.doi}" if metadata.doi else "")


def _vancouver(metadata: DocumentMetadata, authors: List[str]) -> str:
    return _numbered(metadata, authors, f"PMID: {metadata.pmid}." if metadata.pmid else "")


def _apa(metadata: DocumentMetadata, authors: List[str]) -> str:
    parts = []
    if authors:
        parts.append(_apa_authors(authors))
    parts.append(f"({metadata.year})." if metadata.year else "(n.d.).")
    if metadata.title.strip():
        parts.append(metadata.title.strip().rstrip(".") + ".")
    journal = (metadata.journal or "").strip()
    if journal:
        source = journal
        if metadata.volume:
            source += f", {metadata.volume}"
            if metadata.issue:
                source += f"({metadata.issue})"
        if metadata.pages:
            source += f", {metadata.pages}"
        parts.append(source + ".")
    if metadata.doi:
        parts.append(f"https://doi.org/{metadata.doi}")
    return " ".join(parts)


_FORMATTERS = {"AMA": _ama, "APA": _apa, "Vancouver": _vancouver}


def format_citation(metadata: DocumentMetadata, style: str = "AMA") -> Citation:
    """Format ``metadata`` in ``style``; incomplete metadata yields a marked citation."""
    style = normalize_style(style)
    authors = [a for a in metadata.authors if a.strip()]
    text = _FORMATTERS[style](metadata, authors)
    missing = missing_fields(metadata)
    if missing:
        text = f"{text} {INCOMPLETE_MARKER}".strip()
    return Citation(style=style, text=text, complete=not missing, missing_fields=tuple(missing))

"""
Clean free-form model output down to the data the caller asked for.

Models often wrap results in markdown fences and chatty sentences. ``clean``
first extracts the payload for the requested format, then strips a small set
of lead-in and sign-off phrases. It never raises.
"""

import re

_LEAD_IN = re.compile(
    r"^\s*(here\s+(is|are)|here's|below\s+(is|are)|sure|certainly|of\s+course)\b.*$",
    re.IGNORECASE,
)
_SIGN_OFF = re.compile(
    r"^\s*(feel\s+free|you\s+can\s+(use|adjust|modify)|let\s+me\s+know|i\s+hope|hope\s+(this|that)|"
    r"this\s+(data|dataset|output)\s+(can|should|includes|contains)|note:)\b.*$",
    re.IGNORECASE,
)
_INSERT = re.compile(r"INSERT\b[\s\S]*?;", re.IGNORECASE)


def _fenced(text: str, lang: str):
    match = re.search(rf"```{lang}\s*([\s\S]*?)\s*```", text, re.IGNORECASE)
    return match.group(1).strip() if match else None


def _slice(text: str, start: int, end: int):
    if start == -1 or end == -1 or end < start:
        return None
    return text[start:end + 1].strip()


def _extract_json(text: str):
    fenced = _fenced(text, "json")
    if fenced is not None:
        return fenced
    starts = [i for i in (text.find("["), text.find("{")) if i != -1]
    if not starts:
        return None
    start = min(starts)
    closer = "]" if text[start] == "[" else "}"
    return _slice(text, start, text.rfind(closer))


def _extract_sql(text: str):
    fenced = _fenced(text, "sql")
    if fenced is not None:
        return fenced
    statements = _INSERT.findall(text)
    return "\n".join(s.strip() for s in statements) if statements else None


def _extract_csv(text: str):
    fenced = _fenced(text, "csv")
    if fenced is not None:
        return fenced
    lines = text.strip().splitlines()
    non_blank = [i for i, line in enumerate(lines) if line.strip()]
    # Intro sentence without commas directly ahead of a comma-separated header
    if len(non_blank) >= 2 and "," not in lines[non_blank[0]] and "," in lines[non_blank[1]]:
        lines = lines[non_blank[1]:]
    while lines and "," not in lines[-1]:
        lines.pop()
    return "\n".join(lines).strip() or None


def _extract_markup(text: str, lang: str):
    fenced = _fenced(text, lang)
    if fenced is not None:
        return fenced
    return _slice(text, text.find("<"), text.rfind(">"))


def _strip_boilerplate(text: str) -> str:
    lines = text.strip().splitlines()
    while lines and (not lines[0].strip() or _LEAD_IN.match(lines[0])):
        lines.pop(0)
    while lines and (not lines[-1].strip() or _SIGN_OFF.match(lines[-1])):
        lines.pop()
    return "\n".join(lines).strip()


def clean(format: str, raw_text: str) -> str:
    """Return just the records from ``raw_text`` for the given output format."""
    if not isinstance(raw_text, str):
        return ""
    fallback = raw_text.strip()
    fmt = (format or "").lower()

    if fmt == "json":
        extracted = _extract_json(raw_text)
    elif fmt == "sql":
        extracted = _extract_sql(raw_text)
    elif fmt == "csv":
        extracted = _extract_csv(raw_text)
    elif fmt in ("xml", "html"):
        extracted = _extract_markup(raw_text, fmt)
    elif fmt == "txt":
        extracted = _fenced(raw_text, "txt")
    else:
        extracted = None

    cleaned = _strip_boilerplate(extracted if extracted is not None else raw_text)
    return cleaned or fallback

"""
Split board item titles like "50474 - Made with Tonic - Bags" into
{job, customer, name} for the dashboard cards and labels.
"""

from __future__ import annotations

import re
from typing import Any, Dict

NO_JOB = "NO JOB NUMBER"

_DELIM = re.compile(r"\s*[-–—]\s*")   # hyphen, en dash, em dash
_LEADING = re.compile(r"^\s*([A-Za-z0-9]+)")


def parse_item_title(raw: Any, fallback_id: Any = None) -> Dict[str, str]:
    fallback = str(fallback_id) if fallback_id else NO_JOB
    if not raw or not isinstance(raw, str):
        return {"job": fallback, "customer": "", "name": ""}

    title = " ".join(raw.split())
    m = _LEADING.match(title)
    if m:
        job = m.group(1)
        rest = title[m.end():]
    else:
        job = fallback
        rest = title
    parts = [p.strip() for p in _DELIM.split(rest) if p.strip()]

    customer, name = "", ""
    if len(parts) >= 2:
        customer = parts[0]
        name = " - ".join(parts[1:])
    elif parts:
        name = parts[0]
    return {"job": job, "customer": customer, "name": name}

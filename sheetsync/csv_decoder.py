"""
CSV payload decoding for published spreadsheet feeds.
"""

from __future__ import annotations

import csv
import io
from typing import Dict, List

from .errors import NotTabularData

Row = Dict[str, str]

HTML_MARKERS = ("<!doctype", "<html", "<body")


def looks_like_html(raw: str) -> bool:
    text = raw.strip().lower()
    return any(marker in text for marker in HTML_MARKERS)


def decode(raw: str) -> List[Row]:
    """Decode header-plus-rows CSV text into a list of rows.

    An empty payload is "no data yet" and yields ``[]``. A payload carrying
    HTML document markers raises ``NotTabularData``; proxies and login
    redirects answer with a page rather than an HTTP error.
    """
    if not raw or not raw.strip():
        return []
    if looks_like_html(raw):
        raise NotTabularData()

    text = raw.lstrip("\ufeff")
    reader = csv.reader(io.StringIO(text, newline=""))

    header: List[str] = []
    rows: List[Row] = []
    for record in reader:
        if not record or (len(record) == 1 and not record[0].strip()):
            continue
        if not header:
            header = record
            continue
        row: Row = {}
        for idx, name in enumerate(header):
            row[name] = record[idx] if idx < len(record) else ""
        rows.append(row)

    if not any(header):
        return []
    return rows

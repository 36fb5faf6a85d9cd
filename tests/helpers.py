from __future__ import annotations

import csv
import io
import time
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler
from typing import Dict, List, Sequence, Tuple, Union
from urllib.parse import urlsplit

from sheetsync.config import JobSpec, parse_slots
from sheetsync.errors import TransportFailure
from sheetsync.fetch import HttpResponse

Outcome = Union[HttpResponse, Exception, str]


class RouteTransport:
    """Answers requests by URL prefix; records every requested URL."""

    def __init__(self, routes: Dict[str, Outcome]):
        self.routes = routes
        self.calls: List[str] = []

    def __call__(self, url: str, timeout: float) -> HttpResponse:
        self.calls.append(url)
        for prefix, outcome in self.routes.items():
            if url.startswith(prefix):
                if isinstance(outcome, Exception):
                    raise outcome
                if isinstance(outcome, str):
                    return HttpResponse(status=200, body=outcome)
                return outcome
        raise TransportFailure(f"No route for {url}")


def encode_rows(header: Sequence[str], rows: List[Dict[str, str]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(header)
    for row in rows:
        writer.writerow([row[name] for name in header])
    return buffer.getvalue()


def make_job(
    job_id: str = "job-1",
    schedule: str = "14:00",
    key_column: str = "date",
    source_url: str = "https://feeds.test/source.csv",
    destination_url: str = "https://feeds.test/destination.csv",
    enabled: bool = True,
) -> JobSpec:
    return JobSpec(
        id=job_id,
        name=f"Job {job_id}",
        source_url=source_url,
        destination_url=destination_url,
        key_column=key_column,
        slots=parse_slots(schedule, "schedule") if schedule else (),
        enabled=enabled,
    )


@dataclass
class Reply:
    status: int = 200
    body: bytes = b""
    content_type: str = "text/csv; charset=utf-8"
    # Body goes out in this many pieces, ``pause`` seconds apart.
    pieces: int = 1
    pause: float = 0.0


@dataclass
class LocalServer:
    """Route table and request record for the ``local_server`` fixture."""

    base_url: str
    routes: Dict[str, Reply] = field(default_factory=dict)
    requests: List[Tuple[str, str, bytes]] = field(default_factory=list)

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"


def make_handler(state: LocalServer):
    class Handler(BaseHTTPRequestHandler):
        def _reply(self, method: str) -> None:
            length = int(self.headers.get("Content-Length") or 0)
            payload = self.rfile.read(length) if length else b""
            state.requests.append((method, self.path, payload))
            reply = state.routes.get(urlsplit(self.path).path, Reply(status=404))
            self.send_response(reply.status)
            self.send_header("Content-Type", reply.content_type)
            self.send_header("Content-Length", str(len(reply.body)))
            self.end_headers()
            if not reply.body:
                return
            step = max(1, -(-len(reply.body) // reply.pieces))
            for offset in range(0, len(reply.body), step):
                if offset and reply.pause:
                    time.sleep(reply.pause)
                self.wfile.write(reply.body[offset : offset + step])
                self.wfile.flush()

        def do_GET(self) -> None:
            self._reply("GET")

        def do_POST(self) -> None:
            self._reply("POST")

        def log_message(self, format: str, *args) -> None:
            pass

    return Handler

"""
Resilient feed fetching through an ordered chain of transport strategies.

Each strategy wraps the target URL its own way (a raw relay, a relay that
answers with a JSON envelope, or a plain direct request). The chain walks the
strategies in order, stops at the first payload that decodes, and keeps a
tagged record of every failed attempt.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from queue import Empty, Queue
from typing import Any, Callable, List, Optional, Sequence
from urllib import error as urllib_error
from urllib import request as urllib_request
from urllib.parse import quote, urlsplit, urlunsplit

from .csv_decoder import Row, decode
from .errors import AllStrategiesExhausted, AttemptFailure, ConfigError, TransportFailure

logger = logging.getLogger("sheetsync.fetch")

USER_AGENT = "sheetsync/1.0"
CACHE_BUST_PARAM = "_cb"
READ_CHUNK_BYTES = 64 * 1024
VALID_STRATEGY_KINDS = {"relay", "envelope", "direct"}


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: str


Transport = Callable[[str, float], HttpResponse]


@dataclass(frozen=True)
class StrategySettings:
    name: str
    kind: str
    timeout: float
    base_url: str = ""
    envelope_field: str = "contents"


DEFAULT_STRATEGY_SETTINGS: List[StrategySettings] = [
    StrategySettings(name="corsproxy", kind="relay", timeout=25, base_url="https://corsproxy.io/?url="),
    StrategySettings(
        name="allorigins",
        kind="envelope",
        timeout=25,
        base_url="https://api.allorigins.win/get?url=",
        envelope_field="contents",
    ),
    StrategySettings(
        name="codetabs",
        kind="relay",
        timeout=15,
        base_url="https://api.codetabs.com/v1/proxy?quest=",
    ),
    StrategySettings(name="direct", kind="direct", timeout=5),
]


@dataclass
class FetchResult:
    url: str
    text: str
    rows: List[Row]
    strategy: str
    failures: List[AttemptFailure] = field(default_factory=list)


def urllib_transport(url: str, timeout: float) -> HttpResponse:
    """GET ``url`` with urllib, reading the body in chunks against a deadline."""
    deadline = time.monotonic() + timeout
    req = urllib_request.Request(
        url=url,
        method="GET",
        headers={"User-Agent": USER_AGENT, "Accept": "text/csv, application/json, */*"},
    )
    try:
        with urllib_request.urlopen(req, timeout=max(0.1, timeout)) as response:
            chunks: List[bytes] = []
            while True:
                if time.monotonic() > deadline:
                    raise TransportFailure(f"Timed out after {timeout:g}s while reading {url}")
                chunk = response.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                chunks.append(chunk)
            charset = response.headers.get_content_charset() or "utf-8"
            return HttpResponse(status=response.status, body=b"".join(chunks).decode(charset, errors="replace"))
    except urllib_error.HTTPError as exc:
        return HttpResponse(status=exc.code, body="")
    except urllib_error.URLError as exc:
        if isinstance(exc.reason, TimeoutError):
            raise TransportFailure(f"Timed out after {timeout:g}s") from exc
        raise TransportFailure(f"Network error: {exc.reason}") from exc
    except TimeoutError as exc:
        raise TransportFailure(f"Timed out after {timeout:g}s") from exc
    except OSError as exc:
        raise TransportFailure(f"Network error: {exc}") from exc


def run_with_deadline(func: Callable[[], Any], timeout: float, label: str) -> Any:
    """Run ``func`` on a daemon thread and give up once ``timeout`` elapses.

    The caller is released at the deadline even if the underlying request is
    still blocked; the abandoned thread ends on its own socket timeout.
    """
    results: "Queue[tuple[bool, Any]]" = Queue(maxsize=1)

    def worker() -> None:
        try:
            results.put((True, func()))
        except Exception as exc:
            results.put((False, exc))

    thread = threading.Thread(target=worker, daemon=True, name=f"sheetsync-fetch-{label}")
    thread.start()
    try:
        ok, value = results.get(timeout=timeout)
    except Empty:
        raise TransportFailure(f"Timed out after {timeout:g}s") from None
    if ok:
        return value
    raise value


class CacheBuster:
    """Appends a strictly increasing query parameter to defeat relay caches."""

    def __init__(self, param: str = CACHE_BUST_PARAM, clock: Callable[[], float] = time.time):
        self.param = param
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def next_token(self) -> int:
        with self._lock:
            token = max(int(self._clock() * 1000), self._last + 1)
            self._last = token
            return token

    def apply(self, url: str) -> str:
        parts = urlsplit(url)
        extra = f"{self.param}={self.next_token()}"
        query = f"{parts.query}&{extra}" if parts.query else extra
        return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


class FetchStrategy:
    """Plain request to the target URL."""

    kind = "direct"

    def __init__(self, name: str, timeout: float, base_url: str = ""):
        self.name = name
        self.timeout = timeout
        self.base_url = base_url

    def request_url(self, url: str) -> str:
        return url

    def attempt(self, url: str, transport: Transport) -> str:
        response = transport(self.request_url(url), self.timeout)
        if not 200 <= response.status < 300:
            raise TransportFailure(f"HTTP {response.status}")
        return self.extract(response.body)

    def extract(self, body: str) -> str:
        return body

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, timeout={self.timeout:g})"


class DirectStrategy(FetchStrategy):
    kind = "direct"


class RelayStrategy(FetchStrategy):
    """Relay that takes the target as a query parameter and returns the raw body."""

    kind = "relay"

    def request_url(self, url: str) -> str:
        return self.base_url + quote(url, safe="")


class EnvelopeRelayStrategy(RelayStrategy):
    """Relay that wraps the upstream body in a JSON envelope."""

    kind = "envelope"

    def __init__(self, name: str, timeout: float, base_url: str, envelope_field: str = "contents"):
        super().__init__(name, timeout, base_url)
        self.envelope_field = envelope_field

    def extract(self, body: str) -> str:
        try:
            envelope = json.loads(body)
        except ValueError as exc:
            raise TransportFailure(f"Relay envelope is not valid JSON: {exc}") from exc
        if not isinstance(envelope, dict):
            raise TransportFailure("Relay envelope is not a JSON object")

        status = envelope.get("status")
        if isinstance(status, dict):
            http_code = status.get("http_code")
            if isinstance(http_code, int) and not 200 <= http_code < 300:
                raise TransportFailure(f"Upstream HTTP {http_code} (via relay)")

        contents = envelope.get(self.envelope_field)
        if not isinstance(contents, str):
            raise TransportFailure(f'Relay envelope has no "{self.envelope_field}" text field')
        return contents


def build_strategy(settings: StrategySettings) -> FetchStrategy:
    if settings.kind == "direct":
        return DirectStrategy(settings.name, settings.timeout)
    if settings.kind == "relay":
        return RelayStrategy(settings.name, settings.timeout, settings.base_url)
    if settings.kind == "envelope":
        return EnvelopeRelayStrategy(
            settings.name,
            settings.timeout,
            settings.base_url,
            envelope_field=settings.envelope_field,
        )
    raise ConfigError(f'Error: Unsupported fetch strategy kind "{settings.kind}".')


class FetchChain:
    def __init__(
        self,
        strategies: Sequence[FetchStrategy],
        transport: Optional[Transport] = None,
        cache_buster: Optional[CacheBuster] = None,
    ):
        self.strategies = list(strategies)
        self.transport: Transport = transport or urllib_transport
        self.cache_buster = cache_buster or CacheBuster()

    @classmethod
    def from_settings(
        cls,
        settings: Sequence[StrategySettings],
        transport: Optional[Transport] = None,
    ) -> "FetchChain":
        return cls([build_strategy(item) for item in settings], transport=transport)

    def fetch(self, url: str) -> FetchResult:
        failures: List[AttemptFailure] = []
        for strategy in self.strategies:
            target = self.cache_buster.apply(url)
            try:
                text = run_with_deadline(
                    lambda current=strategy, request_target=target: current.attempt(request_target, self.transport),
                    strategy.timeout,
                    strategy.name,
                )
                rows = decode(text)
            except TransportFailure as exc:
                failures.append(AttemptFailure(strategy.name, str(exc)))
                logger.warning("Fetch via %s failed for %s: %s", strategy.name, url, str(exc))
                continue
            except Exception as exc:
                failures.append(AttemptFailure(strategy.name, f"{type(exc).__name__}: {exc}"))
                logger.warning("Fetch via %s raised unexpectedly for %s: %s", strategy.name, url, str(exc))
                continue

            logger.info(
                "Fetched %s via %s (%s row(s), %s failed attempt(s))",
                url,
                strategy.name,
                len(rows),
                len(failures),
            )
            return FetchResult(url=url, text=text, rows=rows, strategy=strategy.name, failures=failures)

        raise AllStrategiesExhausted(url, failures)

#!/usr/bin/env python3
"""
Verification harness for a deployed OFAC sanctions-screening service.

License: Apache License 2.0

Checks (run in order, stop at the first failure unless --all):
- Liveness:  GET /ping answers with a 2xx status
- Freshness: GET /downloads?limit=1 returns a recent, non-zero timestamp
- Search:    GET /search returns the expected entity above a score threshold
             for a table of known names, and nothing high-scoring for names
             that should not match

With no arguments the production API is tested and an OAuth token is required
in OAUTH_TOKEN. Use -local to test a service running on this machine.
"""

from __future__ import annotations

import argparse
import datetime as dt
import json
import os
import re
import sys
import threading
import time
import uuid
from dataclasses import dataclass, field, asdict, replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd
import requests
from tqdm import tqdm

__version__ = "0.1.0"

DEFAULT_API_ADDRESS = "https://api.moov.io"
DEFAULT_LOCAL_ADDRESS = "http://localhost:8084"
DEFAULT_USER_AGENT = f"moov/ofactest:{__version__}"

DEFAULT_TIMEOUT = 10.0
DEFAULT_IDLE_TIMEOUT = 60.0

# Service clocks drift; a download stamped slightly ahead of us is not a bug.
CLOCK_SKEW = dt.timedelta(seconds=60)

# Go services encode an unset time.Time as year 1.
_ZERO_TIMESTAMPS = {
    dt.datetime(1, 1, 1, tzinfo=dt.timezone.utc),
    dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc),
}


@dataclass(frozen=True)
class EndpointConfig:
    base_path: str
    user_agent: str = DEFAULT_USER_AGENT
    oauth_token: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    max_download_age: Optional[dt.timedelta] = None


@dataclass(frozen=True)
class DownloadRecord:
    timestamp: Optional[dt.datetime]    # None when the service sent a zero value
    counts: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class SearchMatch:
    entity_id: str
    name: str
    score: float
    source: str                         # "SDN" or "alt"


@dataclass(frozen=True)
class SearchResult:
    matches: List[SearchMatch]
    refreshed_at: Optional[dt.datetime] = None


@dataclass(frozen=True)
class SearchCase:
    query: str
    expected_id: Optional[str]          # None: nothing should score >= min_score
    min_score: float


@dataclass(frozen=True)
class CheckOutcome:
    name: str
    ok: bool
    message: str
    status_code: Optional[int] = None
    kind: Optional[str] = None          # "transport", "protocol", "semantic", "cancelled"
    elapsed: float = 0.0


@dataclass(frozen=True)
class ApiResponse:
    status_code: int
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code <= 299

    def excerpt(self, limit: int = 200) -> str:
        text = self.body.decode("utf-8", errors="replace").strip()
        if len(text) > limit:
            text = text[: limit - 3] + "..."
        return text


# Known names with stable SDN entries, plus names that must not match anything.
# Replace with --cases for other deployments.
DEFAULT_SEARCH_CASES = [
    SearchCase(query="Nicolas Maduro Moros", expected_id="22790", min_score=0.90),
    SearchCase(query="AEROCARIBBEAN AIRLINES", expected_id="36", min_score=0.95),
    SearchCase(query="Zzyzx Quillfeather Bakery", expected_id=None, min_score=0.95),
]


class CheckCancelled(Exception):
    pass


class Context:
    """
    Cancellation token shared by one harness run.

    Cancelled explicitly via cancel() or implicitly once the optional
    deadline (seconds from creation) has passed.
    """

    def __init__(self, deadline: Optional[float] = None) -> None:
        self._cancelled = threading.Event()
        self._deadline = None if deadline is None else time.monotonic() + deadline

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def check(self) -> None:
        if self._cancelled.is_set():
            raise CheckCancelled("cancelled")
        if self.cancelled:
            raise CheckCancelled("deadline exceeded")


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _utc_now_iso() -> str:
    return _utc_now().replace(microsecond=0).isoformat()


def _log(msg: str) -> None:
    print(f"{_utc_now_iso()} {msg}", file=sys.stderr)


_FRACTION = re.compile(r"\.(\d+)")


def _parse_timestamp(value) -> Optional[dt.datetime]:
    """
    RFC 3339 (as written by Go, up to nanoseconds) or unix seconds -> aware UTC.
    Zero values come back as None.
    """
    if value is None or value == "" or value == 0:
        return None
    if isinstance(value, (int, float)):
        try:
            parsed = dt.datetime.fromtimestamp(value, dt.timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise ValueError(f"timestamp out of range: {value!r}") from e
    else:
        s = str(value).strip()
        if s.endswith("Z") or s.endswith("z"):
            s = s[:-1] + "+00:00"
        # fromisoformat() takes at most microseconds.
        s = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), s, count=1)
        parsed = dt.datetime.fromisoformat(s)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=dt.timezone.utc)
        parsed = parsed.astimezone(dt.timezone.utc)
    if parsed in _ZERO_TIMESTAMPS:
        return None
    return parsed


def _truncate_seconds(delta: dt.timedelta) -> dt.timedelta:
    return dt.timedelta(seconds=max(0, int(delta.total_seconds())))


def _describe(value) -> str:
    text = json.dumps(value)
    return text if len(text) <= 60 else text[:57] + "..."


def _search_matches(payload: Dict, key: str, name_key: str, source: str) -> List[SearchMatch]:
    items = payload.get(key) or []
    if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
        raise ValueError(f"{key}: expected a list of objects, got {_describe(items)}")

    matches = []
    for item in items:
        score = item.get("match")
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise ValueError(f"{key}: entity {item.get('entityID')!r} has non-numeric match {score!r}")
        matches.append(SearchMatch(
            entity_id=str(item.get("entityID", "")),
            name=str(item.get(name_key) or ""),
            score=float(score),
            source=source,
        ))
    return matches


class OFACClient:
    """
    Minimal client for the OFAC service API (ping, downloads, search).

    Transport failures surface as requests.RequestException. Status codes are
    left to the caller. Response bodies are always read and released.
    """

    def __init__(self, config: EndpointConfig, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.session = session or requests.Session()
        self._last_used: Optional[float] = None

    def close(self) -> None:
        self.session.close()

    def _url(self, path: str) -> str:
        return self.config.base_path.rstrip("/") + "/" + path.lstrip("/")

    def _headers(self) -> Dict[str, str]:
        headers = {
            "User-Agent": self.config.user_agent,
            "Accept": "application/json",
            "X-Request-ID": uuid.uuid4().hex,
        }
        if self.config.oauth_token:
            headers["Authorization"] = f"Bearer {self.config.oauth_token}"
        return headers

    def _timeout(self, ctx: Context) -> float:
        remaining = ctx.remaining()
        if remaining is None:
            return self.config.timeout
        if remaining <= 0:
            raise CheckCancelled("deadline exceeded")
        return min(self.config.timeout, remaining)

    def _drop_idle_connections(self) -> None:
        now = time.monotonic()
        if self._last_used is not None and now - self._last_used > self.config.idle_timeout:
            # Adapters rebuild their pools on the next request.
            for adapter in self.session.adapters.values():
                adapter.close()
        self._last_used = now

    def _get(self, ctx: Context, path: str, params: Optional[Dict] = None) -> ApiResponse:
        ctx.check()
        self._drop_idle_connections()
        try:
            with self.session.get(
                self._url(path),
                params=params,
                headers=self._headers(),
                timeout=self._timeout(ctx),
            ) as response:
                body = response.content
        except requests.Timeout:
            # A timeout cut short by the run deadline is a cancellation.
            ctx.check()
            raise
        return ApiResponse(status_code=response.status_code, body=body)

    def ping(self, ctx: Context) -> ApiResponse:
        return self._get(ctx, "/ping")

    def get_latest_downloads(self, ctx: Context, limit: int = 1) -> Tuple[List[DownloadRecord], ApiResponse]:
        resp = self._get(ctx, "/downloads", params={"limit": limit})
        if not resp.ok:
            return [], resp
        payload = json.loads(resp.body or b"[]") or []
        if not isinstance(payload, list) or not all(isinstance(item, dict) for item in payload):
            raise ValueError(f"expected a list of download objects, got {_describe(payload)}")
        records = []
        for item in payload:
            counts = {k: v for k, v in item.items() if isinstance(v, int) and not isinstance(v, bool)}
            records.append(DownloadRecord(timestamp=_parse_timestamp(item.get("timestamp")), counts=counts))
        return records, resp

    def search(self, ctx: Context, query: str, limit: int = 10) -> Tuple[SearchResult, ApiResponse]:
        resp = self._get(ctx, "/search", params={"q": query, "limit": limit})
        if not resp.ok:
            return SearchResult(matches=[]), resp
        payload = json.loads(resp.body or b"{}") or {}
        if not isinstance(payload, dict):
            raise ValueError(f"expected a search object, got {_describe(payload)}")

        matches = _search_matches(payload, "SDNs", "sdnName", "SDN") + \
            _search_matches(payload, "altNames", "alternateName", "alt")
        matches.sort(key=lambda m: m.score, reverse=True)

        return SearchResult(matches=matches, refreshed_at=_parse_timestamp(payload.get("refreshedAt"))), resp


def check_ping(ctx: Context, api) -> CheckOutcome:
    try:
        resp = api.ping(ctx)
    except requests.RequestException as e:
        return CheckOutcome("ping", False, f"ping failed: {e}", kind="transport")
    if not resp.ok:
        return CheckOutcome("ping", False, f"ping error (status code: {resp.status_code})",
                            status_code=resp.status_code, kind="protocol")
    return CheckOutcome("ping", True, "ping", status_code=resp.status_code)


def check_latest_download(
    ctx: Context,
    api,
    max_age: Optional[dt.timedelta] = None,
    now: Optional[dt.datetime] = None,
) -> CheckOutcome:
    """
    The service orders downloads most recent first; we only ask for one.
    """
    try:
        downloads, resp = api.get_latest_downloads(ctx, limit=1)
    except requests.RequestException as e:
        return CheckOutcome("downloads", False, f"download error: {e}", kind="transport")
    except ValueError as e:
        return CheckOutcome("downloads", False, f"download error: invalid response: {e}", kind="semantic")

    if not resp.ok:
        return CheckOutcome("downloads", False,
                            f"download error (status code: {resp.status_code}): {resp.excerpt()}",
                            status_code=resp.status_code, kind="protocol")
    if not downloads:
        return CheckOutcome("downloads", False, "empty downloads response",
                            status_code=resp.status_code, kind="semantic")

    when = downloads[0].timestamp
    if when is None or when in _ZERO_TIMESTAMPS:
        return CheckOutcome("downloads", False, "zero download timestamp",
                            status_code=resp.status_code, kind="semantic")

    now = now or _utc_now()
    if when - now > CLOCK_SKEW:
        return CheckOutcome("downloads", False, f"download timestamp {when.isoformat()} is in the future",
                            status_code=resp.status_code, kind="semantic")

    age = _truncate_seconds(now - when)
    if max_age is not None and age > max_age:
        return CheckOutcome("downloads", False, f"last download was {age} ago (max {max_age})",
                            status_code=resp.status_code, kind="semantic")

    return CheckOutcome("downloads", True, f"last download was: {age} ago", status_code=resp.status_code)


def _evaluate_case(case: SearchCase, result: SearchResult) -> Optional[str]:
    """
    Returns a failure reason for the case, or None when it holds.
    """
    if case.expected_id is None:
        for m in result.matches:
            if m.score >= case.min_score:
                return f"unexpected match {m.entity_id} (score {m.score:.2f}) at or above {case.min_score:.2f}"
        return None

    if not result.matches:
        return "no results"
    top = result.matches[0]
    if top.entity_id != case.expected_id:
        return f"expected entity {case.expected_id} but top match was {top.entity_id} (score {top.score:.2f})"
    if top.score < case.min_score:
        return f"entity {top.entity_id} scored {top.score:.2f} below threshold {case.min_score:.2f}"
    return None


def check_search(ctx: Context, api, cases: List[SearchCase] = DEFAULT_SEARCH_CASES) -> CheckOutcome:
    for case in tqdm(cases, desc="search", unit="case", leave=False, disable=not sys.stderr.isatty()):
        label = f'search "{case.query}"'
        try:
            result, resp = api.search(ctx, case.query)
        except requests.RequestException as e:
            return CheckOutcome("search", False, f"{label}: search failed: {e}", kind="transport")
        except ValueError as e:
            return CheckOutcome("search", False, f"{label}: invalid response: {e}", kind="semantic")

        if not resp.ok:
            return CheckOutcome("search", False,
                                f"{label}: search error (status code: {resp.status_code}): {resp.excerpt()}",
                                status_code=resp.status_code, kind="protocol")

        reason = _evaluate_case(case, result)
        if reason is not None:
            return CheckOutcome("search", False, f"{label}: {reason}",
                                status_code=resp.status_code, kind="semantic")

    return CheckOutcome("search", True, f"search queries passed ({len(cases)} cases)")


def load_search_cases(path: Path) -> List[SearchCase]:
    """
    CSV columns: query, expected_id, min_score. Empty expected_id means the
    query should not match anything at or above min_score.
    """
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    missing = {"query", "expected_id", "min_score"} - set(df.columns)
    if missing:
        raise ValueError(f"{path}: missing columns: {', '.join(sorted(missing))}")

    cases = []
    for row in df.itertuples(index=False):
        query = row.query.strip()
        if not query:
            continue
        try:
            min_score = float(row.min_score)
        except ValueError:
            raise ValueError(f"{path}: invalid min_score {row.min_score!r} for {query!r}") from None
        cases.append(SearchCase(query=query, expected_id=row.expected_id.strip() or None, min_score=min_score))

    if not cases:
        raise ValueError(f"{path}: no search cases")
    return cases


def run_checks(
    ctx: Context,
    api,
    config: EndpointConfig,
    *,
    cases: List[SearchCase] = DEFAULT_SEARCH_CASES,
    fail_fast: bool = True,
) -> List[CheckOutcome]:
    """
    Runs ping, downloads and search in that order, logging each outcome.
    Stops after the first failure unless fail_fast is False.
    """
    checks = [
        ("ping", lambda: check_ping(ctx, api)),
        ("downloads", lambda: check_latest_download(ctx, api, max_age=config.max_download_age)),
        ("search", lambda: check_search(ctx, api, cases)),
    ]

    outcomes: List[CheckOutcome] = []
    for name, run in checks:
        started = time.monotonic()
        try:
            ctx.check()
            outcome = run()
        except CheckCancelled as e:
            outcome = CheckOutcome(name, False, f"{name}: {e}", kind="cancelled")
        outcome = replace(outcome, elapsed=time.monotonic() - started)
        outcomes.append(outcome)

        if outcome.ok:
            _log(f"[SUCCESS] {outcome.message}")
        else:
            _log(f"[FAILURE] {outcome.message}")
            if fail_fast or outcome.kind == "cancelled":
                break
    return outcomes


def summarize(outcomes: List[CheckOutcome]) -> int:
    return 0 if outcomes and all(o.ok for o in outcomes) else 1


def resolve_base_path(address: str, local: bool) -> str:
    if local:
        # -local with an explicit -address uses that address as is.
        return address if address != DEFAULT_API_ADDRESS else DEFAULT_LOCAL_ADDRESS
    if address == DEFAULT_API_ADDRESS:
        return address + "/v1/ofac"
    return address


def build_config(args: argparse.Namespace, environ: Dict[str, str]) -> EndpointConfig:
    token = environ.get("OAUTH_TOKEN") or None
    if token is None and not args.local:
        raise ValueError("no OAuth token provided")
    return EndpointConfig(
        base_path=resolve_base_path(args.address, args.local),
        user_agent=args.user_agent,
        oauth_token=token,
        timeout=args.timeout,
        idle_timeout=args.idle_timeout,
        max_download_age=None if args.max_age is None else dt.timedelta(seconds=args.max_age),
    )


def main(argv: List[str], environ: Optional[Dict[str, str]] = None) -> int:
    p = argparse.ArgumentParser(
        prog="ofactest",
        description="Verify a deployed OFAC service: ping, data freshness and search results"
    )
    p.add_argument("-address", "--address", default=DEFAULT_API_ADDRESS, help="Moov API address")
    p.add_argument("-local", "--local", action="store_true", help="Use local HTTP addresses")
    p.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT, help="Per-request timeout in seconds")
    p.add_argument("--idle-timeout", type=float, default=DEFAULT_IDLE_TIMEOUT,
                   help="Drop pooled connections idle longer than this many seconds")
    p.add_argument("--max-age", type=float, default=None,
                   help="Fail when the last download is older than this many seconds")
    p.add_argument("--deadline", type=float, default=None, help="Overall deadline for the run in seconds")
    p.add_argument("--cases", default=None, help="CSV of search cases (query,expected_id,min_score)")
    p.add_argument("--all", action="store_true", help="Run every check instead of stopping at the first failure")
    p.add_argument("--json", action="store_true", help="Print outcomes as JSON on stdout")
    p.add_argument("--user-agent", default=DEFAULT_USER_AGENT)

    args = p.parse_args(argv)
    environ = os.environ if environ is None else environ

    _log(f"Starting moov/ofactest {__version__}")

    try:
        config = build_config(args, environ)
    except ValueError as e:
        _log(f"[FAILURE] {e}")
        return 1

    if args.cases:
        try:
            cases = load_search_cases(Path(args.cases))
        except (OSError, ValueError) as e:
            print(f"ERROR cases: {e}", file=sys.stderr)
            return 1
    else:
        cases = DEFAULT_SEARCH_CASES

    _log(f"[INFO] using {config.base_path} for address")

    ctx = Context(deadline=args.deadline)
    api = OFACClient(config)
    try:
        outcomes = run_checks(ctx, api, config, cases=cases, fail_fast=not args.all)
    except KeyboardInterrupt:
        ctx.cancel()
        _log("[FAILURE] interrupted")
        return 130
    finally:
        api.close()

    if args.json:
        print(json.dumps({
            "timestamp_utc": _utc_now_iso(),
            "address": config.base_path,
            "outcomes": [asdict(o) for o in outcomes],
        }, indent=2))

    return summarize(outcomes)


def cli() -> int:
    return main(sys.argv[1:])


if __name__ == "__main__":
    raise SystemExit(cli())

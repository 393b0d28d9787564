#!/usr/bin/env python3
"""
cachescope.py

varnishlog stream -> per-request transactions -> HIT/MISS verdict -> filters -> report.

Key behavior:
- Input is one varnishlog record per line: "<sid> <Tag> <c|b|-> <payload...>".
  Only client-side ("c") records are processed; backend duplicates are skipped.
- Transactions are correlated per session (ReqStart .. ReqEnd). All state of a
  transaction is released exactly at its ReqEnd, or earlier when the stream is
  malformed (superseded by a new ReqStart, or session closed while still open).
- VCL_call / VCL_return pairs are coupled per transaction; the outcome is kept
  as "vcl_<name>" (recv, hit, fetch, deliver, ...).
- Verdict is computed at ReqEnd from the recorded outcomes, never tracked as a
  running flag.
- Filters are compiled once from options. Every regex option accepts a leading
  "!" which negates it.

Noise control:
- Dropped/orphan records are counted, not logged one by one (DEBUG only).
- Counters are logged at stream end (stats).

Output:
- text (default): request line + response line per reported transaction,
  optional header dumps; colorized when stdout is a TTY (NO_COLOR respected).
- ndjson: one JSON object per reported transaction + a final summary object.

Usage:
  varnishlog | ./cachescope.py -
  ./cachescope.py varnish.log --only-misses --url-match '!/health'
  ./cachescope.py --varnishlog --only-slow 250 --show-resp-headers
  ./cachescope.py --config cachescope.conf --ndjson | jq
"""

from __future__ import annotations

import argparse
import io
import json
import logging
import os
import re
import signal
import subprocess
import sys
from dataclasses import MISSING, dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, Generator, Iterable, List, Optional, TextIO, Tuple

# -----------------------------------------------------------------------------
# Child-process registry (varnishlog feeder)
# -----------------------------------------------------------------------------
_CHILD_PROCS: List[subprocess.Popen] = []


def register_child_process(p: subprocess.Popen) -> None:
    """Register a subprocess.Popen created by this program."""
    _CHILD_PROCS.append(p)


def terminate_child_processes(timeout: float = 0.4) -> None:
    """Terminate only children we spawned. Never touch parent shells/terminals."""
    for p in list(_CHILD_PROCS):
        if p.poll() is None:
            p.terminate()
    for p in list(_CHILD_PROCS):
        try:
            p.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            p.kill()
            p.wait()
        _CHILD_PROCS.remove(p)


# =============================================================================
# Small utilities
# =============================================================================

CLIENT_DIRECTION = "c"

UNKNOWN_CLIENT = "unknown"   # SessionClose without a matching SessionOpen
NO_CLIENT = "-"              # ReqStart with neither observed nor tracked address

DEFAULT_SLOW_MS = 1000.0

_TRUE_WORDS = {"1", "true", "yes", "on", "y"}
_FALSE_WORDS = {"", "0", "false", "no", "off", "n", "none"}


class ConfigError(Exception):
    """Bad option value, bad regex or unreadable config file."""


def get_path(d: Dict[str, Any], path: str, default: Any = None) -> Any:
    cur: Any = d
    for part in path.split("."):
        if not isinstance(cur, dict):
            return default
        if part not in cur:
            return default
        cur = cur[part]
    return cur


def parse_level(s: Any, default: int) -> int:
    if not s:
        return default
    name = str(s).strip().upper()
    return getattr(logging, name, default)


def parse_bool(v: Any, name: str) -> bool:
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return v != 0
    s = str(v).strip().lower()
    if s in _TRUE_WORDS:
        return True
    if s in _FALSE_WORDS:
        return False
    raise ConfigError(f"{name}: expected a boolean, got {v!r}")


def to_float(s: Optional[str]) -> float:
    if s is None:
        return 0.0
    try:
        return float(s)
    except ValueError:
        return 0.0


def strip_crlf(s: str) -> str:
    return s.rstrip("\r\n")


def use_color() -> bool:
    if os.environ.get("NO_COLOR") is not None:
        return False
    return sys.stdout.isatty()


def colorize(s: str, code: str, enabled: bool) -> str:
    if not enabled:
        return s
    return f"\x1b[{code}m{s}\x1b[0m"


# =============================================================================
# “json-ish” loader (unquoted keys, comments, trailing commas)
# =============================================================================

_KEY_RE = re.compile(r'(?m)(^|\s|[{,])([A-Za-z_][A-Za-z0-9_-]*)(\s*):')
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_LINE_COMMENT_RE = re.compile(r"(?m)^\s*(//|#).*$")
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)


def _jsonish_to_json(text: str) -> str:
    text = _BLOCK_COMMENT_RE.sub("", text)
    text = _LINE_COMMENT_RE.sub("", text)

    def _repl(m: re.Match) -> str:
        prefix, key, suffix = m.group(1), m.group(2), m.group(3)
        return f'{prefix}"{key}"{suffix}:'

    text = _KEY_RE.sub(_repl, text)
    text = _TRAILING_COMMA_RE.sub(r"\1", text)
    return text


def load_config(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e
    try:
        cfg = json.loads(raw)
    except ValueError:
        norm = _jsonish_to_json(raw)
        try:
            cfg = json.loads(norm)
        except ValueError as e:
            raise ConfigError(f"Config parse error for {path}:\n{e}\n\nNormalized text:\n{norm}") from e
    if not isinstance(cfg, dict):
        raise ConfigError(f"Config {path}: top level must be an object")
    return cfg


# =============================================================================
# Options
# =============================================================================

OPTION_SECTIONS = ("filters", "display")
COLOR_CHOICES = ("auto", "always", "never")
OUTPUT_CHOICES = ("text", "ndjson")


@dataclass
class Options:
    show_req_headers: bool = False
    show_resp_headers: bool = False
    show_debug: bool = False
    client_match: str = ""
    req_headers_match: str = ""
    resp_headers_match: str = ""
    only_hits: bool = False
    only_misses: bool = False
    only_status: str = ""
    only_slow: Any = False  # False | True | <ms>
    url_match: str = ""
    color: str = "auto"
    output: str = "text"


_BOOL_OPTIONS = ("show_req_headers", "show_resp_headers", "show_debug", "only_hits", "only_misses")


def build_options(cfg: Dict[str, Any], overrides: Optional[Dict[str, Any]] = None) -> Options:
    """
    Merge config sections (filters, display) and CLI overrides into Options.
    Overrides with value None are "not given" and leave the config value alone.
    """
    merged: Dict[str, Any] = {}
    for section in OPTION_SECTIONS:
        sec = get_path(cfg, section, {}) or {}
        if not isinstance(sec, dict):
            raise ConfigError(f"{section}: expected an object")
        merged.update(sec)
    for k, v in (overrides or {}).items():
        if v is not None:
            merged[k] = v

    known = {f.name for f in fields(Options)}
    unknown = sorted(set(merged) - known)
    if unknown:
        raise ConfigError("Unknown option(s): " + ", ".join(unknown))

    for name in _BOOL_OPTIONS:
        if name in merged:
            merged[name] = parse_bool(merged[name], name)
    for name in ("client_match", "req_headers_match", "resp_headers_match", "only_status", "url_match"):
        if name in merged:
            merged[name] = "" if merged[name] is None else str(merged[name])

    opts = Options(**merged)
    if opts.color not in COLOR_CHOICES:
        raise ConfigError(f"color: expected one of {', '.join(COLOR_CHOICES)}, got {opts.color!r}")
    if opts.output not in OUTPUT_CHOICES:
        raise ConfigError(f"output: expected one of {', '.join(OUTPUT_CHOICES)}, got {opts.output!r}")
    # fail early on a bad threshold
    slow_threshold_ms(opts.only_slow)
    return opts


def slow_threshold_ms(v: Any) -> Optional[float]:
    """
    only_slow -> threshold in ms, or None when disabled.
    A bare truthy value (True, 1, "yes") means the 1000 ms default.
    """
    if v is None or v is False:
        return None
    if v is True:
        return DEFAULT_SLOW_MS
    if isinstance(v, (int, float)):
        ms = float(v)
    else:
        s = str(v).strip().lower()
        if s in _FALSE_WORDS:
            return None
        if s in _TRUE_WORDS:
            return DEFAULT_SLOW_MS
        try:
            ms = float(s)
        except ValueError as e:
            raise ConfigError(f"only_slow: expected a boolean or milliseconds, got {v!r}") from e
    if ms <= 0:
        return None
    if ms == 1:
        return DEFAULT_SLOW_MS
    return ms


# =============================================================================
# Transaction model
# =============================================================================

REQUEST = "request"
RESPONSE = "response"

HEADER_PREFIX = {
    REQUEST: "  > ",
    RESPONSE: "  < ",
}

CALL_PREFIX = "vcl_"


@dataclass
class Transaction:
    xid: str
    session: str = ""
    client: str = ""
    method: str = ""
    url: str = ""
    protocol: str = ""
    status: str = ""
    resp_protocol: str = ""
    hit: str = "0"  # xid of the cached object, "0" when none
    debug: str = ""
    req_headers: str = ""
    resp_headers: str = ""
    calls: Dict[str, str] = field(default_factory=dict)

    @property
    def hit_flag(self) -> bool:
        return self.hit not in ("", "0")

    def outcome(self, callback: str) -> str:
        return self.calls.get(CALL_PREFIX + callback, "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "xid": self.xid,
            "session": self.session,
            "client": self.client,
            "method": self.method,
            "url": self.url,
            "protocol": self.protocol,
            "status": self.status,
            "resp_protocol": self.resp_protocol,
            "hit": self.hit,
            "calls": dict(self.calls),
        }


_TXN_DEFAULTS: Dict[str, Any] = {f.name: f.default for f in fields(Transaction) if f.default is not MISSING}
_TXN_SETTABLE = frozenset(_TXN_DEFAULTS) - {"session"}


# =============================================================================
# Session tracker
# =============================================================================

class SessionTracker:
    def __init__(self) -> None:
        self._clients: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._clients)

    def open(self, session_id: str, client_address: str) -> None:
        self._clients[session_id] = client_address

    def client(self, session_id: str) -> str:
        return self._clients.get(session_id, "")

    def close(self, session_id: str) -> str:
        return self._clients.pop(session_id, "") or UNKNOWN_CLIENT


# =============================================================================
# Transaction store
# =============================================================================

class TransactionStore:
    """
    Owner of all transaction-scoped state: records, session -> current xid,
    and pending VCL call markers. end() is the only way state leaves the store.
    """

    def __init__(self, sessions: SessionTracker) -> None:
        self.sessions = sessions
        self._txns: Dict[str, Transaction] = {}
        self._current: Dict[str, str] = {}   # session_id -> xid
        self._pending: Dict[str, str] = {}   # xid -> callback name

    def __len__(self) -> int:
        return len(self._txns)

    def __contains__(self, xid: object) -> bool:
        return xid in self._txns

    def open_xids(self) -> List[str]:
        return list(self._txns)

    def begin(self, session_id: str, xid: str, observed_client_address: str) -> Transaction:
        client = observed_client_address or self.sessions.client(session_id) or NO_CLIENT
        txn = Transaction(xid=xid, session=session_id, client=client)
        self._txns[xid] = txn
        self._current[session_id] = xid
        self._pending.pop(xid, None)
        return txn

    def current(self, session_id: str) -> Optional[str]:
        return self._current.get(session_id)

    def lookup(self, xid: str) -> Optional[Transaction]:
        return self._txns.get(xid)

    def set(self, xid: str, attribute: str, value: str) -> bool:
        txn = self._txns.get(xid)
        if attribute.startswith(CALL_PREFIX):
            if txn is not None:
                txn.calls[attribute] = value
            return txn is not None
        if attribute not in _TXN_SETTABLE:
            raise AttributeError(f"Transaction has no settable attribute {attribute!r}")
        if txn is None:
            return False
        setattr(txn, attribute, value)
        return True

    def get(self, xid: str, attribute: str) -> Any:
        txn = self._txns.get(xid)
        if attribute.startswith(CALL_PREFIX):
            return txn.calls.get(attribute, "") if txn is not None else ""
        if attribute not in _TXN_DEFAULTS:
            raise AttributeError(f"Transaction has no attribute {attribute!r}")
        if txn is None:
            return _TXN_DEFAULTS[attribute]
        return getattr(txn, attribute)

    def append_header(self, xid: str, side: str, formatted_line: str) -> bool:
        txn = self._txns.get(xid)
        if txn is None:
            return False
        line = HEADER_PREFIX[side] + formatted_line + "\n"
        if side == REQUEST:
            txn.req_headers += line
        else:
            txn.resp_headers += line
        return True

    def append_debug(self, xid: str, text: str) -> bool:
        txn = self._txns.get(xid)
        if txn is None:
            return False
        txn.debug += text + "\n"
        return True

    def set_pending(self, xid: str, callback: str) -> bool:
        if xid not in self._txns:
            return False
        self._pending[xid] = callback
        return True

    def pop_pending(self, xid: str) -> Optional[str]:
        return self._pending.pop(xid, None)

    def detach(self, session_id: str) -> Optional[str]:
        """Forget the session -> xid link; the transaction itself waits for its ReqEnd."""
        return self._current.pop(session_id, None)

    def end(self, xid: str) -> Optional[Transaction]:
        self._pending.pop(xid, None)
        txn = self._txns.pop(xid, None)
        if txn is None:
            return None
        if self._current.get(txn.session) == xid:
            del self._current[txn.session]
        return txn


# =============================================================================
# VCL call/return coupling
# =============================================================================

class CallCoupler:
    def __init__(self, store: TransactionStore) -> None:
        self.store = store

    def call_start(self, xid: str, callback: str) -> bool:
        # last call wins when a return never showed up
        return self.store.set_pending(xid, callback)

    def call_return(self, xid: str, return_value: str) -> bool:
        callback = self.store.pop_pending(xid)
        if callback is None:
            return False
        return self.store.set(xid, CALL_PREFIX + callback, return_value)


# =============================================================================
# HIT/MISS classification
# =============================================================================

class Verdict(str, Enum):
    HIT = "HIT"
    MISS = "MISS"


def was_hit(txn: Transaction) -> bool:
    if txn.outcome("recv") != "lookup":
        return False
    # any trip to the backend disqualifies a hit
    if txn.outcome("fetch"):
        return False
    if txn.outcome("hit") != "deliver":
        return False
    # late error/restart overrides an otherwise valid hit
    return txn.outcome("deliver") == "deliver"


def classify(txn: Transaction) -> Verdict:
    return Verdict.HIT if was_hit(txn) else Verdict.MISS


# =============================================================================
# Report + filters
# =============================================================================

@dataclass
class ReqEndTiming:
    start: float = 0.0
    end: float = 0.0
    session_elapsed: float = 0.0
    backend: float = 0.0
    delivery: Optional[float] = None

    @classmethod
    def parse(cls, parts: List[str]) -> "ReqEndTiming":
        # parts: [start, end, session_elapsed, backend, delivery?]
        vals = parts + [""] * (4 - len(parts))
        return cls(
            start=to_float(vals[0]),
            end=to_float(vals[1]),
            session_elapsed=to_float(vals[2]),
            backend=to_float(vals[3]),
            delivery=to_float(vals[4]) if len(vals) > 4 and vals[4] else None,
        )

    @property
    def backend_ms(self) -> float:
        return self.backend * 1000.0

    @property
    def total_ms(self) -> float:
        return (self.end - self.start) * 1000.0


@dataclass
class TransactionReport:
    txn: Transaction
    verdict: Verdict
    timing: ReqEndTiming

    @property
    def backend_ms(self) -> float:
        return self.timing.backend_ms

    @property
    def total_ms(self) -> float:
        return self.timing.total_ms

    def to_dict(self, *, req_headers: bool = False, resp_headers: bool = False, debug: bool = False) -> Dict[str, Any]:
        out = self.txn.to_dict()
        out["verdict"] = self.verdict.value
        out["start"] = self.timing.start
        out["end"] = self.timing.end
        out["total_ms"] = round(self.total_ms, 3)
        out["backend_ms"] = round(self.backend_ms, 3)
        if req_headers:
            out["req_headers"] = self.txn.req_headers
        if resp_headers:
            out["resp_headers"] = self.txn.resp_headers
        if debug:
            out["debug"] = self.txn.debug
        return out


@dataclass(frozen=True)
class PatternFilter:
    regex: "re.Pattern[str]"
    negate: bool = False

    @classmethod
    def parse(cls, pattern: str, option: str) -> Optional["PatternFilter"]:
        if not pattern:
            return None
        negate = pattern.startswith("!")
        if negate:
            pattern = pattern[1:]
        try:
            regex = re.compile(pattern)
        except re.error as e:
            raise ConfigError(f"{option}: invalid regex {pattern!r}: {e}") from e
        return cls(regex=regex, negate=negate)

    def passes(self, text: str) -> bool:
        return (self.regex.search(text or "") is not None) != self.negate


@dataclass(frozen=True)
class FilterChain:
    client: Optional[PatternFilter] = None
    req_headers: Optional[PatternFilter] = None
    resp_headers: Optional[PatternFilter] = None
    url: Optional[PatternFilter] = None
    only_hits: bool = False
    only_misses: bool = False
    slow_ms: Optional[float] = None
    status: Optional[PatternFilter] = None

    @classmethod
    def from_options(cls, opts: Options) -> "FilterChain":
        return cls(
            client=PatternFilter.parse(opts.client_match, "client_match"),
            req_headers=PatternFilter.parse(opts.req_headers_match, "req_headers_match"),
            resp_headers=PatternFilter.parse(opts.resp_headers_match, "resp_headers_match"),
            url=PatternFilter.parse(opts.url_match, "url_match"),
            only_hits=opts.only_hits,
            only_misses=opts.only_misses,
            slow_ms=slow_threshold_ms(opts.only_slow),
            status=PatternFilter.parse(opts.only_status, "only_status"),
        )

    def rejects(self, report: TransactionReport) -> Optional[str]:
        """Name of the first failing filter, or None when the report passes."""
        txn = report.txn
        if self.client and not self.client.passes(txn.client):
            return "client_match"
        if self.req_headers and not self.req_headers.passes(txn.req_headers):
            return "req_headers_match"
        if self.resp_headers and not self.resp_headers.passes(txn.resp_headers):
            return "resp_headers_match"
        if self.url and not self.url.passes(txn.url):
            return "url_match"
        if self.only_hits and not txn.hit_flag:
            return "only_hits"
        if self.only_misses and txn.hit_flag:
            return "only_misses"
        if self.slow_ms is not None and report.backend_ms < self.slow_ms:
            return "only_slow"
        if self.status and not self.status.passes(txn.status):
            return "only_status"
        return None

    def passes(self, report: TransactionReport) -> bool:
        return self.rejects(report) is None


# =============================================================================
# Output sinks (presentation only)
# =============================================================================

class TextSink:
    def __init__(
        self,
        *,
        out: Optional[TextIO] = None,
        color: bool = False,
        show_req_headers: bool = False,
        show_resp_headers: bool = False,
        show_debug: bool = False,
        slow_ms: Optional[float] = None,
    ) -> None:
        self.out = out if out is not None else sys.stdout
        self.color = color
        self.show_req_headers = show_req_headers
        self.show_resp_headers = show_resp_headers
        self.show_debug = show_debug
        self.slow_ms = slow_ms if slow_ms is not None else DEFAULT_SLOW_MS

    def _write(self, s: str) -> None:
        self.out.write(s)

    def emit(self, report: TransactionReport) -> None:
        txn = report.txn
        verdict = report.verdict.value
        verdict = colorize(f"{verdict:<4}", "32" if report.verdict is Verdict.HIT else "31", self.color)
        lat = f"{report.total_ms:8.1f} ms"
        if report.total_ms >= self.slow_ms:
            lat = colorize(lat, "33", self.color)

        self._write(f"{txn.client:<15} {txn.method or '-':<7} {txn.url or '-'} {txn.protocol}\n")
        self._write(
            f"{'':<15} {verdict}    {txn.status or '-':<24} {lat}"
            f"  (backend {report.backend_ms:.1f} ms, xid {txn.xid})\n"
        )
        if self.show_req_headers and txn.req_headers:
            self._write(txn.req_headers)
        if self.show_resp_headers and txn.resp_headers:
            self._write(txn.resp_headers)
        if self.show_debug and txn.debug:
            for line in txn.debug.splitlines():
                self._write(f"  # {line}\n")
        self.out.flush()

    def summary(self, total: int, reported: int) -> None:
        self._write(f"\ntotal requests: {total} (reported: {reported})\n")
        self.out.flush()


class JsonSink:
    def __init__(
        self,
        *,
        out: Optional[TextIO] = None,
        show_req_headers: bool = False,
        show_resp_headers: bool = False,
        show_debug: bool = False,
    ) -> None:
        self.out = out if out is not None else sys.stdout
        self.show_req_headers = show_req_headers
        self.show_resp_headers = show_resp_headers
        self.show_debug = show_debug

    def _line(self, obj: Any) -> None:
        self.out.write(json.dumps(obj, ensure_ascii=False, separators=(",", ":")) + "\n")
        self.out.flush()

    def emit(self, report: TransactionReport) -> None:
        self._line(report.to_dict(
            req_headers=self.show_req_headers,
            resp_headers=self.show_resp_headers,
            debug=self.show_debug,
        ))

    def summary(self, total: int, reported: int) -> None:
        self._line({"summary": {"total_requests": total, "reported": reported}})


def build_sink(opts: Options, out: Optional[TextIO] = None) -> Any:
    if opts.output == "ndjson":
        return JsonSink(
            out=out,
            show_req_headers=opts.show_req_headers,
            show_resp_headers=opts.show_resp_headers,
            show_debug=opts.show_debug,
        )
    color = {"always": True, "never": False}.get(opts.color)
    if color is None:
        color = use_color()
    return TextSink(
        out=out,
        color=color,
        show_req_headers=opts.show_req_headers,
        show_resp_headers=opts.show_resp_headers,
        show_debug=opts.show_debug,
        slow_ms=slow_threshold_ms(opts.only_slow),
    )


# =============================================================================
# Reporter
# =============================================================================

class Reporter:
    def __init__(self, *, chain: FilterChain, sink: Any, log: logging.Logger) -> None:
        self.chain = chain
        self.sink = sink
        self.log = log
        self.total_requests = 0
        self.reported = 0

    def finish(self, txn: Transaction, timing: ReqEndTiming) -> Optional[TransactionReport]:
        # counts every terminal event, reported or not
        self.total_requests += 1
        report = TransactionReport(txn=txn, verdict=classify(txn), timing=timing)
        reason = self.chain.rejects(report)
        if reason is not None:
            self.log.debug("txn.filtered %s", {"xid": txn.xid, "filter": reason})
            return None
        self.reported += 1
        self.sink.emit(report)
        return report

    def close(self) -> None:
        self.sink.summary(self.total_requests, self.reported)


# =============================================================================
# Record parsing + dispatch
# =============================================================================

@dataclass(frozen=True)
class LogRecord:
    session: str
    tag: str
    direction: str
    payload: str = ""

    @classmethod
    def parse(cls, line: str) -> Optional["LogRecord"]:
        parts = strip_crlf(line).split(None, 3)
        if len(parts) < 3:
            return None
        payload = parts[3].strip() if len(parts) > 3 else ""
        return cls(session=parts[0], tag=parts[1], direction=parts[2], payload=payload)


def split_header(payload: str) -> Tuple[str, str]:
    name, sep, value = payload.partition(":")
    if not sep:
        name, _, value = payload.partition(" ")
    return name.strip(), value.strip()


# record tag -> Transaction attribute, for plain one-value records
_ATTR_TAGS = {
    "RxRequest": "method",
    "RxURL": "url",
    "RxProtocol": "protocol",
    "TxProtocol": "resp_protocol",
    "TxStatus": "status",
}


class Engine:
    """
    Correlation context: owns sessions, transactions, pending calls and counters.
    feed() one line at a time, finish() once at stream end.
    """

    def __init__(self, *, chain: FilterChain, sink: Any, log: Optional[logging.Logger] = None) -> None:
        self.log = log or logging.getLogger("cachescope")
        self.sessions = SessionTracker()
        self.store = TransactionStore(self.sessions)
        self.calls = CallCoupler(self.store)
        self.reporter = Reporter(chain=chain, sink=sink, log=self.log)

        self.lines = 0
        self.ignored = 0
        self.orphans = 0
        self.unmatched_returns = 0
        self.superseded = 0
        self.abandoned = 0

        self._handlers: Dict[str, Callable[[LogRecord], None]] = {
            "SessionOpen": self._on_session_open,
            "SessionClose": self._on_session_close,
            "ReqStart": self._on_req_start,
            "ReqEnd": self._on_req_end,
        }
        self._txn_handlers: Dict[str, Callable[[str, LogRecord], bool]] = {
            "RxHeader": self._on_req_header,
            "TxHeader": self._on_resp_header,
            "TxResponse": self._on_response_line,
            "Hit": self._on_hit,
            "VCL_call": self._on_vcl_call,
            "VCL_return": self._on_vcl_return,
            "Debug": self._on_debug,
        }
        for tag, attr in _ATTR_TAGS.items():
            self._txn_handlers[tag] = self._setter(attr)

    @property
    def total_requests(self) -> int:
        return self.reporter.total_requests

    def stats_snapshot(self) -> Dict[str, Any]:
        return {
            "lines": self.lines,
            "total_requests": self.reporter.total_requests,
            "reported": self.reporter.reported,
            "ignored": self.ignored,
            "orphans": self.orphans,
            "unmatched_returns": self.unmatched_returns,
            "superseded": self.superseded,
            "abandoned": self.abandoned,
            "open_sessions": len(self.sessions),
            "open_transactions": len(self.store),
        }

    # --- entry points ------------------------------------------------------

    def feed(self, line: str) -> None:
        self.lines += 1
        rec = LogRecord.parse(line)
        if rec is None or rec.direction != CLIENT_DIRECTION:
            self.ignored += 1
            return
        self.handle(rec)

    def handle(self, rec: LogRecord) -> None:
        h = self._handlers.get(rec.tag)
        if h is not None:
            h(rec)
            return
        th = self._txn_handlers.get(rec.tag)
        if th is None:
            self.ignored += 1
            return
        xid = self.store.current(rec.session)
        if xid is None or not th(xid, rec):
            self.orphans += 1
            self.log.debug("record.orphan %s", {"session": rec.session, "tag": rec.tag})

    def run(self, lines: Iterable[str]) -> Dict[str, Any]:
        for line in lines:
            self.feed(line)
        return self.finish()

    def finish(self) -> Dict[str, Any]:
        """Discard still-open transactions (never reported) and emit the summary."""
        for xid in self.store.open_xids():
            self.store.end(xid)
            self.abandoned += 1
        self.reporter.close()
        stats = self.stats_snapshot()
        self.log.info("stream.end %s", stats)
        return stats

    # --- session / lifecycle records ----------------------------------------

    def _on_session_open(self, rec: LogRecord) -> None:
        client = rec.payload.split(None, 1)[0] if rec.payload else ""
        self.sessions.open(rec.session, client)
        self.log.debug("session.open %s", {"session": rec.session, "client": client})

    def _on_session_close(self, rec: LogRecord) -> None:
        client = self.sessions.close(rec.session)
        xid = self.store.detach(rec.session)
        self.log.debug("session.close %s", {"session": rec.session, "client": client, "reason": rec.payload, "open_xid": xid})

    def _on_req_start(self, rec: LogRecord) -> None:
        parts = rec.payload.split()
        if not parts:
            self.ignored += 1
            return
        xid = parts[-1]
        observed = parts[0] if len(parts) > 1 else ""

        prev = self.store.current(rec.session)
        if prev is not None and prev != xid and self.store.end(prev) is not None:
            self.superseded += 1
            self.log.warning("txn.superseded %s", {"session": rec.session, "xid": prev, "by": xid})

        self.store.begin(rec.session, xid, observed)

    def _on_req_end(self, rec: LogRecord) -> None:
        parts = rec.payload.split()
        if not parts:
            self.ignored += 1
            return
        txn = self.store.end(parts[0])
        if txn is None:
            self.orphans += 1
            self.log.debug("record.orphan %s", {"session": rec.session, "tag": rec.tag, "xid": parts[0]})
            return
        self.reporter.finish(txn, ReqEndTiming.parse(parts[1:]))

    # --- transaction-scoped records -----------------------------------------

    def _setter(self, attr: str) -> Callable[[str, LogRecord], bool]:
        def _set(xid: str, rec: LogRecord) -> bool:
            return self.store.set(xid, attr, rec.payload)
        return _set

    def _on_req_header(self, xid: str, rec: LogRecord) -> bool:
        name, value = split_header(rec.payload)
        return self.store.append_header(xid, REQUEST, f"{name} = {value}")

    def _on_resp_header(self, xid: str, rec: LogRecord) -> bool:
        name, value = split_header(rec.payload)
        return self.store.append_header(xid, RESPONSE, f"{name} = {value}")

    def _on_response_line(self, xid: str, rec: LogRecord) -> bool:
        # TxStatus carries the code, TxResponse the reason phrase
        status = self.store.get(xid, "status")
        return self.store.set(xid, "status", f"{status} {rec.payload}".strip())

    def _on_hit(self, xid: str, rec: LogRecord) -> bool:
        obj = rec.payload.split(None, 1)[0] if rec.payload else "0"
        return self.store.set(xid, "hit", obj)

    def _on_vcl_call(self, xid: str, rec: LogRecord) -> bool:
        return self.calls.call_start(xid, rec.payload.split(None, 1)[0] if rec.payload else "")

    def _on_vcl_return(self, xid: str, rec: LogRecord) -> bool:
        if xid not in self.store:
            return False
        if not self.calls.call_return(xid, rec.payload):
            self.unmatched_returns += 1
            self.log.debug("vcl.unmatched_return %s", {"xid": xid, "value": rec.payload})
        return True

    def _on_debug(self, xid: str, rec: LogRecord) -> bool:
        return self.store.append_debug(xid, rec.payload)


# =============================================================================
# Input sources
# =============================================================================

def iter_file(path: str) -> Generator[str, None, None]:
    if path == "-":
        raw = getattr(sys.stdin, "buffer", None)
        if raw is None:
            yield from sys.stdin
            return
        stream = io.TextIOWrapper(raw, encoding="utf-8", errors="replace")
        try:
            yield from stream
        finally:
            stream.detach()
        return
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        yield from f


def iter_varnishlog(binary: str, extra_args: List[str], log: logging.Logger) -> Generator[str, None, None]:
    cmd = [binary, *extra_args]
    try:
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            text=True,
            errors="replace",
            bufsize=1,
        )
    except FileNotFoundError:
        raise RuntimeError(f"{binary} not found in PATH. Install varnish (varnishlog).")
    register_child_process(proc)
    log.info("input.varnishlog %s", {"cmd": " ".join(cmd), "pid": proc.pid})
    try:
        if proc.stdout is None:
            raise RuntimeError(f"{binary}: no output stream")
        yield from proc.stdout
    finally:
        terminate_child_processes()
    if proc.returncode not in (0, -signal.SIGTERM, None):
        log.warning("input.varnishlog_exit %s", {"code": proc.returncode})


# =============================================================================
# Logging setup from config (+ optional CLI override)
# =============================================================================

def _section(cfg: Dict[str, Any], key: str, name: Optional[str] = None) -> Dict[str, Any]:
    sec = get_path(cfg, key, {}) or {}
    if not isinstance(sec, dict):
        raise ConfigError(f"{name or key}: expected an object")
    return sec


def setup_logging_from_config(cfg: Dict[str, Any], cli_level: Optional[str]) -> logging.Logger:
    log = logging.getLogger("cachescope")
    log.propagate = False
    log.handlers.clear()
    log.setLevel(logging.DEBUG)  # handlers gate output

    lc = _section(cfg, "logging")
    console_cfg = _section(lc, "console", "logging.console")
    file_cfg = _section(lc, "file", "logging.file")

    console_level = parse_level(console_cfg.get("verbosity"), logging.WARNING)
    if cli_level:
        console_level = parse_level(cli_level, console_level)

    ch = logging.StreamHandler()
    ch.setLevel(console_level)
    ch.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    log.addHandler(ch)

    if bool(file_cfg.get("enabled", False)):
        path = str(file_cfg.get("path", "cachescope.log"))
        file_level = parse_level(file_cfg.get("verbosity"), logging.INFO)
        try:
            fh = logging.FileHandler(path, encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"logging.file.path: cannot open {path!r}: {e}") from e
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        log.addHandler(fh)

    return log


# =============================================================================
# CLI + entrypoint
# =============================================================================

def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Correlate varnishlog records into requests, classify HIT/MISS, filter and report.")
    p.add_argument("input", nargs="?", default=None, help="varnishlog text file, or '-' for stdin (default)")
    p.add_argument("--varnishlog", action="store_true", default=None, help="Spawn varnishlog and read its output live")
    p.add_argument("--varnishlog-bin", default=None, help="varnishlog binary (default: varnishlog)")
    p.add_argument("--varnishlog-arg", action="append", default=None, help="Extra argument for varnishlog (repeatable)")
    p.add_argument("--config", default=None, help="Path to JSON (or json-ish) config file")
    p.add_argument("--log-level", default=None, help="Optional console override: DEBUG/INFO/WARNING/ERROR")

    g = p.add_argument_group("filters", "Regex options accept a leading '!' to negate")
    g.add_argument("--client-match", default=None, help="Regex on client address")
    g.add_argument("--req-headers-match", default=None, help="Regex on request headers ('Name = value' lines)")
    g.add_argument("--resp-headers-match", default=None, help="Regex on response headers ('Name = value' lines)")
    g.add_argument("--url-match", default=None, help="Regex on request URL")
    g.add_argument("--only-status", default=None, help="Regex on response status, e.g. '5..'")
    g.add_argument("--only-hits", action="store_true", default=None, help="Only requests that hit a cached object")
    g.add_argument("--only-misses", action="store_true", default=None, help="Only requests without a cached object")
    g.add_argument("--only-slow", nargs="?", const=True, default=None, metavar="MS",
                   help="Only requests with backend time >= MS (bare flag: 1000)")

    d = p.add_argument_group("display")
    d.add_argument("--show-req-headers", action="store_true", default=None, help="Dump request headers")
    d.add_argument("--show-resp-headers", action="store_true", default=None, help="Dump response headers")
    d.add_argument("--show-debug", action="store_true", default=None, help="Dump Debug records")
    d.add_argument("--color", choices=COLOR_CHOICES, default=None, help="Colorize text output (default: auto)")
    d.add_argument("--ndjson", action="store_const", const="ndjson", dest="output", default=None,
                   help="Output NDJSON (one JSON object per line)")
    return p


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    names = [f.name for f in fields(Options)]
    return {name: getattr(args, name, None) for name in names}


def _reclaim_input(args: argparse.Namespace) -> None:
    # "--only-slow FILE": the optional MS value swallowed the positional input
    if args.input is not None or not isinstance(args.only_slow, str):
        return
    try:
        slow_threshold_ms(args.only_slow)
    except ConfigError:
        if os.path.exists(args.only_slow) or args.only_slow == "-":
            args.input, args.only_slow = args.only_slow, True


def main(argv: Optional[List[str]] = None) -> int:
    try:
        signal.signal(signal.SIGPIPE, signal.SIG_DFL)
    except (AttributeError, ValueError):
        pass

    args = build_argparser().parse_args(argv)
    _reclaim_input(args)

    try:
        cfg = load_config(args.config) if args.config else {}
        log = setup_logging_from_config(cfg, args.log_level)
        opts = build_options(cfg, _cli_overrides(args))
        chain = FilterChain.from_options(opts)
        inp = _section(cfg, "input")
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        return 2

    if opts.only_hits and opts.only_misses:
        log.warning("filters.conflict %s", {"only_hits": True, "only_misses": True})

    live = args.varnishlog if args.varnishlog is not None else bool(inp.get("varnishlog", False))
    try:
        if live:
            binary = args.varnishlog_bin or str(inp.get("varnishlog_bin", "varnishlog"))
            extra = args.varnishlog_arg if args.varnishlog_arg is not None else [str(x) for x in inp.get("varnishlog_args", [])]
            lines = iter_varnishlog(binary, extra, log)
        else:
            lines = iter_file(args.input or str(inp.get("path", "-")))

        engine = Engine(chain=chain, sink=build_sink(opts), log=log)
        try:
            for line in lines:
                engine.feed(line)
        except KeyboardInterrupt:
            log.info("stream.interrupted %s", {"lines": engine.lines})
        finally:
            lines.close()
        engine.finish()

    except (OSError, RuntimeError) as e:
        if isinstance(e, BrokenPipeError):
            return 0
        print(str(e), file=sys.stderr)
        return 2

    return 0


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import logging
from typing import Any, List, Tuple

import pytest

from cachescope import Engine, FilterChain, TransactionReport, build_options


class ListSink:
    def __init__(self) -> None:
        self.reports: List[TransactionReport] = []
        self.summaries: List[Tuple[int, int]] = []

    def emit(self, report: TransactionReport) -> None:
        self.reports.append(report)

    def summary(self, total: int, reported: int) -> None:
        self.summaries.append((total, reported))


HIT_LINES = """\
   12 SessionOpen  c 1.2.3.4 34567 :80
   12 ReqStart     c 1.2.3.4 34567 1001
   12 RxRequest    c GET
   12 RxURL        c /index.html
   12 RxProtocol   c HTTP/1.1
   12 RxHeader     c Host: www.example.com
   12 RxHeader     c User-Agent: curl/7.68.0
   12 VCL_call     c recv
   12 VCL_return   c lookup
   12 VCL_call     c hash
   12 VCL_return   c hash
   12 Hit          c 1001
   12 VCL_call     c hit
   12 VCL_return   c deliver
   12 VCL_call     c deliver
   12 VCL_return   c deliver
   12 TxProtocol   c HTTP/1.1
   12 TxStatus     c 200
   12 TxResponse   c OK
   12 TxHeader     c Content-Type: text/html; charset=utf-8
   12 TxHeader     c X-Varnish: 1002 1001
   12 ReqEnd       c 1001 1290000000.100 1290000000.150 0.000100 0.000200 0.000050
   12 SessionClose c EOF
"""


def txn_lines(
    xid: str = "2001",
    *,
    session: str = "7",
    url: str = "/api/x",
    status: str = "200",
    reason: str = "OK",
    calls: Tuple[Tuple[str, str], ...] = (("recv", "lookup"), ("miss", "fetch"), ("fetch", "deliver"), ("deliver", "deliver")),
    backend: str = "0.000200",
    hit: str = "",
) -> List[str]:
    out = [
        f"{session} ReqStart c 10.0.0.1 40000 {xid}",
        f"{session} RxRequest c GET",
        f"{session} RxURL c {url}",
        f"{session} RxProtocol c HTTP/1.1",
    ]
    if hit:
        out.append(f"{session} Hit c {hit}")
    for name, ret in calls:
        out.append(f"{session} VCL_call c {name}")
        out.append(f"{session} VCL_return c {ret}")
    out += [
        f"{session} TxStatus c {status}",
        f"{session} TxResponse c {reason}",
        f"{session} ReqEnd c {xid} 1290000000.000 1290000000.250 0.0001 {backend} 0.00001",
    ]
    return out


@pytest.fixture
def make_engine():
    def _make(**options: Any) -> Tuple[Engine, ListSink]:
        opts = build_options({}, options)
        sink = ListSink()
        engine = Engine(chain=FilterChain.from_options(opts), sink=sink, log=logging.getLogger("tests.cachescope"))
        return engine, sink
    return _make


@pytest.fixture
def hit_lines() -> List[str]:
    return HIT_LINES.splitlines()


@pytest.fixture
def build_txn():
    return txn_lines

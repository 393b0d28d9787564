"""
Config loading, option merging and the command line end to end.
"""

from __future__ import annotations

import io
import json
import logging

import pytest

import cachescope
from cachescope import (
    ConfigError,
    JsonSink,
    Options,
    TextSink,
    build_options,
    build_sink,
    load_config,
    main,
    setup_logging_from_config,
)


JSONISH = """
// display + filters for the health-check noise
{
  filters: {
    # skip health checks
    url_match: "!/health",
    only_slow: 250,
  },
  display: {
    show_resp_headers: "yes",
    color: "never",
  },
  logging: { console: { verbosity: "error" } },
}
"""


# =============================================================================
# Config + options
# =============================================================================

def test_load_jsonish_config(tmp_path):
    path = tmp_path / "cachescope.conf"
    path.write_text(JSONISH, encoding="utf-8")
    cfg = load_config(str(path))

    assert cfg["filters"] == {"url_match": "!/health", "only_slow": 250}
    assert cfg["display"]["color"] == "never"


def test_load_config_errors(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "missing.conf"))

    bad = tmp_path / "bad.conf"
    bad.write_text("{ filters: [ }", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(bad))

    top = tmp_path / "list.conf"
    top.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(top))


def test_build_options_defaults():
    assert build_options({}) == Options()


def test_cli_overrides_config():
    cfg = {"filters": {"url_match": "^/a", "only_hits": "true"}, "display": {"show_req_headers": 1}}
    opts = build_options(cfg, {"url_match": "!/b", "only_hits": None, "only_status": "5.."})

    assert opts.url_match == "!/b"
    assert opts.only_hits is True
    assert opts.show_req_headers is True
    assert opts.only_status == "5.."


@pytest.mark.parametrize("cfg", [
    {"filters": {"no_such_filter": 1}},
    {"filters": ["url_match"]},
    {"display": {"color": "sometimes"}},
    {"display": {"output": "xml"}},
    {"filters": {"only_hits": "maybe"}},
    {"filters": {"only_slow": "fast"}},
])
def test_build_options_rejects(cfg):
    with pytest.raises(ConfigError):
        build_options(cfg)


def test_build_sink_picks_output():
    assert isinstance(build_sink(Options(output="ndjson"), io.StringIO()), JsonSink)
    sink = build_sink(Options(color="always", only_slow=300), io.StringIO())
    assert isinstance(sink, TextSink)
    assert sink.color is True
    assert sink.slow_ms == 300.0


def test_logging_levels_from_config_and_cli():
    log = setup_logging_from_config({"logging": {"console": {"verbosity": "error"}}}, None)
    assert log.name == "cachescope"
    assert log.propagate is False
    assert log.handlers[0].level == logging.ERROR

    log = setup_logging_from_config({"logging": {"console": {"verbosity": "error"}}}, "debug")
    assert len(log.handlers) == 1
    assert log.handlers[0].level == logging.DEBUG


def test_logging_file_handler(tmp_path):
    path = tmp_path / "cachescope.log"
    log = setup_logging_from_config({"logging": {"file": {"enabled": True, "path": str(path)}}}, None)
    log.info("hello %s", {"x": 1})
    for h in log.handlers:
        h.flush()
    assert "hello {'x': 1}" in path.read_text(encoding="utf-8")
    for h in list(log.handlers):
        h.close()
        log.removeHandler(h)


# =============================================================================
# End to end
# =============================================================================

@pytest.fixture
def log_file(tmp_path, hit_lines, build_txn):
    lines = hit_lines + build_txn("2001", url="/health") + build_txn("2002", url="/api/x", status="502", reason="Bad Gateway")
    path = tmp_path / "varnish.log"
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def test_text_report(log_file, capsys):
    rc = main([str(log_file), "--color", "never", "--show-req-headers"])
    out = capsys.readouterr().out

    assert rc == 0
    assert "1.2.3.4" in out
    assert "/index.html HTTP/1.1" in out
    assert "HIT" in out and "MISS" in out
    assert "502 Bad Gateway" in out
    assert "  > Host = www.example.com" in out
    assert "\x1b[" not in out
    assert "total requests: 3 (reported: 3)" in out


def test_text_report_with_filters(log_file, capsys):
    rc = main([str(log_file), "--color", "never", "--url-match", "!/health", "--only-status", "5.."])
    out = capsys.readouterr().out

    assert rc == 0
    assert "/api/x" in out
    assert "/health" not in out
    assert "/index.html" not in out
    assert "total requests: 3 (reported: 1)" in out


def test_ndjson_report(log_file, capsys):
    rc = main([str(log_file), "--ndjson", "--only-hits", "--show-resp-headers"])
    rows = [json.loads(line) for line in capsys.readouterr().out.splitlines()]

    assert rc == 0
    assert len(rows) == 2
    assert rows[0]["xid"] == "1001"
    assert rows[0]["verdict"] == "HIT"
    assert rows[0]["calls"]["vcl_recv"] == "lookup"
    assert "X-Varnish = 1002 1001" in rows[0]["resp_headers"]
    assert "req_headers" not in rows[0]
    assert rows[1] == {"summary": {"total_requests": 3, "reported": 1}}


def test_config_file_drives_filters(log_file, tmp_path, capsys):
    conf = tmp_path / "cachescope.conf"
    conf.write_text('{ filters: { only_status: "^2" }, display: { color: "never", output: "ndjson" } }', encoding="utf-8")
    rc = main([str(log_file), "--config", str(conf)])
    rows = [json.loads(line) for line in capsys.readouterr().out.splitlines()]

    assert rc == 0
    assert [r.get("url") for r in rows[:-1]] == ["/index.html", "/health"]


def test_stdin_input(monkeypatch, hit_lines, capsys):
    monkeypatch.setattr(cachescope.sys, "stdin", io.StringIO("\n".join(hit_lines) + "\n"))
    rc = main(["-", "--ndjson"])
    rows = [json.loads(line) for line in capsys.readouterr().out.splitlines()]

    assert rc == 0
    assert rows[-1]["summary"]["total_requests"] == 1


def test_stdin_with_undecodable_bytes(monkeypatch, capsys):
    raw = b"7 ReqStart c 1.2.3.4 1 42\n7 RxHeader c User-Agent: caf\xe9\n7 ReqEnd c 42 1.0 1.1 0 0\n"
    monkeypatch.setattr(cachescope.sys, "stdin", io.TextIOWrapper(io.BytesIO(raw), encoding="utf-8"))
    rc = main(["-", "--ndjson", "--show-req-headers"])
    rows = [json.loads(line) for line in capsys.readouterr().out.splitlines()]

    assert rc == 0
    assert rows[0]["req_headers"] == "  > User-Agent = caf\ufffd\n"
    assert rows[-1]["summary"]["total_requests"] == 1


def test_only_slow_flag_before_input_file(log_file, capsys):
    rc = main(["--ndjson", "--only-slow", str(log_file)])
    rows = [json.loads(line) for line in capsys.readouterr().out.splitlines()]

    assert rc == 0
    assert rows == [{"summary": {"total_requests": 3, "reported": 0}}]


@pytest.mark.parametrize("conf", [
    '{ logging: "debug" }',
    '{ logging: { console: "debug" } }',
    '{ input: "varnish.log" }',
])
def test_non_object_sections_exit_2(log_file, tmp_path, conf, capsys):
    path = tmp_path / "cachescope.conf"
    path.write_text(conf, encoding="utf-8")
    rc = main([str(log_file), "--config", str(path)])
    assert rc == 2
    assert "expected an object" in capsys.readouterr().err


def test_unwritable_log_file_is_config_error(tmp_path):
    path = tmp_path / "no-such-dir" / "cachescope.log"
    with pytest.raises(ConfigError):
        setup_logging_from_config({"logging": {"file": {"enabled": True, "path": str(path)}}}, None)


def test_missing_input_file(tmp_path, capsys):
    rc = main([str(tmp_path / "nope.log")])
    assert rc == 2
    assert "nope.log" in capsys.readouterr().err


def test_bad_regex_exits_2(log_file, capsys):
    rc = main([str(log_file), "--url-match", "!(["])
    assert rc == 2
    assert "url_match" in capsys.readouterr().err


def test_missing_varnishlog_binary(capsys):
    rc = main(["--varnishlog", "--varnishlog-bin", "/nonexistent/varnishlog"])
    assert rc == 2
    assert "not found" in capsys.readouterr().err

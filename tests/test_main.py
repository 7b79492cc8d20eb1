import json
import logging
import os
import signal
import threading

import pytest

from fedora_devsetup import main as main_mod
from fedora_devsetup import verify as verify_mod
from fedora_devsetup.main import EXIT_FAILURES, EXIT_FATAL, EXIT_OK, _install_sigterm, build_parser, main


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    root = logging.getLogger()
    for h in getattr(root, "_devsetup_handlers", []):
        root.removeHandler(h)
        h.close()
    root._devsetup_handlers = []


def _write(path, text):
    path.write_text(text, encoding="utf-8")
    return str(path)


CHECKS_YAML = """
defaults:
  timeout_s: 30
requires: [bash]
checks:
  - {name: a, description: echo works, run: [echo, hi]}
  - {name: b, description: false fails, run: ["false"]}
  - {name: c, description: missing command, run: [missing-cmd]}
"""

# ---------------------------------------------------------------------------
# verify
# ---------------------------------------------------------------------------

def test_verify_writes_report_and_exits_zero(tmp_path):
    manifest = _write(tmp_path / "checks.yaml", CHECKS_YAML)
    out = tmp_path / "out"
    rc = main(["verify", "--manifest", manifest, "--out-dir", str(out)])
    assert rc == EXIT_OK

    report = json.loads((out / "report.json").read_text())
    assert {k: v["status"] for k, v in report.items()} == {"a": "pass", "b": "fail", "c": "fail"}
    assert (out / "logs" / "a.log").read_text() == "hi\n"
    assert "PASSED: 1/3 checks" in (out / "verify.log").read_text()

def test_verify_strict_mode_propagates_failures(tmp_path):
    manifest = _write(tmp_path / "checks.yaml", CHECKS_YAML)
    rc = main(["verify", "--manifest", manifest, "--out-dir", str(tmp_path / "out"), "--strict"])
    assert rc == EXIT_FAILURES

def test_verify_strict_all_pass(tmp_path):
    manifest = _write(
        tmp_path / "checks.yaml",
        "checks:\n  - {name: ok, description: always ok, run: ['true']}\n",
    )
    rc = main(["verify", "--manifest", manifest, "--out-dir", str(tmp_path / "out"), "--strict"])
    assert rc == EXIT_OK

def test_verify_missing_precondition_is_fatal(tmp_path):
    manifest = _write(
        tmp_path / "checks.yaml",
        "requires: [no-such-json-processor]\nchecks:\n  - {name: a, description: A, run: ['true']}\n",
    )
    out = tmp_path / "out"
    rc = main(["verify", "--manifest", manifest, "--out-dir", str(out)])
    assert rc == EXIT_FATAL
    assert not (out / "report.json").exists()

def test_verify_bad_manifest_is_fatal(tmp_path):
    manifest = _write(
        tmp_path / "checks.yaml",
        "checks:\n  - {name: a, description: A, run: ['true']}\n  - {name: a, description: B, run: ['true']}\n",
    )
    assert main(["verify", "--manifest", manifest, "--out-dir", str(tmp_path / "out")]) == EXIT_FATAL

def test_verify_list(tmp_path, capsys):
    manifest = _write(tmp_path / "checks.yaml", CHECKS_YAML)
    rc = main(["verify", "--manifest", manifest, "--list"])
    assert rc == EXIT_OK
    assert capsys.readouterr().out.splitlines() == ["a\techo works", "b\tfalse fails", "c\tmissing command"]

def test_verify_custom_report_path_yaml(tmp_path):
    manifest = _write(tmp_path / "checks.yaml", CHECKS_YAML)
    report = tmp_path / "custom" / "report.yaml"
    rc = main(["verify", "--manifest", manifest, "--out-dir", str(tmp_path / "out"), "--report", str(report)])
    assert rc == EXIT_OK
    assert "status: pass" in report.read_text()

# ---------------------------------------------------------------------------
# provision
# ---------------------------------------------------------------------------

def _provision_manifest(tmp_path):
    marker = tmp_path / "installed-marker"
    never = tmp_path / "never"
    return _write(
        tmp_path / "provision.yaml",
        f"""
steps:
  - name: marker
    phase: Test
    check: {{path: {marker}}}
    install:
      - [touch, {marker}]
  - name: broken
    phase: Test
    check: {{path: {never}}}
    install:
      - ["false"]
""",
    ), marker

def test_provision_best_effort_exit_zero(tmp_path):
    manifest, marker = _provision_manifest(tmp_path)
    state = tmp_path / "state.json"
    log = tmp_path / "setup.log"
    rc = main(["provision", "--manifest", manifest, "--log", str(log), "--state", str(state)])
    assert rc == EXIT_OK
    assert marker.exists()

    data = json.loads(state.read_text())
    assert data["steps"]["marker"]["status"] == "installed"
    assert data["steps"]["broken"]["status"] == "failed"
    assert data["log_path"] == str(log)
    assert "CMD touch" in log.read_text()

def test_provision_strict_mode(tmp_path):
    manifest, _ = _provision_manifest(tmp_path)
    rc = main(
        [
            "provision",
            "--manifest",
            manifest,
            "--log",
            str(tmp_path / "setup.log"),
            "--state",
            str(tmp_path / "state.json"),
            "--strict",
        ]
    )
    assert rc == EXIT_FAILURES

def test_provision_state_defaults_next_to_log(tmp_path):
    manifest, _ = _provision_manifest(tmp_path)
    log = tmp_path / "run-123.log"
    assert main(["provision", "--manifest", manifest, "--log", str(log), "--dry-run"]) == EXIT_OK
    assert (tmp_path / "run-123.json").exists()

def test_provision_dry_run_reports_would_install(tmp_path):
    manifest, marker = _provision_manifest(tmp_path)
    state = tmp_path / "state.json"
    rc = main(["provision", "--manifest", manifest, "--log", str(tmp_path / "s.log"), "--state", str(state), "--dry-run"])
    assert rc == EXIT_OK
    assert not marker.exists()
    data = json.loads(state.read_text())
    assert data["steps"]["marker"]["status"] == "would_install"
    assert data["summary"]["installed"] == 0
    assert data["summary"]["would_install"] == 2

def test_provision_unknown_start_at_is_fatal(tmp_path):
    manifest, _ = _provision_manifest(tmp_path)
    rc = main(["provision", "--manifest", manifest, "--log", str(tmp_path / "s.log"), "--start-at", "nope"])
    assert rc == EXIT_FATAL

def test_parser_requires_subcommand():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])

# ---------------------------------------------------------------------------
# CLI limits, manifest loading, fatal errors, signals
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "flag,value",
    [("--timeout", "0"), ("--timeout", "-5"), ("--timeout", "soon"), ("--max-output-bytes", "0"), ("--max-output-bytes", "1.5")],
)
def test_non_positive_limits_rejected(tmp_path, flag, value):
    manifest = _write(tmp_path / "checks.yaml", CHECKS_YAML)
    with pytest.raises(SystemExit) as exc:
        main(["verify", "--manifest", manifest, "--out-dir", str(tmp_path / "out"), flag, value])
    assert exc.value.code == 2
    assert not (tmp_path / "out" / "report.json").exists()

def test_limits_are_parsed_to_numbers():
    args = build_parser().parse_args(["verify", "--timeout", "2.5", "--max-output-bytes", "4096"])
    assert args.timeout == 2.5
    assert args.max_output_bytes == 4096

def test_verify_loads_manifest_once(tmp_path, monkeypatch):
    manifest = _write(tmp_path / "checks.yaml", CHECKS_YAML)
    loaded = []
    real_load = main_mod.load_manifest

    def counting_load(path):
        loaded.append(path)
        return real_load(path)

    monkeypatch.setattr(main_mod, "load_manifest", counting_load)
    assert main(["verify", "--manifest", manifest, "--out-dir", str(tmp_path / "out")]) == EXIT_OK
    assert loaded == [manifest]

def test_report_write_failure_is_fatal(tmp_path, monkeypatch):
    manifest = _write(tmp_path / "checks.yaml", CHECKS_YAML)
    real_save = verify_mod.save_report
    calls = []

    def failing_save(path, data):
        calls.append(path)
        if len(calls) > 1:
            raise OSError(28, "No space left on device")
        return real_save(path, data)

    monkeypatch.setattr(verify_mod, "save_report", failing_save)
    rc = main(["verify", "--manifest", manifest, "--out-dir", str(tmp_path / "out")])
    assert rc == EXIT_FATAL
    # the initial empty report is still a valid document
    assert json.loads((tmp_path / "out" / "report.json").read_text()) == {}

def test_sigterm_sets_cancel_token():
    cancel = threading.Event()
    previous = signal.getsignal(signal.SIGTERM)
    try:
        _install_sigterm(cancel)
        os.kill(os.getpid(), signal.SIGTERM)
        assert cancel.wait(2)
    finally:
        signal.signal(signal.SIGTERM, previous)

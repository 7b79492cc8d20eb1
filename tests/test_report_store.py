import json

import pytest

from fedora_devsetup.report_store import load_report, save_report


def test_missing_report_is_empty(tmp_path):
    assert load_report(str(tmp_path / "report.json")) == {}

def test_json_save_load(tmp_path):
    p = tmp_path / "sub" / "report.json"
    data = {"a": {"status": "pass"}, "b": {"status": "fail"}}
    save_report(str(p), data)
    assert json.loads(p.read_text()) == data
    assert load_report(str(p)) == data
    # keys keep insertion order on disk
    assert list(json.loads(p.read_text())) == ["a", "b"]

def test_yaml_save_load(tmp_path):
    p = tmp_path / "state.yaml"
    data = {"steps": {"x": {"status": "present"}}, "cancelled": False}
    save_report(str(p), data)
    assert load_report(str(p)) == data

def test_save_leaves_no_temp_files(tmp_path):
    p = tmp_path / "report.json"
    save_report(str(p), {"a": 1})
    save_report(str(p), {"a": 2})
    assert sorted(f.name for f in tmp_path.iterdir()) == ["report.json"]
    assert load_report(str(p)) == {"a": 2}

def test_non_mapping_report_rejected(tmp_path):
    p = tmp_path / "report.json"
    p.write_text("[1, 2]")
    with pytest.raises(ValueError):
        load_report(str(p))

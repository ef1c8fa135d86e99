"""CLI tests: commands run through cli.main() with a patched argv."""

import json
import sys
from pathlib import Path

import pytest

from plinth import cli
from plinth._internal.io.descriptor_file import load_descriptor


def _run_cli(args, monkeypatch):
    monkeypatch.setattr(sys, "argv", ["plinth"] + args)
    return cli.main()


def _write_json(path: Path, data: dict) -> None:
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")


@pytest.fixture
def workspace(tmp_path, monkeypatch, wiki_descriptor):
    monkeypatch.setenv("PLINTH_BUILD_POLL_INTERVAL", "0.001")
    monkeypatch.setenv("PLINTH_RETRY_WAIT_MIN", "0")
    monkeypatch.setenv("PLINTH_RETRY_WAIT_MAX", "0")
    descriptor = tmp_path / "wiki.json"
    _write_json(descriptor, wiki_descriptor)
    common = [
        "--state", str(tmp_path / "state.json"),
        "--platform-state", str(tmp_path / "platform.json"),
    ]
    return descriptor, common


def test_validate_ok(workspace, monkeypatch, capsys):
    descriptor, _ = workspace
    _run_cli(["validate", str(descriptor), "--var", "db_password=pw"], monkeypatch)
    out = capsys.readouterr().out
    assert "[OK] Validation complete" in out
    assert "Errors: 0" in out


def test_validate_failure_exits_1(workspace, monkeypatch, capsys):
    descriptor, _ = workspace
    with pytest.raises(SystemExit) as excinfo:
        _run_cli(["validate", str(descriptor)], monkeypatch)
    assert excinfo.value.code == 1
    captured = capsys.readouterr()
    assert "INVALID_DESCRIPTOR" in captured.err
    assert "[FAILED] Validation complete" in captured.out


def test_apply_then_outputs(workspace, monkeypatch, capsys):
    descriptor, common = workspace
    _run_cli(["apply", str(descriptor), "--var", "db_password=hunter2"] + common, monkeypatch)
    out = capsys.readouterr().out
    assert "[OK] Apply complete" in out
    assert 'db_password = "<sensitive>"' in out
    assert "hunter2" not in out

    _run_cli(["output", "image_repository"] + common, monkeypatch)
    assert capsys.readouterr().out.strip() == "us-central1-docker.pkg.dev/proj/wiki/wiki"

    _run_cli(["output"] + common, monkeypatch)
    values = json.loads(capsys.readouterr().out)
    assert values["db_password"] == "<sensitive>"

    _run_cli(["output", "db_password", "--show-sensitive"] + common, monkeypatch)
    assert capsys.readouterr().out.strip() == "hunter2"


def test_plan_after_apply_has_no_changes(workspace, monkeypatch, capsys):
    descriptor, common = workspace
    _run_cli(["apply", str(descriptor), "--var", "db_password=pw", "--quiet"] + common, monkeypatch)
    capsys.readouterr()

    _run_cli(["plan", str(descriptor), "--var", "db_password=pw"] + common, monkeypatch)
    out = capsys.readouterr().out
    assert "[OK] Plan complete" in out
    assert "Status: NO CHANGES" in out


def test_plan_json(workspace, monkeypatch, capsys):
    descriptor, common = workspace
    _run_cli(["plan", str(descriptor), "--var", "db_password=pw", "--json"] + common, monkeypatch)
    plan = json.loads(capsys.readouterr().out)
    assert plan["has_changes"] is True
    assert plan["summary"]["create"] == 4


def test_apply_json_report(workspace, monkeypatch, capsys):
    descriptor, common = workspace
    _run_cli(["apply", str(descriptor), "--var", "db_password=pw", "--json", "--max-workers", "1"] + common, monkeypatch)
    report = json.loads(capsys.readouterr().out)
    assert report["ok"] is True
    assert report["pending"] == []


def test_destroy(workspace, monkeypatch, capsys):
    descriptor, common = workspace
    _run_cli(["apply", str(descriptor), "--var", "db_password=pw", "--quiet"] + common, monkeypatch)
    capsys.readouterr()

    _run_cli(["destroy", str(descriptor), "--var", "db_password=pw"] + common, monkeypatch)
    out = capsys.readouterr().out
    assert "[OK] Destroy complete" in out
    assert "Deleted: 4" in out


def test_output_before_apply_fails(workspace, monkeypatch, capsys):
    _, common = workspace
    with pytest.raises(SystemExit) as excinfo:
        _run_cli(["output", "service_url"] + common, monkeypatch)
    assert excinfo.value.code == 1
    assert "not recorded" in capsys.readouterr().err


def test_bad_var_exits_1(workspace, monkeypatch, capsys):
    descriptor, common = workspace
    with pytest.raises(SystemExit) as excinfo:
        _run_cli(["apply", str(descriptor), "--var", "db_password"] + common, monkeypatch)
    assert excinfo.value.code == 1
    assert "KEY=VALUE" in capsys.readouterr().err


def test_template_wiki(tmp_path, monkeypatch, capsys):
    _run_cli(["template", "wiki"], monkeypatch)
    data = json.loads(capsys.readouterr().out)
    assert data["name"] == "wiki"

    out = tmp_path / "wiki.json"
    _run_cli(["template", "wiki", "--out", str(out), "--quiet"], monkeypatch)
    graph = load_descriptor(out, {"db_password": "pw"})
    assert "build.wiki_image" in graph


def test_no_command_prints_help(monkeypatch):
    with pytest.raises(SystemExit) as excinfo:
        _run_cli([], monkeypatch)
    assert excinfo.value.code == 1


def test_parse_vars_keeps_json_types():
    assert cli._parse_vars(["port=3000", "name=wiki", "debug=true"]) == {"port": 3000, "name": "wiki", "debug": True}


def test_numeric_version_override(tmp_path, monkeypatch, capsys):
    template = tmp_path / "wiki.json"
    _run_cli(["template", "wiki", "--out", str(template), "--quiet"], monkeypatch)

    _run_cli(
        ["validate", str(template), "--var", "db_password=pw", "--var", "wiki_version=3"],
        monkeypatch,
    )
    out = capsys.readouterr().out
    assert "[OK] Validation complete" in out

    graph = load_descriptor(template, {"db_password": "pw", "wiki_version": 3})
    build = graph.get("build.wiki_image").build
    assert build.tags == ("3", "latest")
    assert graph.get("compute_service.wiki").attributes["image"] in build.target_refs

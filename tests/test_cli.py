import json
from pathlib import Path

from typer.testing import CliRunner

from tailflow import featuregate
from tailflow.cli import app
from tailflow.manager import Manager
from tailflow.output import JsonLinesSink

runner = CliRunner()


def test_default_config_is_valid(tmp_path: Path):
    res = runner.invoke(app, ["default-config"])
    assert res.exit_code == 0
    p = tmp_path / "tailflow.yaml"
    p.write_text(res.output, encoding="utf-8")
    res = runner.invoke(app, ["validate", "--config", str(p)])
    assert res.exit_code == 0, res.output
    assert json.loads(res.output)["ok"] is True


def test_validate_reports_errors(tmp_path: Path):
    p = tmp_path / "bad.yaml"
    p.write_text("include: ['/logs/*.log']\nmax_concurrent_files: 1\n", encoding="utf-8")
    res = runner.invoke(app, ["validate", "--config", str(p)])
    assert res.exit_code == 1
    body = json.loads(res.output)
    assert body["ok"] is False
    assert "max_concurrent_files" in body["error"]


def test_gates_lists_file_deletion():
    res = runner.invoke(app, ["gates"])
    assert res.exit_code == 0
    ids = [g["id"] for g in json.loads(res.output)]
    assert "filelog.allowFileDeletion" in ids


def test_run_rejects_bad_options():
    res = runner.invoke(app, ["run", "--include", "/logs/*.log", "--start-at", "sideways"])
    assert res.exit_code == 1


async def _one_tick(self):
    try:
        await self.poll()
    finally:
        self.close()


def test_run_merges_config_file_with_options_and_writes_json_lines(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(featuregate, "_GLOBAL_REGISTRY", None)
    monkeypatch.setattr(Manager, "run", _one_tick)
    logs = tmp_path / "logs"
    logs.mkdir()
    src = logs / "app.log"
    src.write_bytes(b"hello\nworld\n")
    cfg = tmp_path / "tailflow.yaml"
    cfg.write_text(
        f"include: ['{logs}/*.log']\nstart_at: end\ninclude_file_path: true\n",
        encoding="utf-8",
    )
    out = tmp_path / "out" / "records.jsonl"

    res = runner.invoke(app, [
        "run", "--config", str(cfg),
        "--start-at", "beginning",
        "--delete-after-read",
        "--feature-gates", "+filelog.allowFileDeletion",
        "--output", str(out),
    ])
    assert res.exit_code == 0, res.output

    rows = [json.loads(line) for line in out.read_text(encoding="utf-8").splitlines()]
    assert [r["body"] for r in rows] == ["hello", "world"]
    assert all(set(r) == {"body", "attributes", "ts"} for r in rows)
    assert rows[0]["attributes"] == {"log.file.name": "app.log", "log.file.path": str(src)}
    assert isinstance(rows[0]["ts"], float)
    assert not src.exists()


def test_run_closes_output_when_config_is_rejected(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(featuregate, "_GLOBAL_REGISTRY", None)
    closed = []
    original = JsonLinesSink.close

    def tracked(self):
        closed.append(self.path)
        original(self)

    monkeypatch.setattr(JsonLinesSink, "close", tracked)
    out = tmp_path / "records.jsonl"
    # deletion without its feature gate fails at build time
    res = runner.invoke(app, [
        "run", "--include", str(tmp_path / "*.log"),
        "--start-at", "beginning", "--delete-after-read",
        "--output", str(out),
    ])
    assert res.exit_code == 1
    assert closed == [out]

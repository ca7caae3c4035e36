"""
Tests for the sqlgate command. The server itself is never started.
"""
import json

import pytest

from sqlgate import cli
from sqlgate.options import CONFIG_ENV


class TestInitConfig:

    def test_writes_config(self, tmp_path):
        path = tmp_path / "demo.json"
        assert cli.main(["--init-config", str(path)]) == 0
        data = json.loads(path.read_text())
        assert data["sources"][0]["source"] == "main"
        assert data["queryTimeout"] == "30s"

    def test_refuses_to_overwrite(self, tmp_path):
        path = tmp_path / "demo.json"
        path.write_text("{}")
        assert cli.main(["--init-config", str(path)]) == 1
        assert path.read_text() == "{}"


class TestServe:

    def test_config_required(self, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV, raising=False)
        with pytest.raises(SystemExit) as exc:
            cli.main([])
        assert exc.value.code == 2

    def test_bad_config(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"sources": [{"source": "main"}]}))
        assert cli.main(["--config", str(path)]) == 1

    def test_runs_server_from_env(self, tmp_path, fruit_db, monkeypatch):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "sources": [{"source": "fruit", "driver": "sqlite", "url": fruit_db}],
        }))
        monkeypatch.setenv(CONFIG_ENV, str(path))

        calls = []

        def fake_run(app, **kw):
            calls.append(kw)

        monkeypatch.setattr("uvicorn.run", fake_run)
        assert cli.main(["--port", "9999"]) == 0
        assert calls == [{"host": "127.0.0.1", "port": 9999, "log_level": "info",
                          "log_config": None}]

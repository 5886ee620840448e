"""
omega-init: state directory layout and MCP client registration.
"""

import json

from mcp_server_omega import cli


class TestInit:

    def test_creates_layout(self, tmp_path, capsys):
        cli.main(["--path", str(tmp_path), "--skip-config"])
        home = tmp_path / ".omega"
        assert (home / "ledger").is_dir()
        assert (home / "config" / "omega.yaml").exists()
        out = capsys.readouterr().out
        assert '"OMEGA_HOME"' in out

    def test_keeps_existing_config(self, tmp_path):
        config = tmp_path / ".omega" / "config" / "omega.yaml"
        config.parent.mkdir(parents=True)
        config.write_text("storage:\n  backend: postgres\n")
        cli.create_omega_home(tmp_path / ".omega")
        assert config.read_text() == "storage:\n  backend: postgres\n"

    def test_default_config_is_valid_yaml(self, tmp_path):
        import yaml

        data = yaml.safe_load(cli.DEFAULT_CONFIG)
        assert data["storage"]["backend"] == "sqlite"
        assert data["limits"]["max_query_limit"] == 200


class TestClientConfig:

    def test_update_preserves_other_servers(self, tmp_path):
        config_path = tmp_path / "mcp.json"
        config_path.write_text(json.dumps({"mcpServers": {"other": {"command": "x"}}}))
        cli.update_config_file(config_path, tmp_path / ".omega")

        config = json.loads(config_path.read_text())
        assert config["mcpServers"]["other"] == {"command": "x"}
        omega = config["mcpServers"]["omega"]
        assert omega["args"] == ["-m", "mcp_server_omega"]
        assert omega["env"]["OMEGA_HOME"] == str((tmp_path / ".omega").absolute())

    def test_update_replaces_corrupt_file(self, tmp_path):
        config_path = tmp_path / "nested" / "mcp.json"
        config_path.parent.mkdir()
        config_path.write_text("{not json")
        cli.update_config_file(config_path, tmp_path)
        assert "omega" in json.loads(config_path.read_text())["mcpServers"]

    def test_registers_all_clients(self, tmp_path, monkeypatch):
        targets = {name: tmp_path / f"{name}.json" for name in ("claude", "cursor", "windsurf")}
        monkeypatch.setattr(cli, "get_claude_config_path", lambda: targets["claude"])
        monkeypatch.setattr(cli, "get_cursor_config_path", lambda: targets["cursor"])
        monkeypatch.setattr(cli, "get_windsurf_config_path", lambda: targets["windsurf"])

        cli.main(["--path", str(tmp_path)])
        for path in targets.values():
            assert "omega" in json.loads(path.read_text())["mcpServers"]

    def test_claude_only(self, tmp_path, monkeypatch):
        claude = tmp_path / "claude.json"
        cursor = tmp_path / "cursor.json"
        monkeypatch.setattr(cli, "get_claude_config_path", lambda: claude)
        monkeypatch.setattr(cli, "get_cursor_config_path", lambda: cursor)

        cli.main(["--path", str(tmp_path), "--claude-only"])
        assert claude.exists()
        assert not cursor.exists()

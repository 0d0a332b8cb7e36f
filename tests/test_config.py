"""Tests for venesa_cli.config -- YAML config merged over defaults."""

import yaml

from venesa_cli.config import (
    DEFAULT_CONFIG,
    ensure_venesa_home,
    get_config_path,
    get_env_value,
    get_venesa_home,
    load_config,
    save_config,
)


class TestPaths:
    def test_venesa_home_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("VENESA_HOME", str(tmp_path / "vh"))
        assert get_venesa_home() == tmp_path / "vh"
        assert get_config_path() == tmp_path / "vh" / "config.yaml"

    def test_ensure_creates_logs(self, tmp_path, monkeypatch):
        monkeypatch.setenv("VENESA_HOME", str(tmp_path / "vh"))
        home = ensure_venesa_home()
        assert (home / "logs").is_dir()


class TestLoadConfig:
    def test_missing_file_returns_defaults(self, tmp_path):
        config = load_config(tmp_path / "nope.yaml")
        assert config == DEFAULT_CONFIG
        config["shell"]["dialect"] = "bash"
        assert DEFAULT_CONFIG["shell"]["dialect"] == "auto"

    def test_partial_file_deep_merged(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("shell:\n  command_timeout: 5\nuser:\n  name: Sam\n")
        config = load_config(path)
        assert config["shell"]["command_timeout"] == 5
        assert config["shell"]["dialect"] == "auto"
        assert config["user"]["name"] == "Sam"
        assert config["model"]["name"] == DEFAULT_CONFIG["model"]["name"]

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("shell: [unclosed\n")
        assert load_config(path) == DEFAULT_CONFIG

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")
        assert load_config(path) == DEFAULT_CONFIG

    def test_save_roundtrip(self, tmp_path):
        path = tmp_path / "sub" / "config.yaml"
        config = load_config(path)
        config["actions"]["search_max_depth"] = 2
        save_config(config, path)
        assert yaml.safe_load(path.read_text())["actions"]["search_max_depth"] == 2
        assert not path.with_suffix(".yaml.tmp").exists()
        assert load_config(path)["actions"]["search_max_depth"] == 2


class TestEnvValue:
    def test_process_env_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("VENESA_HOME", str(tmp_path))
        (tmp_path / ".env").write_text("SOME_SETTING=from-file\n")
        monkeypatch.setenv("SOME_SETTING", "from-env")
        assert get_env_value("SOME_SETTING") == "from-env"

    def test_falls_back_to_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("VENESA_HOME", str(tmp_path))
        monkeypatch.delenv("SOME_SETTING", raising=False)
        (tmp_path / ".env").write_text("SOME_SETTING='quoted'\n")
        assert get_env_value("SOME_SETTING") == "quoted"
        assert get_env_value("MISSING_SETTING", "d") == "d"

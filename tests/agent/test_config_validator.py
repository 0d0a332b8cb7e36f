"""Tests for agent.config_validator -- offline environment checks.

Run with:  python -m pytest tests/agent/test_config_validator.py -v
"""

import sys

import pytest

from agent.config_validator import (
    run_validation,
    validate_api_keys,
    validate_shell,
    validate_venesa_home,
)


@pytest.fixture()
def venesa_home(tmp_path, monkeypatch):
    home = tmp_path / ".venesa"
    monkeypatch.setenv("VENESA_HOME", str(home))
    for name in ("GEMINI_API_KEY", "GEMINI_API_KEY_1", "ELEVENLABS_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    return home


class TestApiKeys:
    def test_counts_keys_from_env_file(self, venesa_home):
        venesa_home.mkdir()
        (venesa_home / ".env").write_text("GEMINI_API_KEY=AIzaSyA-one\nGEMINI_API_KEY_2=AIzaSyB-two\n")
        results = {prefix: (is_set, msg) for prefix, is_set, msg in validate_api_keys()}
        assert results["GEMINI_API_KEY"] == (True, "gemini: 2 key(s) configured")
        assert results["ELEVENLABS_API_KEY"][0] is False
        assert "optional" in results["ELEVENLABS_API_KEY"][1]

    def test_process_environment(self, venesa_home, monkeypatch):
        monkeypatch.setenv("ELEVENLABS_API_KEY", "sk_abc")
        results = {prefix: is_set for prefix, is_set, _ in validate_api_keys()}
        assert results["ELEVENLABS_API_KEY"] is True


class TestHome:
    def test_missing(self, venesa_home):
        ok, msg = validate_venesa_home()
        assert not ok
        assert "does not exist" in msg

    def test_defaults_without_config(self, venesa_home):
        venesa_home.mkdir()
        ok, msg = validate_venesa_home()
        assert ok and "using defaults" in msg

    def test_with_config(self, venesa_home):
        venesa_home.mkdir()
        (venesa_home / "config.yaml").write_text("user:\n  name: Sam\n")
        assert validate_venesa_home() == (True, "Valid with config.yaml")


class TestShell:
    def test_unknown_dialect(self):
        ok, msg = validate_shell("fish")
        assert not ok
        assert "Unknown shell dialect" in msg

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell")
    def test_bash_found(self):
        ok, msg = validate_shell("bash")
        assert ok
        assert msg.startswith("bash: ")


class TestRunValidation:
    def test_missing_generation_key_is_error(self, venesa_home):
        results = run_validation()
        assert not results["is_valid"]
        assert any("GEMINI_API_KEY" in e for e in results["errors"])
        assert any("VENESA_HOME" in w for w in results["warnings"])
        assert results["model"] == "gemini-2.5-flash"

    def test_valid(self, venesa_home, monkeypatch):
        venesa_home.mkdir()
        monkeypatch.setenv("GEMINI_API_KEY", "AIzaSyA-one")
        results = run_validation()
        assert results["errors"] == []
        assert results["is_valid"]

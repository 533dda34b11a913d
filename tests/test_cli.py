"""Tests for the musicbot-registry command line."""

from __future__ import annotations

import json

import pytest

from musicbot_registry import cli
from musicbot_registry.registry import Instance, ValidationError


class StubClient:
    instances: list = []
    result = True
    error = None

    def __init__(self, host, port):
        self.host = host
        self.port = port

    def list_instances(self):
        return list(self.instances)

    def register(self, domain, port):
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def stub_client(monkeypatch):
    monkeypatch.setattr(StubClient, "instances", [])
    monkeypatch.setattr(StubClient, "result", True)
    monkeypatch.setattr(StubClient, "error", None)
    monkeypatch.setattr(cli, "RegistryClient", StubClient)
    return StubClient


def test_no_command_exits(capsys):
    with pytest.raises(SystemExit) as exc:
        cli.main([])
    assert exc.value.code == 1


def test_list_text(stub_client, capsys):
    stub_client.instances = [Instance("bot.example.com", 42946, 1604485839431)]
    cli.main(["list"])
    out = capsys.readouterr().out
    assert "bot.example.com:42946" in out
    assert "updated=1604485839431" in out


def test_list_empty(stub_client, capsys):
    cli.main(["list"])
    assert "(no instances)" in capsys.readouterr().out


def test_list_json(stub_client, capsys):
    stub_client.instances = [Instance("bot", 80, 5)]
    cli.main(["list", "--format", "json"])
    assert json.loads(capsys.readouterr().out) == [
        {"domain": "bot", "port": 80, "updated": 5},
    ]


def test_register_ok(stub_client, capsys):
    cli.main(["register", "bot.example.com", "42946"])
    assert "Registered bot.example.com:42946" in capsys.readouterr().out


def test_register_rejected(stub_client, capsys):
    stub_client.error = ValidationError("port must be between 0 and 65535")
    with pytest.raises(SystemExit) as exc:
        cli.main(["register", "bot", "70000"])
    assert exc.value.code == 1
    assert "port must be" in capsys.readouterr().err


def test_register_unreachable(stub_client, capsys):
    stub_client.result = False
    with pytest.raises(SystemExit) as exc:
        cli.main(["register", "bot", "80", "--registry-port", "9"])
    assert exc.value.code == 1
    assert "could not reach" in capsys.readouterr().err


def test_serve_invalid_config_exits(capsys):
    with pytest.raises(SystemExit) as exc:
        cli.main(["serve", "--ttl-seconds", "0"])
    assert exc.value.code == 1
    assert "ttl_seconds" in capsys.readouterr().err


def test_serve_missing_config_file_exits(tmp_path, capsys):
    with pytest.raises(SystemExit) as exc:
        cli.main(["serve", "--config", str(tmp_path / "missing.yaml")])
    assert exc.value.code == 1


def test_serve_builds_server(monkeypatch, tmp_path, capsys):
    calls = {}

    class StubServer:
        def serve_forever(self):
            raise KeyboardInterrupt

        def server_close(self):
            calls["closed"] = True

    def fake_create(registry, host, port, trust_forwarded_for):
        calls["args"] = (host, port, trust_forwarded_for)
        calls["ttl"] = registry.ttl_seconds
        return StubServer()

    monkeypatch.setattr(cli, "create_registry_server", fake_create)
    monkeypatch.setattr(cli.logging, "basicConfig", lambda **kwargs: None)

    path = tmp_path / "registry.yaml"
    path.write_text("port: 9000\nttl_seconds: 300\n")
    cli.main([
        "serve", "--config", str(path), "--host", "127.0.0.1",
        "--no-trust-forwarded-for",
    ])
    assert calls["args"] == ("127.0.0.1", 9000, False)
    assert calls["ttl"] == 300
    assert calls["closed"] is True
    assert "Shutting down" in capsys.readouterr().err


@pytest.mark.parametrize("text,message", [
    ("port: [\n", "invalid YAML"),
    ("port: abc\n", "port must be an integer"),
    ("log_level: verbose\n", "log_level must be one of"),
])
def test_serve_bad_config_file_exits(tmp_path, capsys, text, message):
    path = tmp_path / "registry.yaml"
    path.write_text(text)
    with pytest.raises(SystemExit) as exc:
        cli.main(["serve", "--config", str(path)])
    assert exc.value.code == 1
    assert message in capsys.readouterr().err


def test_serve_lowercase_log_level(monkeypatch, tmp_path):
    seen = {}

    class StubServer:
        def serve_forever(self):
            raise KeyboardInterrupt

        def server_close(self):
            pass

    monkeypatch.setattr(cli, "create_registry_server", lambda *a, **kw: StubServer())
    monkeypatch.setattr(cli.logging, "basicConfig", lambda **kwargs: seen.update(kwargs))

    path = tmp_path / "registry.yaml"
    path.write_text("log_level: debug\n")
    cli.main(["serve", "--config", str(path)])
    assert seen["level"] == "DEBUG"

    cli.main(["serve", "--log-level", "warning"])
    assert seen["level"] == "WARNING"

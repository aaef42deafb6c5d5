import logging
import sys

import pytest
import requests

from worldkit.__main__ import Worldkit
from worldkit.cli.main import main

CONFIG = {
    "defaults": {"port_range": [42000, 42099]},
    "services": {"greeter": {"kind": "static", "body": "hello"}},
    "environments": {
        "greeting": [{"name": "web", "type": "service", "location": "greeter"}],
        "empty": [],
    },
}


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_validate(write_config) -> None:
    path = write_config(CONFIG)

    result = Worldkit().validate()

    assert result == f"{path}: valid (2 environment(s))"


def test_validate_explicit_path(tmp_path, write_config) -> None:
    write_config({"environments": {"broken": [{"name": "a", "type": "queue", "location": "x"}]}})
    other = tmp_path / "other.yaml"
    other.write_text("environments:\n  ok: []\n")

    assert Worldkit().validate(config=str(other)).endswith("valid (1 environment(s))")


def test_environments(write_config) -> None:
    write_config(CONFIG)

    assert Worldkit().environments() == {"greeting": ["web (service)"], "empty": []}


def test_up_reports_endpoints_and_tears_down(write_config) -> None:
    write_config(CONFIG)

    endpoints = Worldkit().up("greeting")

    assert list(endpoints) == ["web"]
    assert endpoints["web"].startswith("http://127.0.0.1:420")
    with pytest.raises(requests.ConnectionError):
        requests.get(endpoints["web"], timeout=1)


def test_up_unknown_environment(write_config) -> None:
    from worldkit.exceptions import ConfigurationError

    write_config(CONFIG)

    with pytest.raises(ConfigurationError, match="Available environments"):
        Worldkit().up("missing")


def test_main_configuration_error_exits_2(
    write_config, monkeypatch, capsys, restore_root_logger
) -> None:
    write_config(CONFIG)
    monkeypatch.setattr(sys, "argv", ["worldkit", "up", "missing"])
    monkeypatch.delenv("WORLDKIT_DEBUG", raising=False)

    with pytest.raises(SystemExit) as exc_info:
        main()

    assert exc_info.value.code == 2
    assert "Configuration error" in capsys.readouterr().err


def test_main_debug_mode_reraises(write_config, monkeypatch, restore_root_logger) -> None:
    from worldkit.exceptions import ConfigurationError

    write_config(CONFIG)
    monkeypatch.setattr(sys, "argv", ["worldkit", "up", "missing"])
    monkeypatch.setenv("WORLDKIT_DEBUG", "1")

    with pytest.raises(ConfigurationError):
        main()


@pytest.mark.parametrize("command", ["validate", "environments"])
def test_main_verbose_on_every_command(
    command, write_config, monkeypatch, capsys, restore_root_logger
) -> None:
    write_config(CONFIG)
    monkeypatch.setattr(sys, "argv", ["worldkit", command, "--verbose"])

    main()

    assert capsys.readouterr().out.strip()
    assert logging.getLogger().level == logging.DEBUG

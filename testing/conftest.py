import json
import logging
import pytest

from mock_hyperdeck import FakeHyperDeckTransport


@pytest.fixture
def safe_config_dir(tmp_path, monkeypatch):
    etc = tmp_path / "etc" / "hdc"
    etc.mkdir(parents=True)
    cfg = {
        "device": {"host": "127.0.0.1", "port": 9993, "transport": "mock_hyperdeck:FakeHyperDeckTransport"},
        "timecode": {"mode": "notifications"}
    }
    (etc / "config.json").write_text(json.dumps(cfg, indent=2))
    monkeypatch.setenv("HDC_CONFIG_DIR", str(etc))
    return etc


@pytest.fixture
def logger():
    return logging.getLogger("hdc-test")


@pytest.fixture
def deck_config():
    return {
        "system": {"log_level": "DEBUG"},
        "device": {
            "host": "127.0.0.1",
            "port": 9993,
            "transport": "mock_hyperdeck:FakeHyperDeckTransport",
            "command_timeout": 0.2,
            "connect_timeout": 0.5
        },
        "timecode": {"mode": "notifications", "polling_interval": 15, "max_poll_failures": 3},
        "cue": {"fade_duration": 1.0},
        "record": {"reel": "B002"},
        "format": {"token_timeout": 5}
    }


@pytest.fixture
def deck():
    return FakeHyperDeckTransport()

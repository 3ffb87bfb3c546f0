from pathlib import Path

from chat_client.config import BASE_URL_ENV, DEFAULT_BASE_URL, SESSION_FILE_ENV, ClientConfig, load_config
from chat_client.session_store import DEFAULT_SESSION_PATH


def test_defaults_without_environment():
    config = load_config(environ={})

    assert config.base_url == DEFAULT_BASE_URL
    assert config.session_path == DEFAULT_SESSION_PATH
    assert config.ws_url == "ws://127.0.0.1:8080/ws"


def test_environment_overrides_defaults(tmp_path: Path):
    session_file = tmp_path / "s.json"
    config = load_config(environ={BASE_URL_ENV: "https://chat.example", SESSION_FILE_ENV: str(session_file)})

    assert config.base_url == "https://chat.example"
    assert config.session_path == session_file
    assert config.ws_url == "wss://chat.example/ws"


def test_explicit_arguments_win_over_environment(tmp_path: Path):
    config = load_config(
        base_url="http://localhost:9000/",
        session_path=tmp_path / "explicit.json",
        environ={BASE_URL_ENV: "http://ignored"},
    )

    assert config.base_url == "http://localhost:9000/"
    assert config.ws_url == "ws://localhost:9000/ws"
    assert config.session_path == tmp_path / "explicit.json"


def test_timing_defaults():
    config = ClientConfig()

    assert config.badge_seed_delay_s == 0.5
    assert config.search_debounce_s == 0.3

import pytest

from gnomepods.config import Config, KnownDevice, config_path
from gnomepods.errors import ConfigParseError


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    path = tmp_path / "nested" / "config.toml"
    monkeypatch.setenv("AIRPODS_CONFIG_PATH", str(path))
    return path


def sample_config():
    return Config(
        known_devices=[
            KnownDevice("AA:BB:CC:DD:EE:FF", "Test AirPods"),
            KnownDevice("AA:BB:CC:DD:EE:00", "Spare Pods"),
        ],
        poll_interval=45,
        connection_retry_count=2,
        reconnect_delay_sec=7,
        notification_retries=1,
        log_filter="debug",
    )


def test_defaults():
    config = Config()
    assert config.known_devices == []
    assert config.poll_interval == 30
    assert config.connection_retry_count == 10
    assert config.reconnect_delay_sec == 10
    assert config.notification_retries == 3
    assert config.log_filter is None


def test_empty_toml_gives_defaults():
    assert Config.from_toml("") == Config()


def test_partial_toml_fills_defaults():
    config = Config.from_toml("poll_interval = 5\n")
    assert config.poll_interval == 5
    assert config.notification_retries == Config().notification_retries


def test_toml_round_trip():
    config = sample_config()
    assert Config.from_toml(config.to_toml()) == config


def test_default_round_trip_omits_log_filter():
    text = Config().to_toml()
    assert "log_filter" not in text
    assert Config.from_toml(text) == Config()


@pytest.mark.parametrize(
    "text",
    [
        "poll_interval = [",
        "poll_interval = 'fast'",
        "connection_retry_count = -1",
        "notification_retries = true",
        "log_filter = 3",
        "known_devices = 'none'",
        "[[known_devices]]\naddress = 'AA:BB:CC:DD:EE:FF'\n",
    ],
)
def test_invalid_toml_rejected(text):
    with pytest.raises(ConfigParseError):
        Config.from_toml(text)


def test_is_known_device():
    config = sample_config()
    assert config.is_known_device("AA:BB:CC:DD:EE:FF") == "Test AirPods"
    assert config.is_known_device("AA:BB:CC:DD:EE:01") is None


def test_config_path_override(config_file):
    assert config_path() == config_file


def test_load_creates_default_file(config_file):
    assert not config_file.exists()
    config = Config.load()
    assert config == Config()
    assert config_file.exists()
    assert Config.from_toml(config_file.read_text()) == Config()


def test_save_then_load(config_file):
    sample_config().save()
    assert Config.load() == sample_config()


def test_load_invalid_file_raises(config_file):
    config_file.parent.mkdir(parents=True)
    config_file.write_text("poll_interval = 'often'\n")
    with pytest.raises(ConfigParseError):
        Config.load()
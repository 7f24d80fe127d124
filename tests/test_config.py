import pytest

from http2sip.config import (
    ConfigError,
    SipAccount,
    format_duration,
    load_config,
    parse_duration,
)

ENV = {
    "SIP_SERVER": "sip.example.com",
    "SIP_USER": "1000",
    "SIP_PASSWORD": "secret",
    "SIP_CALL_NUMBER": "777",
}


def test_defaults():
    config = load_config(ENV)
    assert config.account == SipAccount("1000", "secret", "sip.example.com", 5060)
    assert config.call_number == "777"
    assert config.http_host == "0.0.0.0"
    assert config.http_port == 8080
    assert config.penalty_time == 10.0
    assert config.reregister_time == 240.0
    assert config.register_expires == 300
    assert config.log_level == "DEBUG"


def test_overrides():
    config = load_config(
        {
            **ENV,
            "HTTP_HOST": "127.0.0.1",
            "HTTP_PORT": "9000",
            "PENALTY_TIME": "1m30s",
            "SIP_PORT": "5070",
            "SIP_REREGISTER_TIME": "120",
            "SIP_REGISTER_EXPIRES": "600",
            "LOG_LEVEL": "info",
        }
    )
    assert config.http_host == "127.0.0.1"
    assert config.http_port == 9000
    assert config.penalty_time == 90.0
    assert config.account.port == 5070
    assert config.reregister_time == 120.0
    assert config.register_expires == 600
    assert config.log_level == "INFO"


@pytest.mark.parametrize("name", sorted(ENV))
def test_missing_required(name):
    env = {k: v for k, v in ENV.items() if k != name}
    with pytest.raises(ConfigError, match=name):
        load_config(env)


def test_blank_required_is_missing():
    with pytest.raises(ConfigError, match="SIP_PASSWORD"):
        load_config({**ENV, "SIP_PASSWORD": "  "})


def test_bad_integer():
    with pytest.raises(ConfigError, match="HTTP_PORT"):
        load_config({**ENV, "HTTP_PORT": "eighty"})


def test_bad_duration():
    with pytest.raises(ConfigError, match="PENALTY_TIME"):
        load_config({**ENV, "PENALTY_TIME": "soon"})


def test_reregister_must_be_positive():
    with pytest.raises(ConfigError, match="SIP_REREGISTER_TIME"):
        load_config({**ENV, "SIP_REREGISTER_TIME": "0s"})


@pytest.mark.parametrize(
    ("text", "seconds"),
    [
        ("10", 10.0),
        ("2.5", 2.5),
        ("10s", 10.0),
        ("250ms", 0.25),
        ("4m", 240.0),
        ("1h", 3600.0),
        ("1m30s", 90.0),
        (" 5s ", 5.0),
    ],
)
def test_parse_duration(text, seconds):
    assert parse_duration(text) == pytest.approx(seconds)


@pytest.mark.parametrize("text", ["", "s", "10x", "1m 30s", "m10"])
def test_parse_duration_invalid(text):
    with pytest.raises(ConfigError):
        parse_duration(text)


@pytest.mark.parametrize(
    ("seconds", "text"),
    [(10.0, "10s"), (90.0, "1m30s"), (3600.0, "1h"), (0.25, "250ms"), (120.0, "2m")],
)
def test_format_duration(seconds, text):
    assert format_duration(seconds) == text

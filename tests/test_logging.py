import json

from latchkey.logging import (
    _add_correlation_id,
    _redact_secrets,
    configure_from_env,
    configure_logging,
    get_correlation_id,
    get_logger,
    set_correlation_id,
)


def test_credentials_are_masked():
    event = _redact_secrets(
        None,
        "info",
        {"event": "session_created", "session_id": "abcdefghijkl", "token": "tok", "user_id": "42"},
    )

    assert event["session_id"] == "ab***kl"
    assert event["token"] == "***"
    assert event["user_id"] == "42"


def test_correlation_id_is_attached():
    cid = set_correlation_id("req-123")

    assert cid == get_correlation_id() == "req-123"
    assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-123"


def test_json_lines_are_redacted_before_rendering(capsys):
    configure_logging("INFO")
    try:
        get_logger("latchkey.tests").info("persistent_token_issued", token="0123456789abcdef")
    finally:
        configure_from_env()

    event = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert event["event"] == "persistent_token_issued"
    assert event["token"] == "01***ef"
    assert event["logger"] == "latchkey.tests"
    assert event["level"] == "info"


def test_level_filter_drops_quieter_events(capsys):
    configure_logging("ERROR", json_output=False)
    try:
        log = get_logger("latchkey.tests")
        log.warning("store_slow")
        log.error("store_down", token="0123456789abcdef")
    finally:
        configure_from_env()

    out = capsys.readouterr().out
    assert "store_slow" not in out
    assert "store_down" in out
    assert "0123456789abcdef" not in out

import json
import logging

from icn.logging import (
    MASK,
    LoggingOptions,
    SecretRedactor,
    configure_logging,
    load_logging_options_from_env,
)


def test_logging_redacts_secrets_in_message(capfd) -> None:
    configure_logging(LoggingOptions(level="INFO", format="text", redact=True))
    logger = logging.getLogger("icn.test")
    logger.info("token=SUPERSECRET")

    captured = capfd.readouterr()
    assert "SUPERSECRET" not in captured.err
    assert "[REDACTED]" in captured.err


def test_logging_redacts_secrets_in_context(capfd) -> None:
    configure_logging(LoggingOptions(level="INFO", format="json", redact=True))
    logger = logging.getLogger("icn.test")
    logger.info("hello", extra={"context": {"private_key": "SUPERSECRET", "peer": "node-b"}})

    captured = capfd.readouterr()
    record = json.loads(captured.err.strip().splitlines()[-1])
    assert record["message"] == "hello"
    assert record["logger"] == "icn.test"
    assert record["context"] == {"private_key": "[REDACTED]", "peer": "node-b"}


def test_logging_redaction_can_be_disabled(capfd) -> None:
    configure_logging(LoggingOptions(level="INFO", format="text", redact=False))
    logging.getLogger("icn.test").info("password=hunter2")

    assert "hunter2" in capfd.readouterr().err


def test_logging_respects_level(capfd) -> None:
    configure_logging(LoggingOptions(level="WARNING", format="text"))
    logger = logging.getLogger("icn.node.test")
    logger.info("quiet")
    logger.warning("loud")

    err = capfd.readouterr().err
    assert "quiet" not in err
    assert "loud" in err


def test_logging_writes_to_file(tmp_path, capfd) -> None:
    log_file = tmp_path / "node.log"
    configure_logging(LoggingOptions(level="INFO", format="text", file=str(log_file)))
    logging.getLogger("icn.test").info("Executing proposal: 42")
    for handler in logging.getLogger("icn").handlers:
        handler.flush()

    assert "Executing proposal: 42" in log_file.read_text(encoding="utf-8")


def test_options_from_env(monkeypatch) -> None:
    monkeypatch.setenv("ICN_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("ICN_LOG_FORMAT", "json")
    monkeypatch.setenv("ICN_LOG_REDACT", "0")
    monkeypatch.delenv("ICN_LOG_FILE", raising=False)

    options = load_logging_options_from_env(LoggingOptions(level="INFO", file="base.log"))

    assert options.level == "DEBUG"
    assert options.format == "json"
    assert options.redact is False
    assert options.file == "base.log"


def test_node_id_is_stamped_on_records(capfd) -> None:
    configure_logging(LoggingOptions(level="INFO", format="json", node_id="node-a"))
    logging.getLogger("icn.test").info("Node daemon started")

    record = json.loads(capfd.readouterr().err.strip().splitlines()[-1])
    assert record["node_id"] == "node-a"


def test_node_id_in_text_format(capfd) -> None:
    configure_logging(LoggingOptions(level="INFO", format="text", node_id="node-a"))
    logging.getLogger("icn.test").info("hello")

    assert "[node-a] icn.test: hello" in capfd.readouterr().err


def test_redactor_masks_nested_values() -> None:
    redactor = SecretRedactor(max_depth=2)
    masked = redactor.mask_value({
        "peer": {"address": "http://b:1", "Authorization": "Bearer abc"},
        "notes": ["secret: hunter2", b"raw"],
        "deep": {"a": {"b": {"c": "x"}}},
    })

    assert masked["peer"] == {"address": "http://b:1", "Authorization": MASK}
    assert masked["notes"] == [f"secret={MASK}", MASK]
    assert masked["deep"]["a"]["b"] == MASK

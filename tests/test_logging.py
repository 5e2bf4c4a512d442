import logging
from pathlib import Path

from stagerun.foundation.logging_utils import close_logger, setup_operational_logger, write_step_log


def test_writes_unicode_text_with_utf8_encoding(tmp_path: Path):
    unicode_text = "Step output with arrow → and accents é."
    log_path = tmp_path / "nested" / "01.log"

    write_step_log(str(log_path), unicode_text)

    with open(log_path, "r", encoding="utf-8") as file:
        content = file.read()

    assert content == unicode_text


def test_operational_logger_writes_file_and_closes(tmp_path: Path):
    logger, log_file = setup_operational_logger(str(tmp_path / "logs"), "run-42")
    try:
        logger.debug("debug detail")
        logger.info("stage %s done", "Build")
    finally:
        close_logger(logger)

    assert logger.handlers == []
    assert not logger.propagate
    assert logger.level == logging.DEBUG
    text = Path(log_file).read_text(encoding="utf-8")
    assert Path(log_file).name == "run-42_oplog.log"
    assert "Operational logging initialized for run run-42" in text
    assert "| DEBUG | debug detail" in text
    assert "| INFO | stage Build done" in text

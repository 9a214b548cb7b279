import logging

from pms.logging.logger import setup_logger


def test_setup_logger_writes_file_once(tmp_path):
    log_file = tmp_path / "ledger.log"
    logger = setup_logger("pms-test-ledger", log_file=str(log_file), level="DEBUG", console=False)
    again = setup_logger("pms-test-ledger", log_file=str(log_file), level="DEBUG", console=False)

    assert again is logger
    assert len(logger.handlers) == 1
    assert logger.level == logging.DEBUG

    logger.info("open_position committed")
    for handler in logger.handlers:
        handler.flush()
    assert "open_position committed" in log_file.read_text()

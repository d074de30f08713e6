import gzip
import logging

from logger_helper import SizeCappedTimedHandler


def _logger(handler, name):
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    logger.addHandler(handler)
    return logger


def _read_lines(handler, log_path):
    lines = []
    for path in handler.archive_files():
        with gzip.open(path, "rt", encoding="utf-8") as f:
            lines.extend(f.read().splitlines())
    lines.extend(log_path.read_text(encoding="utf-8").splitlines())
    return lines


def test_size_rollovers_keep_every_archive(tmp_path):
    log_path = tmp_path / "req.log"
    handler = SizeCappedTimedHandler(str(log_path), max_bytes=2000, when="W0",
                                     backupCount=100, encoding="utf-8")
    logger = _logger(handler, "rotation-keep")
    try:
        for i in range(600):
            logger.info(f"request {i:04d} " + "x" * 50)
    finally:
        logger.removeHandler(handler)
        handler.close()

    archives = handler.archive_files()
    assert len(archives) > 5
    assert len(set(archives)) == len(archives)
    assert _read_lines(handler, log_path) == [f"request {i:04d} " + "x" * 50 for i in range(600)]


def test_size_rollovers_prune_oldest_archives(tmp_path):
    log_path = tmp_path / "req.log"
    handler = SizeCappedTimedHandler(str(log_path), max_bytes=2000, when="W0",
                                     backupCount=3, encoding="utf-8")
    logger = _logger(handler, "rotation-prune")
    try:
        for i in range(600):
            logger.info(f"request {i:04d} " + "x" * 50)
    finally:
        logger.removeHandler(handler)
        handler.close()

    assert len(handler.archive_files()) == 3
    lines = _read_lines(handler, log_path)
    # Newest records survive, in order
    assert lines[-1] == "request 0599 " + "x" * 50
    assert lines == sorted(lines)
    assert log_path.stat().st_size < 2100

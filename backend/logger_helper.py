import logging
import time
from fastapi import Request
from logging.handlers import TimedRotatingFileHandler
import gzip
import shutil
import os
import re

LOG_FILE = os.getenv("LOG_FILE", "request_performance.log")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_MAX_SIZE = 20 * 1024 * 1024  # 20 MB
LOG_BACKUP_COUNT = 5             # Keep last 5 log files
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


class SizeCappedTimedHandler(TimedRotatingFileHandler):
    """
    Weekly rotation that also rolls over early once the file passes
    LOG_MAX_SIZE. Rolled files are gzip-compressed and named
    ``<log>.<period start>.<n>.gz``, n counting rollovers within the period.
    """

    def __init__(self, filename, max_bytes=LOG_MAX_SIZE, **kwargs):
        super().__init__(filename, **kwargs)
        self.max_bytes = max_bytes
        self.rotator = self._compress
        self.archive_pattern = re.compile(
            rf"^{re.escape(os.path.basename(self.baseFilename))}\.(.+)\.(\d+)\.gz$"
        )

    def shouldRollover(self, record):
        if super().shouldRollover(record):
            return True
        if os.path.exists(self.baseFilename) and os.path.getsize(self.baseFilename) >= self.max_bytes:
            return True
        return False

    def archive_files(self):
        """Archives oldest first, ordered by period then sequence number."""
        dir_name = os.path.dirname(self.baseFilename)
        found = []
        for name in os.listdir(dir_name):
            m = self.archive_pattern.match(name)
            if m:
                found.append((m.group(1), int(m.group(2)), os.path.join(dir_name, name)))
        return [path for _, _, path in sorted(found)]

    def doRollover(self):
        if self.stream:
            self.stream.close()
            self.stream = None

        current_time = int(time.time())
        period_start = self.rolloverAt - self.interval
        stamp = time.strftime(self.suffix, time.gmtime(period_start) if self.utc else time.localtime(period_start))
        base = f"{self.baseFilename}.{stamp}"
        seq = 1
        while os.path.exists(f"{base}.{seq}.gz"):
            seq += 1
        self.rotate(self.baseFilename, f"{base}.{seq}.gz")

        if self.backupCount > 0:
            archives = self.archive_files()
            for path in archives[:max(0, len(archives) - self.backupCount)]:
                os.remove(path)

        if not self.delay:
            self.stream = self._open()

        # Size rollovers stay inside the current period
        if current_time >= self.rolloverAt:
            new_rollover_at = self.computeRollover(current_time)
            while new_rollover_at <= current_time:
                new_rollover_at += self.interval
            self.rolloverAt = new_rollover_at

    @staticmethod
    def _compress(source_path, dest_path):
        if os.path.exists(source_path):
            with open(source_path, "rb") as f_in, gzip.open(dest_path, "wb") as f_out:
                shutil.copyfileobj(f_in, f_out)
            os.remove(source_path)


def configure_logging(level=LOG_LEVEL):
    """Console logging for the service modules (passes, gate, notifier...)."""
    logging.basicConfig(level=level, format=LOG_FORMAT)


def setup_logger(log_file=LOG_FILE):
    """
    Configure the request performance logger.
    Rotation:
      - Weekly (every Monday at midnight)
      - Max file size: 20 MB
      - Automatically compresses old logs
    """
    logger = logging.getLogger("performance_logger")
    logger.setLevel(logging.INFO)

    if not logger.handlers:
        handler = SizeCappedTimedHandler(
            log_file,
            when="W0",             # Rotate weekly (Monday)
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8"
        )
        handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
        logger.addHandler(handler)

    return logger


def create_logging_middleware(app, logger):
    """
    Adds a middleware to log request & response time, IP and caller.
    """
    @app.middleware("http")
    async def log_request_response_time(request: Request, call_next):
        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "-"
        caller = request.headers.get("x-user-id", "-")
        method = request.method
        path = request.url.path

        response = await call_next(request)
        process_time = time.perf_counter() - start_time

        logger.info(
            f"IP={client_ip} | Caller={caller} | {method} {path} | "
            f"Status={response.status_code} | Time={process_time:.4f}s"
        )
        response.headers["X-Process-Time"] = str(round(process_time, 4))
        return response

    return app

"""Process-wide logging setup with redaction of raw seed material."""
import logging
import re

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class SecretMaskingFilter(logging.Filter):
    """Redact 64-char hex strings (raw seeds / private keys) from all log output."""

    _PATTERN = re.compile(r"(?<![0-9a-fA-F])(?:0x)?([0-9a-fA-F]{64})(?![0-9a-fA-F])")

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._PATTERN.sub("[REDACTED]", record.msg)
        if record.args:
            formatted = record.getMessage()
            if self._PATTERN.search(formatted):
                record.msg = self._PATTERN.sub("[REDACTED]", formatted)
                record.args = None
        return True


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
    )
    mask = SecretMaskingFilter()
    for handler in logging.root.handlers:
        if not any(isinstance(f, SecretMaskingFilter) for f in handler.filters):
            handler.addFilter(mask)

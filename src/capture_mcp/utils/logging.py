"""Secure logging configuration for capture-mcp.

Provides logging setup with credential masking. Captured traffic routinely
carries cookies and authorization headers; their values are masked in all
log output.
"""

import logging
import re


class SensitiveValueFilter(logging.Filter):
    """Logging filter that masks credential header values.

    Values of Cookie, Set-Cookie and Authorization headers are replaced
    with [MASKED] to prevent credential leakage in logs.
    """

    SENSITIVE_HEADERS = ("set-cookie", "cookie", "authorization", "proxy-authorization")

    # Patterns to match header values in various formats
    PATTERNS = [
        # Match dict format {"cookie": "value"}
        re.compile(
            r"""(["'](?:set-cookie|cookie|authorization|proxy-authorization)["']\s*:\s*["'])([^"']*)(["'])""",
            re.IGNORECASE,
        ),
        # Match header line format "Cookie: value"
        re.compile(
            r"((?<![\w-])(?:set-cookie|cookie|authorization|proxy-authorization):\s*)([^\r\n\"'}]+)",
            re.IGNORECASE,
        ),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        """Filter and mask credential values in log records.

        Args:
            record: Log record to process

        Returns:
            Always True (record is always passed through, just modified)
        """
        if record.msg:
            record.msg = self.mask(str(record.msg))
        if record.args and isinstance(record.args, tuple):
            new_args: list[object] = []
            for arg in record.args:
                if isinstance(arg, str):
                    new_args.append(self.mask(arg))
                else:
                    new_args.append(arg)
            record.args = tuple(new_args)
        return True

    def mask(self, text: str) -> str:
        """Mask all credential values in text.

        Args:
            text: Text potentially containing credential values

        Returns:
            Text with credential values replaced by [MASKED]
        """
        result = text
        for pattern in self.PATTERNS:

            def mask_match(m: re.Match[str]) -> str:
                suffix = m.group(3) if len(m.groups()) > 2 else ""
                return m.group(1) + "[MASKED]" + suffix

            result = pattern.sub(mask_match, result)
        return result


def setup_logging(level: int = logging.INFO, name: str | None = None) -> logging.Logger:
    """Set up logging with credential masking.

    Args:
        level: Logging level (default: INFO)
        name: Logger name (default: "capture_mcp")

    Returns:
        Configured logger instance
    """
    logger_name = name or "capture_mcp"
    logger = logging.getLogger(logger_name)
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setLevel(level)
    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    handler.setFormatter(formatter)
    handler.addFilter(SensitiveValueFilter())

    logger.addHandler(handler)

    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    """Get a logger instance under the capture_mcp namespace.

    Args:
        name: Logger name suffix (e.g., "engine" for "capture_mcp.engine")

    Returns:
        Logger instance
    """
    if name:
        return logging.getLogger(f"capture_mcp.{name}")
    return logging.getLogger("capture_mcp")

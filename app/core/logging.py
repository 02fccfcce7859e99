import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timezone
from app.config import settings

class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for console output"""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        if hasattr(record, 'levelname'):
            color = self.COLORS.get(record.levelname, '')
            record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)

def setup_logging():
    """Setup logging configuration"""

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if settings.debug else logging.INFO)

    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if settings.debug else logging.INFO)

    console_format = ColoredFormatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_format)
    root_logger.addHandler(console_handler)

    # Suppress verbose third-party logs
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root_logger

def get_logger(name: str) -> logging.Logger:
    """Get logger instance for module"""
    return logging.getLogger(name)

def redact_token(raw_token: Optional[str], visible: Optional[int] = None) -> str:
    """
    Short preview of a raw invite token for logs and analytics.

    Only the first and last few characters survive; tokens too short to
    keep anything hidden are fully masked.
    """
    if not raw_token:
        return ""
    visible = settings.invite_preview_chars if visible is None else visible
    if len(raw_token) <= visible * 2 + 4:
        return "*" * 4
    return f"{raw_token[:visible]}...{raw_token[-visible:]}"

def log_request_context(correlation_id: str = None, user_id: str = None, client_ip: str = None) -> Dict[str, Any]:
    """Create request context for logging"""
    context = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if correlation_id:
        context["correlation_id"] = correlation_id

    if user_id:
        context["user_id"] = str(user_id)[:8] + "..."

    if client_ip:
        context["client_ip"] = client_ip

    return context

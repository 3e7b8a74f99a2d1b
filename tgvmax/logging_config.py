"""Loguru setup for the engine, plus redaction of account emails"""

import re
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

_EMAIL_PATTERN = re.compile(r"([\w.+-]{1,3})[\w.+-]*@[\w-]+(\.[\w-]+)+")

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[component]}</cyan> | <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}"


def mask_email(email: str) -> str:
    """Keep the first characters of an address for logs"""
    if not email:
        return ""
    return f"{email[:3]}***@***"


def _redact(record: Dict[str, Any]) -> None:
    # Credentials flow through login logs; no full address reaches a sink
    record["message"] = _EMAIL_PATTERN.sub(lambda m: f"{m.group(1)}***@***", record["message"])
    record["extra"].setdefault("component", record["name"].rsplit(".", 1)[-1])


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    """
    Configure loguru for the engine and the CLI.

    Console output is INFO (DEBUG when verbose) tagged with the emitting
    module; the optional file sink always keeps DEBUG, rotates at 100 MB and
    keeps 30 days of zipped history. Every message passes the email
    redaction patcher first.

    Args:
        verbose: Enable debug-level logging on the console
        log_file: Optional file path for a rotating debug log
    """
    handlers = [
        {
            "sink": sys.stdout,
            "format": CONSOLE_FORMAT,
            "level": "DEBUG" if verbose else "INFO",
            "colorize": True,
        }
    ]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            {
                "sink": log_file,
                "format": FILE_FORMAT,
                "level": "DEBUG",
                "rotation": "100 MB",
                "retention": "30 days",
                "compression": "zip",
                "enqueue": True,  # Periodic tasks log concurrently
            }
        )

    logger.configure(handlers=handlers, patcher=_redact)
    if log_file:
        logger.info(f"Logging to file: {log_file}")

"""Error helpers that keep stored values and internals out of responses.

Exception messages raised around encrypted data can carry ciphertext or
plaintext fragments, so only the exception type is logged and callers get
a fixed message.
"""

import logging
from typing import NoReturn

from fastapi import HTTPException, status


def safe_error_response(
    logger_instance: logging.Logger,
    error: Exception,
    user_message: str,
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
) -> NoReturn:
    """Log ``error`` with its traceback and raise an HTTPException carrying ``user_message``."""
    logger_instance.error("%s: %s", user_message, type(error).__name__, exc_info=True)
    raise HTTPException(status_code=status_code, detail=user_message) from error


def log_and_continue(
    logger_instance: logging.Logger,
    error: Exception,
    context_message: str,
) -> None:
    """Record a failure in a side effect (audit write, guardian notification).

    The operation that triggered the side effect carries on regardless.
    """
    logger_instance.warning("%s: %s", context_message, type(error).__name__, exc_info=True)

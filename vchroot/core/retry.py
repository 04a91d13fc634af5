# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
"""
Retry utilities with a fixed delay.

Mount and unmount races on freshly attached block devices settle within a
second or two, so a bounded count with a constant pause between attempts is
all the policy the session needs.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar, Union

T = TypeVar("T")


def retry_operation(
    operation: Callable[[], T],
    *,
    max_attempts: int = 3,
    delay_s: float = 1.0,
    exceptions: Union[Type[Exception], Tuple[Type[Exception], ...]] = Exception,
    operation_name: str = "operation",
    logger: Optional[logging.Logger] = None,
    log_level: int = logging.WARNING,
) -> T:
    """
    Retry an operation (function call) with a fixed pause between attempts.

    Args:
        operation: Callable that returns T
        max_attempts: Maximum number of attempts (default: 3)
        delay_s: Pause between attempts in seconds (default: 1.0)
        exceptions: Exception type(s) to catch and retry (default: Exception)
        operation_name: Name for logging (default: "operation")
        logger: Logger to use for warnings (default: None, no logging)
        log_level: Log level for retry messages (default: logging.WARNING)

    Returns:
        Result of the operation

    Example:
        retry_operation(
            lambda: mount_once(source, target),
            max_attempts=3,
            delay_s=1.0,
            operation_name=f"mount {target}",
            logger=my_logger,
        )
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    last_exception: Optional[Exception] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except exceptions as e:
            last_exception = e

            if attempt < max_attempts:
                if logger:
                    logger.log(
                        log_level,
                        "%s failed (attempt %d/%d): %s. Retrying in %.1fs...",
                        operation_name,
                        attempt,
                        max_attempts,
                        e,
                        delay_s,
                    )
                time.sleep(delay_s)
            elif logger:
                logger.log(
                    logging.ERROR,
                    "%s failed after %d attempts: %s",
                    operation_name,
                    max_attempts,
                    e,
                )

    assert last_exception is not None
    raise last_exception

"""
Logging utility functions for the document RAG pipeline.
"""

import logging
import os
import sys
import time
from typing import Optional, Union


def setup_logger(
    name: str = "rag_pipeline",
    level: Union[int, str] = "INFO",
    log_file: Optional[str] = None,
    log_to_console: bool = True,
    log_format: Optional[str] = None,
) -> logging.Logger:
    """
    Set up and configure a logger.

    Args:
        name: Name of the logger
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (if None, no file logging)
        log_to_console: Whether to log to console
        log_format: Custom log format (if None, use default format)

    Returns:
        Configured logger instance
    """
    # Convert string level to logging level if needed
    if isinstance(level, str):
        level = getattr(logging, level.upper())

    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    if log_format is None:
        log_format = "[%(asctime)s] [%(levelname)s] [%(name)s] - %(message)s"

    formatter = logging.Formatter(log_format)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger


class OperationLogger:
    """
    Logger for pipeline operations with duration tracking.
    """

    def __init__(self, name: str = "pipeline_operations", logger: Optional[logging.Logger] = None):
        """
        Initialize the operation logger.

        Args:
            name: Name of the logger when no logger is supplied
            logger: Existing logger to write to
        """
        self.logger = logger or logging.getLogger(name)

    def log_operation_start(self, operation: str, **kwargs) -> float:
        """
        Log the start of an operation.

        Args:
            operation: Name of the operation
            **kwargs: Additional information to log

        Returns:
            Start timestamp, to be passed back to log_operation_end
        """
        log_message = f"Starting {operation}"
        if kwargs:
            additional_info = ", ".join(f"{k}={v}" for k, v in kwargs.items())
            log_message += f" ({additional_info})"

        self.logger.info(log_message)
        return time.time()

    def log_operation_end(self, operation: str, duration: float, success: bool = True, **kwargs):
        """
        Log the end of an operation.

        Args:
            operation: Name of the operation
            duration: Duration in seconds
            success: Whether the operation was successful
            **kwargs: Additional information to log
        """
        if duration < 1:
            duration_str = f"{duration * 1000:.2f} ms"
        else:
            duration_str = f"{duration:.2f} s"

        status = "completed" if success else "failed"
        log_message = f"{operation} {status} in {duration_str}"

        if kwargs:
            additional_info = ", ".join(f"{k}={v}" for k, v in kwargs.items())
            log_message += f" ({additional_info})"

        log_func = self.logger.info if success else self.logger.warning
        log_func(log_message)
        return duration

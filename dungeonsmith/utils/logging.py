import logging

from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class FileLoggingContext:
    """Context manager to copy all logging of a solve run into a log file.

    This class captures ALL logging that occurs within its context.
    """

    def __init__(self, log_file_path: Path, suppress_stdout: bool = False):
        """
        Args:
            log_file_path: Path to the run-specific log file
            suppress_stdout: If True, prevents logs from also going to stdout
        """
        self.log_file_path = Path(log_file_path)
        self.suppress_stdout = suppress_stdout
        self.file_handler = None
        self.original_handlers = []

    def __enter__(self):
        """Set up file handler on the root logger."""
        self.log_file_path.parent.mkdir(parents=True, exist_ok=True)
        self.file_handler = logging.FileHandler(self.log_file_path)
        self.file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

        root_logger = logging.getLogger()
        root_logger.addHandler(self.file_handler)

        if self.suppress_stdout:
            # Detach every other handler until exit.
            self.original_handlers = [
                h for h in root_logger.handlers if h is not self.file_handler
            ]
            for handler in self.original_handlers:
                root_logger.removeHandler(handler)

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Remove the file handler and restore detached handlers."""
        root_logger = logging.getLogger()

        if self.file_handler in root_logger.handlers:
            root_logger.removeHandler(self.file_handler)

        for handler in self.original_handlers:
            if handler not in root_logger.handlers:
                root_logger.addHandler(handler)
        self.original_handlers = []

        if self.file_handler:
            self.file_handler.close()
            self.file_handler = None

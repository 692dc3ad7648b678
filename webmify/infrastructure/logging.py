import logging
from pathlib import Path

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

def setup_logging(log_dir: Path, debug: bool = False) -> logging.Logger:
    """File logging only; the terminal belongs to the progress display."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "webmify.log"

    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == log_file.resolve():
            root.removeHandler(handler)
            handler.close()

    handler = logging.FileHandler(log_file)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    return logging.getLogger("webmify")

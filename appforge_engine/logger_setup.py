import logging
import coloredlogs
from pathlib import Path
from typing import Optional, Tuple

LOGS_DIR = Path(__file__).resolve().parent.parent / "data" / "batch_logs"

def setup_global_logger():
    logger = logging.getLogger("appforge")
    logger.setLevel(logging.DEBUG)

    # coloredlogs installs its own console handler on the 'appforge' logger.
    coloredlogs.install(level='DEBUG', logger=logger, fmt='%(asctime)s %(name)s %(levelname)s %(message)s')
    return logger

def get_batch_logger(batch_id: str, log_dir: Optional[Path] = None) -> Tuple[logging.Logger, str]:
    """Creates a logger for one batch run that also writes to <log_dir>/<batch_id>.log."""
    batch_log_dir = log_dir or LOGS_DIR
    batch_log_dir.mkdir(parents=True, exist_ok=True)
    log_file_path = batch_log_dir / f"{batch_id}.log"

    # Child of the global logger so console output still goes through coloredlogs
    batch_logger = logging.getLogger(f"appforge.batch.{batch_id}")
    batch_logger.setLevel(logging.DEBUG)

    fh = logging.FileHandler(log_file_path, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
    fh.setFormatter(formatter)
    batch_logger.addHandler(fh)

    return batch_logger, str(log_file_path)

def close_batch_logger(batch_logger: logging.Logger):
    for handler in list(batch_logger.handlers):
        if isinstance(handler, logging.FileHandler):
            handler.close()
            batch_logger.removeHandler(handler)

def mask_token(token: Optional[str]) -> str:
    if not token:
        return "<none>"
    return token[:4] + "..."

# Initialize global logger
logger = setup_global_logger()

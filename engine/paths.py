import os
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent

DATA_DIR = Path(os.environ.get("VIXO_DATA_DIR", PROJECT_ROOT / "data")).resolve()
LOG_DIR = Path(os.environ.get("VIXO_LOG_DIR", DATA_DIR / "logs")).resolve()


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)

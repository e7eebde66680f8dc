import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

data_dir_str = os.getenv("DATA_DIR")
if not data_dir_str:
    raise ValueError("❌ DATA_DIR not found in environment or .env file")

DATA_DIR = Path(data_dir_str)
DOT_RATIO = float(os.getenv("DOT_RATIO", "100"))
DOT_SEED = int(os.getenv("DOT_SEED")) if os.getenv("DOT_SEED") else None
DOT_WORKERS = int(os.getenv("DOT_WORKERS", "1"))

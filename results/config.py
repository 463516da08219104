"""
config.py — Process configuration loaded from config.json.

If config.json is missing it is copied from config.dist.json in the same
directory first, so a fresh checkout starts with the shipped defaults.
"""

from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from results.dirt_client import DEFAULT_BASE_URL, DEFAULT_TIMEOUT, DEFAULT_USER_AGENT

logger = logging.getLogger("dirtleague.config")

BASE_DIR = Path(__file__).parent.parent
CONFIG_NAME = "config.json"
DIST_CONFIG_NAME = "config.dist.json"


class Settings(BaseModel):
    base_url: str = DEFAULT_BASE_URL
    db_path: Optional[str] = None
    poll_interval: float = Field(default=60.0, gt=0)
    request_timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0)
    user_agent: str = DEFAULT_USER_AGENT
    autostart_poller: bool = False
    log_level: str = "INFO"


def load_config(path: Optional[Path] = None) -> Settings:
    """Read and validate the configuration file, creating it from the dist copy if needed."""
    path = Path(path) if path is not None else BASE_DIR / CONFIG_NAME
    if not path.exists():
        dist = path.with_name(DIST_CONFIG_NAME)
        if not dist.exists():
            raise FileNotFoundError(f"Neither {path} nor {dist} exists")
        logger.info("Copying config file from %s", dist.name)
        shutil.copyfile(dist, path)

    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return Settings(**data)

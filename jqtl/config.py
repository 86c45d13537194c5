import os
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from jqtl.log import logger


CONFIG_ENV = "JQTL_CONFIG"
DEFAULT_CONFIG_PATH = Path("~/.jqtl/jqtl-config.json")
MAX_RECENT_PROJECTS = 5


class JqtlConfig(BaseModel):
    """
    User configuration and application state, persisted as JSON.

    The file lives at ~/.jqtl/jqtl-config.json unless JQTL_CONFIG names another path.
    """

    r_exec: str = Field(default="R")
    out_dir: str = Field(default=".")
    fig_width: float = Field(default=10.0)
    fig_height: float = Field(default=6.0)
    fig_format: str = Field(default="png")
    recent_projects: List[str] = Field(default_factory=list)

    def add_recent_project(self, path: str):
        """Move `path` to the front of the recent projects, keeping at most MAX_RECENT_PROJECTS."""
        path = os.path.abspath(path)
        projects = [p for p in self.recent_projects if p != path]
        projects.insert(0, path)
        self.recent_projects = projects[:MAX_RECENT_PROJECTS]

    def save(self, path: Optional[str] = None) -> Path:
        target = config_path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        logger.debug(f"configuration saved to {target}")
        return target


def config_path(path: Optional[str] = None) -> Path:
    if path is None:
        path = os.environ.get(CONFIG_ENV) or str(DEFAULT_CONFIG_PATH)
    return Path(path).expanduser()


def load_config(path: Optional[str] = None) -> JqtlConfig:
    """
    Load the configuration, falling back to defaults when the file is missing or unreadable.
    """
    source = config_path(path)
    if not source.is_file():
        return JqtlConfig()
    try:
        config = JqtlConfig.model_validate_json(source.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as e:
        logger.warning(f"Could not read configuration {source}, using defaults: {e}")
        return JqtlConfig()
    if len(config.recent_projects) > MAX_RECENT_PROJECTS:
        config.recent_projects = config.recent_projects[:MAX_RECENT_PROJECTS]
    return config

from __future__ import annotations

from functools import lru_cache
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

CONFIG_FILE_NAME = "biosignal.yaml"


def _resolve_project_root() -> Path:
    override = os.getenv("BIOSIGNAL_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _default_database_path() -> Path:
    override = os.getenv("BIOSIGNAL_DB", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return _resolve_project_root() / "data" / "biosignal.db"


class Settings(BaseModel):
    project_root: Path = Field(default_factory=_resolve_project_root)
    data_dir: Path = Field(default_factory=lambda: _resolve_project_root() / "data")
    database_path: Path = Field(default_factory=_default_database_path)

    user_agent: str = "BioSignalBot/1.0 (+https://biosignal.local)"
    request_timeout_seconds: float = 30.0

    clinical_trials_url: str = "https://clinicaltrials.gov/api/v2/studies"
    clinical_trials_max_pages: int = 5
    clinical_trials_page_size: int = 100
    clinical_trials_lookback_days: int = 7

    semantic_window_days: int = 30
    group_window_days: int = 7
    exclusion_employee_threshold: int = 10_001
    academic_filter: bool = True

    collector_files: list[Path] = Field(default_factory=list)

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.database_path}"

    @staticmethod
    def load_yaml(path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data


def load_settings(path: Path | None = None) -> Settings:
    """Build settings from defaults, overlaid with ``biosignal.yaml`` when present."""
    path = path or _resolve_project_root() / CONFIG_FILE_NAME
    overrides = Settings.load_yaml(path)
    known = {k: v for k, v in overrides.items() if k in Settings.model_fields}
    return Settings(**known)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = load_settings()
    settings.ensure_directories()
    return settings

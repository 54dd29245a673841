from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

DEFAULT_INDEX_URL = "https://api.nuget.org/v3/index.json"
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_PACKAGES_DIR = "Packages"
DEFAULT_PAGE_SIZE = 15


@dataclass(frozen=True)
class Config:
    index_url: str = DEFAULT_INDEX_URL
    packages_dir: str = DEFAULT_PACKAGES_DIR
    page_size: int = DEFAULT_PAGE_SIZE
    timeout_s: float = DEFAULT_TIMEOUT_S
    include_prerelease: bool = False
    show_all_versions: bool = False


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("NUGETDOCK_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("nugetdock") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)
    return path

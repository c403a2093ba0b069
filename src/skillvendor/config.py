from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from platformdirs import user_cache_path, user_config_path

APP_NAME = "skill"
DEFAULT_REGISTRY_URL = "https://registry.skill.dev"
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_MAX_WORKERS = 4
DEFAULT_FETCH_ATTEMPTS = 3


@dataclass(frozen=True)
class Config:
    registry_urls: tuple[str, ...] = (DEFAULT_REGISTRY_URL,)
    cache_dir: str | None = None  # defaults to the platform user cache dir
    timeout_s: float = DEFAULT_TIMEOUT_S
    max_workers: int = DEFAULT_MAX_WORKERS
    fetch_attempts: int = DEFAULT_FETCH_ATTEMPTS

    def resolved_cache_dir(self) -> Path:
        if self.cache_dir:
            return Path(self.cache_dir).expanduser()
        return user_cache_path(APP_NAME)


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILL_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path(APP_NAME) / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    urls = filtered.get("registry_urls")
    if isinstance(urls, str):
        filtered["registry_urls"] = (urls,)
    elif isinstance(urls, list):
        filtered["registry_urls"] = tuple(str(u) for u in urls if str(u).strip())
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    payload = asdict(cfg)
    payload["registry_urls"] = list(cfg.registry_urls)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)
    return path


def split_registry_urls(value: str) -> tuple[str, ...]:
    return tuple(u.strip().rstrip("/") for u in value.split(",") if u.strip())

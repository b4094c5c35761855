from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import os
import yaml


@dataclass(frozen=True)
class AppConfig:
    raw: Dict[str, Any]

    def get(self, *keys: str, default: Any = None) -> Any:
        cur: Any = self.raw
        for k in keys:
            if not isinstance(cur, dict) or k not in cur:
                return default
            cur = cur[k]
        return cur

    @property
    def api_key(self) -> str:
        return os.getenv("FLOODGATE_API_KEY") or str(self.raw.get("app", {}).get("api_key", "change-me"))


_CONFIG_CACHE: Optional[AppConfig] = None


def load_config(path: Optional[str] = None, reload: bool = False) -> AppConfig:
    """
    Load the YAML config, caching the default-location result.

    Without `path` the file comes from FLOODGATE_CONFIG or ./config.yaml and is
    cached for later calls; `reload=True` rereads it and replaces the cache.
    An explicit `path` is always read fresh and never touches the cache.
    """
    global _CONFIG_CACHE
    if _CONFIG_CACHE is not None and not reload and path is None:
        return _CONFIG_CACHE

    cfg_path = path or os.getenv("FLOODGATE_CONFIG") or "./config.yaml"
    p = Path(cfg_path).expanduser().resolve()
    with p.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    cfg = AppConfig(raw=raw)
    if path is None:
        _CONFIG_CACHE = cfg
    return cfg

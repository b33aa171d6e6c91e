import copy
import os
from pathlib import Path
from typing import Any, Dict

import tomllib

DEFAULT_CONFIG: Dict[str, Any] = {
    "viewer": {
        # "auto" = ใช้ client hints ของ browser ที่ mount tile
        "device_tier": "auto",
        "pause_delay_ms": None,
        "auto_resume": True,
        "visibility_threshold": 0.1,
        "stagger_delay_ms": 100,
        "max_streams": None,
    },
    "stream": {
        "jpeg_quality": 80,
        "read_interval": 0.0,
    },
}


class AppConfig:
    """Simple application configuration loader.

    Attempts to load a TOML configuration file. Sections and keys missing
    from the file are filled from ``DEFAULT_CONFIG`` so callers can index
    ``config["viewer"]["..."]`` without ``KeyError``.
    """

    def __init__(self, config_path: str | None = None) -> None:
        if config_path is None:
            config_path = os.getenv("VIEWER_CONFIG", "app_config.toml")
        self.config_path = Path(config_path)

    def load_toml_config(self) -> Dict[str, Any]:
        config = copy.deepcopy(DEFAULT_CONFIG)
        if not self.config_path.exists():
            return config
        with open(self.config_path, "rb") as f:
            loaded = tomllib.load(f)
        for section, values in loaded.items():
            if isinstance(values, dict) and isinstance(config.get(section), dict):
                config[section].update(values)
            else:
                config[section] = values
        return config

"""Configuration for the chat session and the map services.

Sources, later ones win:
- built-in defaults
- ~/.maps-bridge/config.json
- GEMINI_API_KEY, MAPS_BRIDGE_MODEL, GEOAPIFY_API_KEY environment variables
"""

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_CONFIG_PATH = Path.home() / ".maps-bridge" / "config.json"


@dataclass
class Config:
    gemini_api_key: str = ""
    model: str = DEFAULT_MODEL
    geoapify_api_key: str = ""

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        config = cls()

        config_path = path or DEFAULT_CONFIG_PATH
        if config_path.exists():
            try:
                data = json.loads(config_path.read_text())
                config.gemini_api_key = data.get("gemini_api_key", config.gemini_api_key)
                config.model = data.get("model", config.model)
                config.geoapify_api_key = data.get("geoapify_api_key", config.geoapify_api_key)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Ignoring unreadable config %s: %s", config_path, e)

        # Environment variables override config file
        config.gemini_api_key = os.environ.get("GEMINI_API_KEY", config.gemini_api_key)
        config.model = os.environ.get("MAPS_BRIDGE_MODEL") or config.model
        config.geoapify_api_key = os.environ.get("GEOAPIFY_API_KEY", config.geoapify_api_key)

        return config

    def save(self, path: Optional[Path] = None):
        config_path = path or DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(json.dumps(asdict(self), indent=2))

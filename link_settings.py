"""Voice link settings and persisted preferences.

VoiceLinkSettings is what a caller passes to VoiceLinkSession.start(); it is
frozen so one session always runs with the settings it was started with.
load_config()/save_config() persist the caller's last choice as JSON.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_FILE = Path.home() / ".config" / "voice-link" / "config.json"


class VoiceName(str, Enum):
    """Prebuilt voices offered by the live model."""
    ZEPHYR = "Zephyr"
    PUCK = "Puck"
    CHARON = "Charon"
    KORE = "Kore"
    FENRIR = "Fenrir"


class ConversationMode(str, Enum):
    STANDARD = "standard"
    TRANSLATOR = "translator"
    CRISIS_SUPPORT = "crisis_support"


@dataclass(frozen=True)
class VoiceLinkSettings:
    """Voice and conversation mode for one session.

    Plain strings are accepted and converted; unknown values raise ValueError.
    """
    voice: VoiceName = VoiceName.ZEPHYR
    mode: ConversationMode = ConversationMode.STANDARD

    def __post_init__(self):
        object.__setattr__(self, "voice", VoiceName(self.voice))
        object.__setattr__(self, "mode", ConversationMode(self.mode))

    def to_dict(self) -> dict:
        return {"voice": self.voice.value, "mode": self.mode.value}

    @classmethod
    def from_dict(cls, data: dict) -> "VoiceLinkSettings":
        return cls(voice=data.get("voice", VoiceName.ZEPHYR),
                   mode=data.get("mode", ConversationMode.STANDARD))


DEFAULT_CONFIG = {
    "voice": VoiceName.ZEPHYR.value,
    "mode": ConversationMode.STANDARD.value,
    "debug_mode": False,
}


def load_config(path: Path = CONFIG_FILE) -> dict:
    """Load saved preferences merged over the defaults.

    Invalid voice/mode values fall back to the defaults.
    """
    config = dict(DEFAULT_CONFIG)
    path = Path(path)
    if not path.exists():
        return config
    try:
        with open(path) as f:
            saved = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not read config %s: %s", path, e)
        return config
    if not isinstance(saved, dict):
        logger.warning("Ignoring config %s: expected a JSON object", path)
        return config

    config.update(saved)
    try:
        VoiceLinkSettings.from_dict(config)
    except ValueError as e:
        logger.warning("Ignoring saved voice/mode: %s", e)
        config["voice"] = DEFAULT_CONFIG["voice"]
        config["mode"] = DEFAULT_CONFIG["mode"]
    return config


def save_config(config: dict, path: Path = CONFIG_FILE) -> bool:
    """Write preferences as JSON. Returns False if the file could not be written."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(config, f, indent=2)
    except OSError as e:
        logger.warning("Could not save config %s: %s", path, e)
        return False
    return True

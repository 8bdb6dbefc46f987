# ==============================================================================
# gem-projects - Configuration Loader
# Requires: pip install pyyaml
# ==============================================================================

import os
from dataclasses import dataclass, field, fields

import yaml

from .errors import ConfigError

PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))
SELECTORS_PATH = os.path.join(PACKAGE_DIR, "selectors.yaml")  # shared selectors
CONFIG_PATH = os.path.join(os.getcwd(), "config.yaml")          # personal settings


def _read_yaml(path, label):
    if not os.path.exists(path):
        raise ConfigError(f"{label} file not found at: {path}")
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load {os.path.basename(path)}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{os.path.basename(path)} must contain a mapping")
    return data


def load_config(config_path=None, selectors_path=None):
    """
    Loads selectors.yaml (required, shipped with the package) and the user's
    config.yaml (required, copied from config_template.yaml).
    Returns one dict with 'selectors', 'boilerplate' and 'system' keys.
    """
    config = {}

    # 1. Selectors
    config.update(_read_yaml(selectors_path or SELECTORS_PATH, "Selectors"))

    # 2. User config
    path = config_path or CONFIG_PATH
    if not os.path.exists(path):
        raise ConfigError(
            f"User config file not found at: {path}. "
            "Please copy 'config_template.yaml' to 'config.yaml' and set your preferences."
        )
    config.update(_read_yaml(path, "User config"))

    return config


def load_selectors(selectors_path=None):
    """Selectors only, for callers that run with default settings."""
    return _read_yaml(selectors_path or SELECTORS_PATH, "Selectors")


# ==============================================================================
# Typed Settings
# ==============================================================================

@dataclass
class Settings:
    """Every tunable of the automation core. Defaults match config_template.yaml."""
    # Browser
    cdp_url: str = "http://localhost:9222"
    target_domain: str = "gemini.google.com"
    kb_folder_name: str = "GemProjects"

    # Work queue
    queue_safety_timeout: float = 30.0
    queue_cooldown: float = 1.0

    # Sessions
    session_load_timeout: float = 15.0
    session_load_poll: float = 0.25
    session_probe_attempts: int = 10
    session_probe_interval: float = 0.5
    session_idle_timeout: float = 300.0
    session_sweep_interval: float = 120.0

    # Stability detection
    stability_quiet_period: float = 2.0
    stability_min_length: int = 100
    stability_extensions: int = 1
    exchange_quiet_period: float = 3.0
    exchange_extensions: int = 10

    # Extraction
    extract_max_chars: int = 100_000
    extract_dedupe_prefix: int = 100
    extract_min_turn_length: int = 5
    extract_min_fallback_length: int = 50

    # Discovery / reconciliation
    discovery_timeout: float = 10.0
    discovery_poll: float = 0.5
    title_min_prefix: int = 5
    title_max_prefix: int = 20

    # Request correlation
    request_timeout: float = 600.0

    # Passive archiving of the chat the user has open
    archive_enabled: bool = True
    archive_interval: float = 10.0
    archive_quiet_period: float = 5.0
    archive_min_length: int = 100
    archive_max_wait: float = 60.0

    selectors: dict = field(default_factory=dict)
    boilerplate: list = field(default_factory=list)

    @classmethod
    def from_config(cls, config):
        """Build Settings from the dict returned by load_config()."""
        system = config.get('system') or {}
        known = {f.name for f in fields(cls)} - {"selectors", "boilerplate"}
        unknown = sorted(set(system) - known)
        if unknown:
            raise ConfigError(f"Unknown system settings: {', '.join(unknown)}")
        values = {}
        for f in fields(cls):
            if f.name in system:
                default = getattr(cls, f.name, None)
                try:
                    values[f.name] = type(default)(system[f.name]) if default is not None else system[f.name]
                except (TypeError, ValueError) as e:
                    raise ConfigError(f"Invalid value for '{f.name}': {system[f.name]!r}") from e
        return cls(
            selectors=config.get('selectors') or {},
            boilerplate=list(config.get('boilerplate') or []),
            **values,
        )

    @classmethod
    def defaults(cls):
        """Default settings with the shipped selectors."""
        return cls.from_config(load_selectors())

    @property
    def app_url(self):
        return f"https://{self.target_domain}/app"

    @property
    def kb_root(self):
        return os.path.join(os.getcwd(), self.kb_folder_name)

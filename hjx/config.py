import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

HJXCONFIG = ".hjxconfig"
GLOBAL_CONFIG_FILE = Path.home() / ".hjx" / "config.json"

CONFLICT_POLICIES = {"newest", "cache", "file", "ask"}
CACHE_BACKENDS = {"file", "memory"}

DEFAULT_CONFIG = {
    "cache_backend": "file",
    "cache_dir": str(Path.home() / ".hjx" / "cache"),
    "debounce_seconds": 0.5,
    "conflict_policy": "newest",
    "actor": "",
    # Any litellm model name; lets "sync --review" answer questions about the differences
    "reviewer": "",
}


def load_global_config():
    """User-wide settings that every project starts from.

    Missing, unreadable or non-object content counts as no settings; the
    project .hjxconfig and the defaults still apply.
    """
    try:
        data = json.loads(GLOBAL_CONFIG_FILE.read_text())
    except FileNotFoundError:
        return {}
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Ignoring %s: %s", GLOBAL_CONFIG_FILE, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: not a JSON object", GLOBAL_CONFIG_FILE)
        return {}
    return data


def save_global_config(updates):
    """Record user-wide settings (actor, conflict_policy, ...). Returns the saved settings.

    Raises ValueError for a value load_config() would refuse, leaving the file as it was.
    """
    saved = {**load_global_config(), **updates}
    validate_config({**DEFAULT_CONFIG, **saved})
    GLOBAL_CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    GLOBAL_CONFIG_FILE.write_text(json.dumps(saved, indent=2) + "\n")
    return saved


def find_config(start=None):
    """The .hjxconfig that applies to start (default: cwd): its own, or the nearest parent's."""
    start = Path(start) if start else Path.cwd()
    for directory in (start, *start.parents):
        candidate = directory / HJXCONFIG
        if candidate.is_file():
            return candidate
    return None


def validate_config(config):
    policy = config.get("conflict_policy")
    if policy not in CONFLICT_POLICIES:
        raise ValueError(
            f"Unknown conflict_policy: {policy!r}. Use one of {sorted(CONFLICT_POLICIES)}."
        )
    backend = config.get("cache_backend")
    if backend not in CACHE_BACKENDS:
        raise ValueError(f"Unknown cache_backend: {backend!r}. Use 'file' or 'memory'.")
    try:
        debounce = float(config.get("debounce_seconds"))
    except (TypeError, ValueError):
        raise ValueError(f"debounce_seconds must be a number, got {config.get('debounce_seconds')!r}")
    if debounce < 0:
        raise ValueError("debounce_seconds must not be negative")
    config["debounce_seconds"] = debounce
    return config


def load_config():
    # Merge order: defaults → global config → project .hjxconfig
    config = {**DEFAULT_CONFIG, **load_global_config()}

    config_path = find_config()
    if config_path:
        try:
            raw = json.loads(config_path.read_text())
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {config_path}: {e}")
        if not isinstance(raw, dict):
            raise ValueError(f"{config_path} must contain a JSON object")
        config.update(raw)

    return validate_config(config)


def init_config(path=None, **overrides):
    """Create a .hjxconfig in the given directory."""
    target = Path(path) if path else Path.cwd()
    config_path = target / HJXCONFIG
    global_cfg = load_global_config()
    init = {
        "conflict_policy": global_cfg.get("conflict_policy") or DEFAULT_CONFIG["conflict_policy"],
        "debounce_seconds": global_cfg.get("debounce_seconds", DEFAULT_CONFIG["debounce_seconds"]),
    }
    init.update({k: v for k, v in overrides.items() if v is not None})
    config_path.write_text(json.dumps(init, indent=2))
    return config_path

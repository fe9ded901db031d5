import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from .errors import ConfigIO
from .serializers import HerculesConfig

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "hercules-config.json"
GLOBAL_STATE_FILE_NAME = "global-state.json"


class ConfigStore:
    """Loads, holds and persists the ``HerculesConfig`` record.

    The record is loaded once at construction. Every setter saves the file
    synchronously, so the on-disk copy always matches memory.
    """

    def __init__(self, storage_dir: Path):
        storage_dir.mkdir(parents=True, exist_ok=True)
        self.config_path = storage_dir / CONFIG_FILE_NAME
        self._config = self._load()

    def get_config_path(self) -> Path:
        return self.config_path

    def _load(self) -> HerculesConfig:
        if not self.config_path.exists():
            return HerculesConfig()
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("top-level JSON value is not an object")
        except (json.JSONDecodeError, OSError, ValueError) as e:
            logger.error(f"Failed to load configuration from {self.config_path}: {e}")
            return HerculesConfig()
        return self._validate_loaded(data)

    def _validate_loaded(self, data: Dict[str, Any]) -> HerculesConfig:
        """Validate *data*, resetting only the fields that fail to their defaults."""
        while True:
            try:
                return HerculesConfig.from_partial(data)
            except ValidationError as e:
                pruned = [loc for loc in (err["loc"] for err in e.errors()) if _prune(data, loc)]
                if not pruned:
                    logger.error(f"Failed to load configuration from {self.config_path}: {e}")
                    return HerculesConfig()
                for loc in pruned:
                    logger.warning(
                        f"Ignoring invalid setting {'.'.join(map(str, loc))} "
                        f"in {self.config_path}; using the default"
                    )

    def save(self) -> None:
        try:
            with open(self.config_path, "w", encoding="utf-8") as f:
                json.dump(self._config.to_json_dict(), f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save configuration to {self.config_path}: {e}")
            raise ConfigIO(f"Error saving configuration: {e}") from e

    def reset(self) -> HerculesConfig:
        """Replace the configuration with the defaults and persist it."""
        self._config = HerculesConfig()
        self.save()
        return self._config

    def get_config(self) -> HerculesConfig:
        return self._config

    def update_config(self, config: HerculesConfig) -> None:
        self._config = config
        self.save()

    def _json_key(self, section: str, key: str) -> str:
        """Map a snake_case name or JSON alias of ``section.key`` to its JSON key."""
        field = HerculesConfig.model_fields.get(section)
        if field is None:
            raise ConfigIO(f"Unknown configuration section: {section}")
        for name, info in field.annotation.model_fields.items():
            alias = info.alias or name
            if key in (name, alias):
                return alias
        raise ConfigIO(f"Unknown configuration key: {section}.{key}")

    def get_value(self, section: str, key: str) -> Any:
        """Return ``section.key``; *key* may be the JSON key or the snake_case name."""
        return self._config.to_json_dict()[section][self._json_key(section, key)]

    def set_value(self, section: str, key: str, value: Any) -> None:
        """Set ``section.key`` to *value*, validate the whole record and persist it.

        Raises:
            ConfigIO: unknown section or key, or a value the schema rejects.
        """
        json_key = self._json_key(section, key)
        data = self._config.to_json_dict()
        data[section][json_key] = value
        try:
            config = HerculesConfig.from_partial(data)
        except ValidationError as e:
            raise ConfigIO(f"Invalid value for {section}.{key}: {e}") from e
        self.update_config(config)


def _prune(data: Dict[str, Any], loc: Tuple[Any, ...]) -> bool:
    """Delete the deepest key of *loc* present in *data*. Returns False if none is."""
    parent: Optional[Dict[str, Any]] = None
    key = None
    node: Any = data
    for part in loc:
        if not isinstance(node, dict) or part not in node:
            break
        parent, key, node = node, part, node[part]
    if parent is None:
        return False
    del parent[key]
    return True


class GlobalState:
    """Small persisted key/value store shared across runs of the CLI."""

    def __init__(self, storage_dir: Path):
        storage_dir.mkdir(parents=True, exist_ok=True)
        self.path = storage_dir / GLOBAL_STATE_FILE_NAME

    def _read(self) -> Dict[str, Any]:
        if self.path.exists():
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if isinstance(data, dict):
                    return data
            except (json.JSONDecodeError, OSError) as e:
                logger.error(f"Failed to load state from {self.path}: {e}")
        return {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._read().get(key, default)

    def update(self, key: str, value: Any) -> None:
        self.update_many({key: value})

    def update_many(self, values: Dict[str, Any]) -> None:
        data = self._read()
        data.update(values)
        try:
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=4)
        except OSError as e:
            logger.error(f"Failed to save state to {self.path}: {e}")

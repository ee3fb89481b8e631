import logging
import os
from pathlib import Path

import yaml

logger = logging.getLogger("leafdevice.smoke_config")


class SmokeConfig:
    """Lazily reads and caches smoke test settings on first access.

    Environment variables win; otherwise the value comes from testenv.yaml
    (or the file named by LEAF_DEVICE_CONFIG_PATH). Each key is logged the
    first time it is read.
    """

    _yaml_config: dict[str, str] | None = None

    def __init__(self) -> None:
        self._cache: dict[str, str] = {}
        self._logged_keys: set[str] = set()

    @classmethod
    def _load_yaml_config(cls) -> dict[str, str]:
        """Load config YAML, checking LEAF_DEVICE_CONFIG_PATH first.

        Returns:
            Dict mapping variable names to values, or empty dict if no file exists.
        """
        if cls._yaml_config is not None:
            return cls._yaml_config

        config_path: Path | None = None
        custom_path = os.getenv("LEAF_DEVICE_CONFIG_PATH")
        if custom_path:
            custom_config_path = Path(custom_path)
            if custom_config_path.exists():
                config_path = custom_config_path
                logger.info(f"Using config from LEAF_DEVICE_CONFIG_PATH: {config_path}")
            else:
                logger.warning(f"LEAF_DEVICE_CONFIG_PATH set but file not found: {custom_path}")

        if config_path is None:
            config_path = Path(__file__).parent / "testenv.yaml"

        if not config_path.exists():
            cls._yaml_config = {}
            return cls._yaml_config

        with open(config_path) as f:
            data = yaml.safe_load(f)

        cls._yaml_config = {}
        if data and "env" in data:
            for item in data["env"]:
                if "name" in item and "value" in item:
                    cls._yaml_config[item["name"]] = str(item["value"])

        return cls._yaml_config

    def _lookup(self, name: str) -> str | None:
        value = os.getenv(name)
        if value is not None:
            return value
        return self._load_yaml_config().get(name)

    def _log_first_access(self, name: str, value: str | None, log_value: bool) -> None:
        if name in self._logged_keys:
            return
        self._logged_keys.add(name)

        if log_value:
            display_value = value if value is not None else "unset"
        else:
            display_value = "set" if value is not None else "unset"

        logger.info(f"Config {name}: {display_value}")

    def get_optional(self, name: str, *, log_value: bool = True) -> str | None:
        """Get an optional setting, returning None if not set."""
        if name not in self._cache:
            value = self._lookup(name)
            if value is not None:
                self._cache[name] = value

        result = self._cache.get(name)
        self._log_first_access(name, result, log_value)
        return result

    def get_bool(self, name: str, default: bool = False, *, log_value: bool = True) -> bool:
        """Get an optional setting as a boolean; 'true' (any case) is True."""
        value = self.get_optional(name, log_value=log_value)
        if value is None:
            return default
        return value.lower() == "true"


config = SmokeConfig()

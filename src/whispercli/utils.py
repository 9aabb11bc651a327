import os
from pathlib import Path

import yaml

from .logger import get_logger

logger = get_logger('config')

SCHEMA_PATH = Path(__file__).parent / 'config_schema.yaml'

_TYPES = {
    'str': str,
    'int': int,
    'float': (int, float),
    'bool': bool,
}


def default_config_path() -> Path:
    """User config location, overridable with WHISPERCLI_CONFIG."""
    override = os.environ.get('WHISPERCLI_CONFIG')
    if override:
        return Path(override)
    return Path.home() / ".config" / "whispercli" / "config.yaml"


def _is_leaf(item) -> bool:
    return isinstance(item, dict) and 'type' in item


class ConfigManager:
    """
    Process-wide settings: schema defaults, then the user's YAML file, then
    whatever the command line overrides via set_config_value.
    """
    _instance = None

    def __init__(self):
        self.config = {}
        self.schema = {}

    @classmethod
    def initialize(cls, schema_path=None, config_path=None):
        if cls._instance is not None:
            raise RuntimeError("ConfigManager is already initialized")
        instance = cls()
        instance.schema = cls.load_config_schema(schema_path)
        instance.config = instance.load_default_config()
        instance.load_user_config(config_path)
        cls._instance = instance

    @classmethod
    def reset(cls):
        """Forget the current settings so the next access reloads them."""
        cls._instance = None

    @classmethod
    def get_instance(cls) -> 'ConfigManager':
        if cls._instance is None:
            cls.initialize()
        return cls._instance  # type: ignore

    def _lookup(self, keys):
        node = self.config
        for key in keys:
            if not isinstance(node, dict) or key not in node:
                return None
            node = node[key]
        return node

    @classmethod
    def get_config_section(cls, *keys) -> dict:
        section = cls.get_instance()._lookup(keys)
        return section if isinstance(section, dict) else {}

    @classmethod
    def get_config_value(cls, *keys):
        return cls.get_instance()._lookup(keys)

    @classmethod
    def set_config_value(cls, value, *keys):
        """Set a value, creating intermediate sections as needed."""
        node = cls.get_instance().config
        for key in keys[:-1]:
            if not isinstance(node.get(key), dict):
                node[key] = {}
            node = node[key]
        node[keys[-1]] = value

    @staticmethod
    def load_config_schema(schema_path=None) -> dict:
        with open(schema_path or SCHEMA_PATH, 'r', encoding='utf-8') as file:
            return yaml.safe_load(file) or {}

    def load_default_config(self) -> dict:
        """Pull every leaf's 'value' out of the schema."""
        def defaults(node):
            if _is_leaf(node):
                return node.get('value')
            if isinstance(node, dict):
                return {key: defaults(child) for key, child in node.items()}
            return node

        return defaults(self.schema)

    def _validate_config_value(self, value, schema_item, path) -> bool:
        """Check a user value against its schema leaf. None is always allowed."""
        if not _is_leaf(schema_item) or value is None:
            return True

        expected = schema_item['type']
        python_type = _TYPES.get(expected)
        if python_type is not None:
            # bool subclasses int, so True would otherwise pass as a device index
            if isinstance(value, bool) and expected in ('int', 'float'):
                logger.warning(f"Config '{path}' should be {expected}, got bool. Using default.")
                return False
            if not isinstance(value, python_type):
                logger.warning(f"Config '{path}' should be {expected}, got {type(value).__name__}. Using default.")
                return False

        options = schema_item.get('options')
        if options is not None and value not in options:
            logger.warning(f"Config '{path}' value '{value}' not in allowed options {options}. Using default.")
            return False

        return True

    def _merge_user_section(self, target, user_section, schema_section, path=""):
        for key, user_value in user_section.items():
            current_path = f"{path}.{key}" if path else key
            schema_item = schema_section.get(key) if isinstance(schema_section, dict) else None

            if _is_leaf(schema_item):
                if self._validate_config_value(user_value, schema_item, current_path):
                    target[key] = user_value
            elif isinstance(user_value, dict) and isinstance(target.get(key), dict):
                self._merge_user_section(target[key], user_value, schema_item, current_path)
            elif schema_item is None:
                logger.debug(f"Ignoring unknown config key '{current_path}'")
            else:
                logger.warning(f"Config '{current_path}' should be a section. Using defaults.")

    def load_user_config(self, config_path=None):
        """Merge the user's YAML file over the defaults, dropping invalid values."""
        config_path = Path(config_path) if config_path else default_config_path()
        if not config_path.is_file():
            logger.debug(f"No user config at {config_path}")
            return

        try:
            with open(config_path, 'r', encoding='utf-8') as file:
                user_config = yaml.safe_load(file) or {}
        except yaml.YAMLError as e:
            logger.warning(f"Error in configuration file {config_path}: {e}. Using default configuration.")
            return

        if not isinstance(user_config, dict):
            logger.warning(f"Configuration file {config_path} is not a mapping. Using default configuration.")
            return

        self._merge_user_section(self.config, user_config, self.schema)
        logger.debug(f"Loaded user config from {config_path}")

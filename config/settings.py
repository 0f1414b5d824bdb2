"""Application configuration settings.

This module centralizes all configuration values loaded from:
1. config.base.yaml (shared defaults)
2. config.{env}.yaml (environment-specific: dev, staging, prod)
3. config.local.yaml (local overrides, git-ignored)
4. Environment variables (highest priority)

Default environment is 'development' (DEV).

Usage:
    from config.settings import config

    secret = config.JWT_SECRET
    key = config.ENCRYPTION_KEY

    env = config.ENV  # 'development', 'staging', or 'production'
"""
import os
from pathlib import Path
from typing import Optional, Any, Dict
import yaml


# Environment name mappings
ENV_ALIASES = {
    'dev': 'development',
    'development': 'development',
    'staging': 'staging',
    'stage': 'staging',
    'prod': 'production',
    'production': 'production',
    'test': 'testing',
    'testing': 'testing',
}

DEFAULT_ENV = 'development'


def _env_flag(name: str) -> Optional[bool]:
    """Read a boolean environment variable, None when unset."""
    env_val = os.getenv(name, '').lower()
    if not env_val:
        return None
    return env_val in ('1', 'true', 'yes')


class Config:
    """Centralized application configuration.

    Priority (highest to lowest):
    1. Environment variables
    2. config.local.yaml (for local development overrides)
    3. config.{env}.yaml (environment-specific: dev, staging, prod)
    4. config.base.yaml (shared defaults)

    Environment is determined by:
    1. FLASK_ENV environment variable
    2. APP_ENV environment variable
    3. Default: 'development'
    """

    _config_data: Dict[str, Any] = {}
    _loaded: bool = False
    _current_env: str = DEFAULT_ENV

    def __init__(self):
        if not Config._loaded:
            self._load_config()

    @classmethod
    def _get_environment(cls) -> str:
        """Determine current environment from env vars or default to dev."""
        env = os.getenv('FLASK_ENV') or os.getenv('APP_ENV') or DEFAULT_ENV
        env = env.lower().strip()
        return ENV_ALIASES.get(env, DEFAULT_ENV)

    def _load_config(self):
        """Load configuration from YAML files based on environment."""
        config_dir = Path(__file__).parent
        Config._current_env = self._get_environment()

        Config._config_data = {}

        base_config_path = config_dir / 'config.base.yaml'
        if base_config_path.exists():
            with open(base_config_path, 'r') as f:
                Config._config_data = yaml.safe_load(f) or {}

        env_config_map = {
            'development': 'config.dev.yaml',
            'staging': 'config.staging.yaml',
            'production': 'config.prod.yaml',
            'testing': 'config.test.yaml',
        }
        env_config_file = env_config_map.get(Config._current_env, 'config.dev.yaml')
        env_config_path = config_dir / env_config_file

        if env_config_path.exists():
            with open(env_config_path, 'r') as f:
                env_data = yaml.safe_load(f) or {}
                Config._config_data = self._deep_merge(Config._config_data, env_data)

        # Local overrides (not in git)
        local_config_path = config_dir / 'config.local.yaml'
        if local_config_path.exists():
            with open(local_config_path, 'r') as f:
                local_data = yaml.safe_load(f) or {}
                Config._config_data = self._deep_merge(Config._config_data, local_data)

        Config._loaded = True

    def _deep_merge(self, base: dict, override: dict) -> dict:
        """Deep merge two dictionaries."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    def _get_yaml_value(self, *keys, default=None) -> Any:
        """Get a nested value from YAML config."""
        value = Config._config_data
        for key in keys:
            if isinstance(value, dict):
                value = value.get(key)
            else:
                return default
            if value is None:
                return default
        return value

    @classmethod
    def reload(cls):
        """Reload configuration (useful for testing)."""
        cls._loaded = False
        cls._config_data = {}
        instance = cls()
        return instance

    # ==========================================================================
    # Environment Info
    # ==========================================================================

    @property
    def CURRENT_ENV(self) -> str:
        return Config._current_env

    @property
    def IS_DEV(self) -> bool:
        return Config._current_env == 'development'

    @property
    def IS_STAGING(self) -> bool:
        return Config._current_env == 'staging'

    @property
    def IS_PROD(self) -> bool:
        return Config._current_env == 'production'

    @property
    def ENV(self) -> str:
        """Application environment (development, staging, production, testing)."""
        return Config._current_env

    # ==========================================================================
    # Application Settings
    # ==========================================================================

    @property
    def DEBUG(self) -> bool:
        """Flask debug mode."""
        flag = _env_flag('FLASK_DEBUG')
        if flag is not None:
            return flag
        return self._get_yaml_value('app', 'debug', default=False)

    @property
    def PORT(self) -> int:
        env_val = os.getenv('PORT')
        if env_val:
            return int(env_val)
        return self._get_yaml_value('app', 'port', default=5000)

    @property
    def APP_NAME(self) -> str:
        return os.getenv('APP_NAME') or self._get_yaml_value('app', 'name', default='Cipher Chat API')

    @property
    def APP_VERSION(self) -> str:
        return self._get_yaml_value('app', 'version', default='1.0.0')

    # ==========================================================================
    # Security Settings
    # ==========================================================================

    @property
    def JWT_SECRET(self) -> Optional[str]:
        """JWT secret key for token verification. Required in production."""
        return os.getenv('JWT_SECRET') or self._get_yaml_value('security', 'jwt', 'secret')

    @property
    def JWT_ALGORITHM(self) -> str:
        return os.getenv('JWT_ALGORITHM') or self._get_yaml_value('security', 'jwt', 'algorithm', default='HS256')

    @property
    def ENCRYPTION_KEY(self) -> Optional[str]:
        """Hex-encoded 32-byte key for message content encryption.

        When unset the codec falls back to an ephemeral key, which makes
        stored messages unreadable after a restart.
        """
        return os.getenv('ENCRYPTION_KEY') or self._get_yaml_value('security', 'encryption_key')

    # ==========================================================================
    # Database Settings
    # ==========================================================================

    @property
    def MONGO_URI(self) -> str:
        return os.getenv('MONGO_URI') or self._get_yaml_value('database', 'mongo_uri', default='mongodb://localhost:27017')

    @property
    def CHAT_DB_NAME(self) -> str:
        return os.getenv('CHAT_DB_NAME') or self._get_yaml_value('database', 'name', default='chat_db')

    @property
    def MONGO_TIMEOUT_MS(self) -> int:
        """Upper bound for server selection, connect and socket operations."""
        env_val = os.getenv('MONGO_TIMEOUT_MS')
        if env_val:
            return int(env_val)
        return self._get_yaml_value('database', 'timeout_ms', default=5000)

    # ==========================================================================
    # Realtime / CORS Settings
    # ==========================================================================

    @property
    def SOCKETIO_ASYNC_MODE(self) -> str:
        return os.getenv('SOCKETIO_ASYNC_MODE') or self._get_yaml_value('socketio', 'async_mode', default='threading')

    @property
    def CORS_ORIGINS(self) -> str:
        return os.getenv('CORS_ORIGINS') or self._get_yaml_value('cors', 'origins', default='*')

    @property
    def CORS_ORIGINS_LIST(self) -> list:
        origins = self.CORS_ORIGINS
        if origins == '*':
            return ['*']
        return [o.strip() for o in origins.split(',') if o.strip()]

    # ==========================================================================
    # Messaging Limits
    # ==========================================================================

    @property
    def PAGE_DEFAULT_LIMIT(self) -> int:
        return self._get_yaml_value('messaging', 'page_default_limit', default=50)

    @property
    def PAGE_MAX_LIMIT(self) -> int:
        return self._get_yaml_value('messaging', 'page_max_limit', default=100)

    @property
    def MAX_MESSAGE_LENGTH(self) -> int:
        env_val = os.getenv('MAX_MESSAGE_LENGTH')
        if env_val:
            return int(env_val)
        return self._get_yaml_value('messaging', 'max_message_length', default=5000)

    @property
    def MAX_GROUP_PARTICIPANTS(self) -> int:
        return self._get_yaml_value('messaging', 'max_group_participants', default=256)

    # ==========================================================================
    # Logging Settings
    # ==========================================================================

    @property
    def LOG_LEVEL(self) -> str:
        env_val = os.getenv('LOG_LEVEL')
        if env_val:
            return env_val.upper()
        return str(self._get_yaml_value('logging', 'level', default='INFO')).upper()

    @property
    def LOG_PATTERN(self) -> str:
        return os.getenv('LOG_PATTERN') or self._get_yaml_value('logging', 'pattern', default='%(message)s')

    @property
    def LOG_INCLUDE_DATETIME(self) -> bool:
        flag = _env_flag('LOG_INCLUDE_DATETIME')
        if flag is not None:
            return flag
        return self._get_yaml_value('logging', 'include_datetime', default=False)

    @property
    def LOG_INCLUDE_NAME(self) -> bool:
        flag = _env_flag('LOG_INCLUDE_NAME')
        if flag is not None:
            return flag
        return self._get_yaml_value('logging', 'include_name', default=False)

    @property
    def LOG_INCLUDE_LEVEL(self) -> bool:
        flag = _env_flag('LOG_INCLUDE_LEVEL')
        if flag is not None:
            return flag
        return self._get_yaml_value('logging', 'include_level', default=True)

    @property
    def LOG_DATE_FORMAT(self) -> str:
        return self._get_yaml_value('logging', 'date_format', default='%H:%M:%S')

    @property
    def LOG_FORMAT(self) -> str:
        """Build log format string based on config options."""
        pattern = self.LOG_PATTERN
        if pattern and pattern != '%(message)s':
            return pattern

        parts = []
        if self.LOG_INCLUDE_DATETIME:
            parts.append('%(asctime)s')
        if self.LOG_INCLUDE_NAME:
            parts.append('%(name)s')
        if self.LOG_INCLUDE_LEVEL:
            parts.append('%(levelname)s')
        parts.append('%(message)s')

        return ' - '.join(parts) if len(parts) > 1 else parts[0]

    # ==========================================================================
    # Validation Methods
    # ==========================================================================

    def validate_required(self) -> None:
        """Validate that required configuration values are set.

        Raises RuntimeError if required values are missing in production.
        """
        errors = []

        if self.IS_PROD:
            if not self.JWT_SECRET:
                errors.append('JWT_SECRET environment variable is required in production')
            if not self.ENCRYPTION_KEY:
                errors.append('ENCRYPTION_KEY environment variable is required in production')
            if self.CORS_ORIGINS == '*':
                errors.append('CORS_ORIGINS should not be "*" in production')

        if errors:
            raise RuntimeError('Configuration errors:\n' + '\n'.join(f'  - {e}' for e in errors))

    def to_dict(self) -> Dict[str, Any]:
        """Export current configuration as dictionary (for debugging)."""
        return {
            'environment': {
                'current': self.CURRENT_ENV,
                'is_dev': self.IS_DEV,
                'is_prod': self.IS_PROD,
            },
            'app': {
                'debug': self.DEBUG,
                'port': self.PORT,
                'name': self.APP_NAME,
                'version': self.APP_VERSION,
            },
            'security': {
                'jwt_algorithm': self.JWT_ALGORITHM,
                'jwt_secret_set': bool(self.JWT_SECRET),
                'encryption_key_set': bool(self.ENCRYPTION_KEY),
            },
            'database': {
                'mongo_uri': '***' if self.MONGO_URI else None,
                'name': self.CHAT_DB_NAME,
                'timeout_ms': self.MONGO_TIMEOUT_MS,
            },
            'messaging': {
                'page_default_limit': self.PAGE_DEFAULT_LIMIT,
                'page_max_limit': self.PAGE_MAX_LIMIT,
                'max_message_length': self.MAX_MESSAGE_LENGTH,
                'max_group_participants': self.MAX_GROUP_PARTICIPANTS,
            },
            'cors': {
                'origins': self.CORS_ORIGINS,
            },
            'logging': {
                'level': self.LOG_LEVEL,
            },
        }


# Singleton config instance
config = Config()


# =============================================================================
# Convenience exports
# =============================================================================

def get_env() -> str:
    return config.ENV

def is_dev() -> bool:
    return config.IS_DEV

def is_prod() -> bool:
    return config.IS_PROD

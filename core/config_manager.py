import json
import sys
import logging
from pathlib import Path
from typing import Dict, Any, Optional, Mapping
import os

from core.errors import GatewayConfigError

logger = logging.getLogger(__name__)

# Environment variable -> config key
ENV_OVERRIDES = (
    ('COMPANYGW_BASE_API', 'gateway.base_api'),
    ('COMPANYGW_AUTH_API', 'gateway.auth_api'),
    ('COMPANYGW_IMAGE_URL', 'gateway.image_url'),
    ('COMPANYGW_ALLOWED_URLS', 'gateway.allowed_urls'),
    ('COMPANYGW_BASE_PATH', 'server.base_path'),
    ('COMPANYGW_LOG_LEVEL', 'logging.level'),
    ('LISTEN_HOST', 'server.host'),
    ('HOST', 'server.host'),
    ('PORT', 'server.port'),
)


def get_app_data_dir():
    """Directory for config, logs and generated certificates"""
    if getattr(sys, 'frozen', False):
        if os.name == 'nt':
            appdata_dir = Path(os.getenv('LOCALAPPDATA', Path.home() / 'AppData' / 'Local'))
            app_data_dir = appdata_dir / 'Companygw'
        else:
            app_data_dir = Path.home() / '.config' / 'companygw'
    else:
        # Dev mode
        app_data_dir = Path(__file__).parent.parent / 'app_data'

    app_data_dir.mkdir(parents=True, exist_ok=True)
    return app_data_dir


class ConfigManager:
    def __init__(self, config_path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None):
        """
        Args:
            config_path: JSON config file (defaults to <app data>/config.json)
            environ: Environment used for overrides (defaults to os.environ)
        """
        self.config_path = Path(config_path) if config_path else self._get_config_path()
        self.config = self._load_config()
        self._apply_env_overrides(os.environ if environ is None else environ)

    def _get_config_path(self) -> Path:
        return get_app_data_dir() / 'config.json'

    def _get_default_config(self) -> dict:
        return {
            'server': {
                'host': '0.0.0.0',
                'port': 3000,
                'base_path': '/Companygw',
                'locales': ['en', 'ar'],
                'default_locale': 'ar',
                'static_dir': None,
                'tls': {
                    'enabled': False,
                    'cert_file': None,
                    'key_file': None,
                },
            },

            'gateway': {
                'base_api': '',      # Company banking gateway
                'auth_api': '',      # Auth service (login, 2FA, refresh-token)
                'image_url': '',     # Documents/images origin
                'allowed_urls': '',  # Extra CSP connect-src origins, comma separated
                'timeout': 90,
                'connect_timeout': 10,
                'auth_timeout': 30,
                'max_concurrency': 50,
                'verify_ssl': True,
            },

            'logging': {
                'level': 'INFO',
                'file': 'companygw.log',
                'max_bytes': 5 * 1024 * 1024,
                'backup_count': 5,
            },
        }

    def _load_config(self) -> Dict[str, Any]:
        """Load the config file merged over the defaults"""
        default_config = self._get_default_config()

        try:
            if self.config_path.exists():
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    loaded_config = json.load(f)
                    return self._deep_merge(default_config, loaded_config)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load config {self.config_path}: {e}")

        return default_config

    def _apply_env_overrides(self, environ: Mapping[str, str]):
        # HOST wins over LISTEN_HOST: later entries overwrite earlier ones
        for env_name, key in ENV_OVERRIDES:
            value = environ.get(env_name)
            if value is None or value == '':
                continue

            if key == 'server.port':
                try:
                    value = int(value)
                except ValueError:
                    logger.warning(f"Ignoring non-numeric {env_name}={value!r}")
                    continue

            self.set(key, value)
            logger.debug(f"Config override from {env_name}: {key}")

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        result = base.copy()

        for key, value in update.items():
            if (key in result and
                    isinstance(result[key], dict) and
                    isinstance(value, dict)):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def save(self) -> bool:
        try:
            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=2, ensure_ascii=False)
            logger.info("Configuration saved")
            return True
        except OSError as e:
            logger.error(f"Failed to save config: {e}")
            return False

    def get(self, key: str, default: Any = None) -> Any:
        """Value by dot-notation key"""
        value = self.config

        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def require(self, key: str) -> Any:
        """Like get(), but a missing or empty value is a configuration error"""
        value = self.get(key)
        if value is None or value == '':
            raise GatewayConfigError(f"{key} is not defined")
        return value

    def set(self, key: str, value: Any, save: bool = False) -> bool:
        """Set value by dot-notation key"""
        keys = key.split('.')
        config_ref = self.config

        for k in keys[:-1]:
            if k not in config_ref or not isinstance(config_ref[k], dict):
                config_ref[k] = {}
            config_ref = config_ref[k]

        config_ref[keys[-1]] = value

        if save:
            return self.save()
        return True

    def get_server_config(self) -> Dict[str, Any]:
        return self.get('server', {})

    def get_gateway_config(self) -> Dict[str, Any]:
        return self.get('gateway', {})

    @property
    def base_path(self) -> str:
        """Mount point of every route, normalized to '' or '/segment'"""
        raw = (self.get('server.base_path') or '').strip().rstrip('/')
        if raw and not raw.startswith('/'):
            raw = f"/{raw}"
        return raw

    def allowed_origins(self) -> list:
        """Upstream origins the browser may connect to, in config order"""
        from core.proxy.upstream_urls import url_origin

        candidates = [
            self.get('gateway.base_api') or '',
            self.get('gateway.auth_api') or '',
            self.get('gateway.image_url') or '',
        ]
        candidates.extend(
            entry.strip() for entry in (self.get('gateway.allowed_urls') or '').split(',')
        )

        origins = []
        for candidate in candidates:
            origin = url_origin(candidate) if candidate else ''
            if origin and origin not in origins:
                origins.append(origin)
        return origins

    def reset_to_defaults(self) -> bool:
        self.config = self._get_default_config()
        return self.save()


# Global instance
_config_instance = None


def get_config() -> ConfigManager:
    """Global ConfigManager instance"""
    global _config_instance
    if _config_instance is None:
        _config_instance = ConfigManager()
    return _config_instance

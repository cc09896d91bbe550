"""Runtime settings for the POS sync core, read from the environment / .env."""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

LOG_FORMAT = '[pos] %(asctime)s %(levelname)s %(message)s'


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to the default."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw


def _env_float(name: str, default: float, minimum: Optional[float] = None) -> float:
    raw = _env_string(name)
    try:
        value = float(raw) if raw is not None else default
    except ValueError:
        logging.getLogger('pos.config').warning('Ignoring malformed %s=%r', name, raw)
        value = default
    if minimum is not None and value < minimum:
        value = minimum
    return value


def _env_int(name: str, default: int, minimum: Optional[int] = None) -> int:
    raw = _env_string(name)
    try:
        value = int(raw) if raw is not None else default
    except ValueError:
        logging.getLogger('pos.config').warning('Ignoring malformed %s=%r', name, raw)
        value = default
    if minimum is not None and value < minimum:
        value = minimum
    return value


def _env_flag(name: str, default: str = '0') -> bool:
    return (_env_string(name, default) or '').lower() in ('1', 'true', 'yes', 'on')


@dataclass(frozen=True)
class Settings:
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    store_id: str = 'store-001'
    counter_id: str = 'COUNTER-01'
    tax_rate: float = 18.0
    data_dir: str = 'pos_data'
    storage_backend: str = 'file'
    sync_interval: float = 30.0
    max_sync_attempts: int = 6
    network_check_interval: float = 5.0
    backoff_base: float = 2.0
    backoff_cap: float = 1800.0
    request_timeout: float = 15.0
    multi_store_device: bool = False
    log_level: str = 'INFO'
    host: str = '0.0.0.0'
    port: int = 5000
    debug: bool = False

    @property
    def has_remote(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Build Settings from the process environment after loading .env."""
    load_dotenv(env_file)
    backend = (_env_string('POS_STORAGE_BACKEND', 'file') or 'file').lower()
    if backend not in ('file', 'sqlite'):
        logging.getLogger('pos.config').warning('Unknown POS_STORAGE_BACKEND %r, using file', backend)
        backend = 'file'
    url = _env_string('SUPABASE_URL')
    return Settings(
        supabase_url=url.rstrip('/') if url else None,
        supabase_key=_env_string('SUPABASE_ANON_KEY'),
        store_id=_env_string('POS_STORE_ID', 'store-001'),
        counter_id=_env_string('POS_COUNTER_ID', 'COUNTER-01'),
        tax_rate=_env_float('POS_TAX_RATE', 18.0, minimum=0.0),
        data_dir=_env_string('POS_DATA_DIR', 'pos_data'),
        storage_backend=backend,
        sync_interval=_env_float('POS_SYNC_INTERVAL', 30.0, minimum=5.0),
        max_sync_attempts=_env_int('POS_MAX_SYNC_ATTEMPTS', 6, minimum=1),
        network_check_interval=_env_float('POS_NETWORK_CHECK_INTERVAL', 5.0, minimum=1.0),
        backoff_base=_env_float('POS_BACKOFF_BASE', 2.0, minimum=0.0),
        backoff_cap=_env_float('POS_BACKOFF_CAP', 1800.0, minimum=0.0),
        request_timeout=_env_float('POS_REQUEST_TIMEOUT', 15.0, minimum=1.0),
        multi_store_device=_env_flag('POS_MULTI_STORE_DEVICE'),
        log_level=(_env_string('POS_LOG_LEVEL', 'INFO') or 'INFO').upper(),
        host=_env_string('HOST', '0.0.0.0'),
        port=_env_int('PORT', 5000),
        debug=_env_flag('FLASK_DEBUG'),
    )


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)

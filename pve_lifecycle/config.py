"""
Runtime settings read from the environment.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_USER = 'root@pam'
DEFAULT_PORT = 8006


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name)
    if value is None or value.strip() == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f'{name} must be an integer, got {value!r}')


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    value = environ.get(name)
    if value is None or value.strip() == '':
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f'{name} must be a number, got {value!r}')


def _env_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    value = environ.get(name)
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class Settings:
    """Connection and behaviour settings.

    Environment variables:
      PVE_HOST, PVE_USER, PVE_TOKEN_NAME, PVE_TOKEN_VALUE   connection / token auth
      PVE_PORT, PVE_VERIFY_SSL                              API endpoint
      PVE_SHUTDOWN_DELAY, PVE_SHUTDOWN_ATTEMPTS             guest tools polling
      PVE_MAX_WORKERS                                       concurrent VMs
      PVE_TASK_TIMEOUT                                      seconds to wait for a PVE task
      PVE_BATCH_TIMEOUT                                     seconds before the batch is cancelled
      PVE_LOG_LEVEL                                         logging level name
    """
    host: Optional[str] = None
    user: str = DEFAULT_USER
    token_name: Optional[str] = None
    token_value: Optional[str] = None
    port: int = DEFAULT_PORT
    verify_ssl: bool = False
    shutdown_delay: float = 5
    shutdown_attempts: int = 3
    max_workers: int = 1
    task_timeout: float = 300
    batch_timeout: Optional[float] = None
    log_level: str = 'WARNING'

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        env = os.environ if environ is None else environ
        return cls(
            host=env.get('PVE_HOST') or None,
            user=env.get('PVE_USER') or DEFAULT_USER,
            token_name=env.get('PVE_TOKEN_NAME') or None,
            token_value=env.get('PVE_TOKEN_VALUE') or None,
            port=_env_int(env, 'PVE_PORT', DEFAULT_PORT),
            verify_ssl=_env_bool(env, 'PVE_VERIFY_SSL', False),
            shutdown_delay=_env_float(env, 'PVE_SHUTDOWN_DELAY', 5),
            shutdown_attempts=_env_int(env, 'PVE_SHUTDOWN_ATTEMPTS', 3),
            max_workers=_env_int(env, 'PVE_MAX_WORKERS', 1),
            task_timeout=_env_float(env, 'PVE_TASK_TIMEOUT', 300),
            batch_timeout=_env_float(env, 'PVE_BATCH_TIMEOUT', 0) or None,
            log_level=(env.get('PVE_LOG_LEVEL') or 'WARNING').upper(),
        )

    def has_token(self) -> bool:
        """True when every piece of API token authentication is present."""
        return bool(self.host and self.user and self.token_name and self.token_value)

"""Account configuration: a JSON file plus environment overrides."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields
from pathlib import Path

from envibridge import _constants
from envibridge._constants import DEFAULT_POLL_INTERVAL, DEFAULT_REQUEST_TIMEOUT
from envibridge.credentials import AccountCredentials
from envibridge.errors import ConfigError

_LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "ENVIBRIDGE_"


@dataclass
class Config:
    """Settings for one account.

    Only account settings are stored; access tokens are kept in memory for
    the lifetime of the process.
    """

    username: str = ""
    password: str = ""
    backend: str = "envi"
    poll_interval: float = DEFAULT_POLL_INTERVAL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    use_refresh_token: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Config:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            _LOGGER.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
        try:
            return cls(
                username=str(data.get("username", "") or ""),
                password=str(data.get("password", "") or ""),
                backend=str(data.get("backend", "envi") or "envi"),
                poll_interval=float(data.get("poll_interval", DEFAULT_POLL_INTERVAL)),  # type: ignore[arg-type]
                request_timeout=float(data.get("request_timeout", DEFAULT_REQUEST_TIMEOUT)),  # type: ignore[arg-type]
                use_refresh_token=bool(data.get("use_refresh_token", False)),
            )
        except (TypeError, ValueError) as err:
            raise ConfigError(f"Invalid config value: {err}") from err

    def to_dict(self) -> dict[str, object]:
        return asdict(self)

    def missing(self) -> list[str]:
        """Names of required settings that are empty."""
        return [name for name in ("username", "password") if not getattr(self, name)]

    def validate(self) -> None:
        """Raise :class:`ConfigError` if a required setting is missing."""
        missing = self.missing()
        if missing:
            raise ConfigError(f"Missing {', '.join(missing)} in configuration.")
        if self.poll_interval <= 0:
            raise ConfigError("poll_interval must be positive.")

    @property
    def account(self) -> AccountCredentials:
        return AccountCredentials(self.username, self.password)


def load_config(
    path: Path | None = None, *, environ: Mapping[str, str] | None = None
) -> Config:
    """Read the config file (if any) and apply ``ENVIBRIDGE_*`` overrides.

    A missing file yields the defaults; a file that is not valid JSON raises
    :class:`ConfigError`.
    """
    path = path or _constants.CONFIG_FILE
    env = os.environ if environ is None else environ

    data: dict[str, object] = {}
    if path.exists():
        try:
            loaded = json.loads(path.read_text())
        except ValueError as err:
            raise ConfigError(f"{path} is not valid JSON: {err}") from err
        if not isinstance(loaded, dict):
            raise ConfigError(f"{path} must contain a JSON object.")
        data.update(loaded)

    for key in ("username", "password", "backend"):
        value = env.get(f"{ENV_PREFIX}{key.upper()}")
        if value:
            data[key] = value

    return Config.from_dict(data)


def save_config(config: Config, path: Path | None = None) -> Path:
    """Write *config* as JSON, readable by the owner only."""
    path = path or _constants.CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.to_dict(), indent=2))
    path.chmod(0o600)
    return path

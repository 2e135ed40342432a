"""Cloud bridge for Envi heaters and purifier-cloud air purifiers."""

from envibridge.bridge import Bridge
from envibridge.client import ApiResponse, Client
from envibridge.config import Config, load_config
from envibridge.credentials import Credential, CredentialStore
from envibridge.errors import (
    AuthenticationError,
    AuthorizationExpired,
    AuthorizationFailure,
    BridgeError,
    CommunicationFailure,
    ConfigError,
    ProtocolError,
)
from envibridge.models import (
    DeviceIdentity,
    EnviSnapshot,
    PurifierSnapshot,
    SetFanMode,
    SetPower,
    SetSetting,
    SetTargetTemperature,
    c_to_f,
    f_to_c,
)
from envibridge.poller import Poller

__all__ = [
    "ApiResponse",
    "AuthenticationError",
    "AuthorizationExpired",
    "AuthorizationFailure",
    "Bridge",
    "BridgeError",
    "Client",
    "CommunicationFailure",
    "Config",
    "ConfigError",
    "Credential",
    "CredentialStore",
    "DeviceIdentity",
    "EnviSnapshot",
    "Poller",
    "ProtocolError",
    "PurifierSnapshot",
    "SetFanMode",
    "SetPower",
    "SetSetting",
    "SetTargetTemperature",
    "c_to_f",
    "f_to_c",
    "load_config",
]

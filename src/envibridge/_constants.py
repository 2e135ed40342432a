"""Internal constants: vendor endpoints, fixed client metadata and defaults."""

from __future__ import annotations

import uuid
from pathlib import Path

# ---------------------------------------------------------------------------
# Envi heaters (simple backend)
# ---------------------------------------------------------------------------

ENVI_API_BASE = "https://app-apis.enviliving.com/apis/v1"

# The mobile app registers itself with a fixed iOS device identifier.
ENVI_LOGIN_FIELDS: dict[str, str] = {
    "login_type": "1",
    "device_type": "ios",
    "device_id": "D46E2A18-EE5D-48FF-AFE8-AAAAAAAAAAAA",
}

# ---------------------------------------------------------------------------
# Purifier cloud (complex backend)
# ---------------------------------------------------------------------------

PURIFIER_ACCOUNT_BASE = "https://account.purifiercloud.com"
PURIFIER_API_BASE = "https://api.purifiercloud.com"

PURIFIER_LOGIN_INIT_URL = f"{PURIFIER_ACCOUNT_BASE}/oauth/authorize"
PURIFIER_TOKEN_URL = f"{PURIFIER_API_BASE}/v1/auth/token"
PURIFIER_REFRESH_URL = f"{PURIFIER_API_BASE}/v1/auth/refresh"

PURIFIER_REDIRECT_URI = "https://app.purifiercloud.com/oauth/callback"

PURIFIER_AUTH_PARAMS: dict[str, str] = {
    "client_id": "purifier-mobile",
    "response_type": "code",
    "locale": "en",
    "redirect_uri": PURIFIER_REDIRECT_URI,
}

PURIFIER_CLIENT_FIELDS: dict[str, str] = {
    "clientId": "purifier-mobile",
    "clientType": "APP",
    "appVersion": "3.4.0",
}

PURIFIER_PAGE_SIZE = 50

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) "
    "AppleWebKit/605.1.15 (KHTML, like Gecko) Mobile/15E148"
)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_POLL_INTERVAL = 10.0  # seconds between the end of one fetch and the next
DEFAULT_REQUEST_TIMEOUT = 15.0

# Namespace for deterministic per-device local identifiers.
DEVICE_NAMESPACE = uuid.UUID("6c1b9a52-3f0e-5d8e-9a47-1f2d8c4b7e60")

CONFIG_DIR = Path.home() / ".config" / "envibridge"
CONFIG_FILE = CONFIG_DIR / "config.json"

from __future__ import annotations

PROTOCOL_VERSION = 3
AUTH_PAYLOAD_VERSION = "v2"

DEFAULT_PORT = 18789
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
DEFAULT_RECONNECT_DELAY_SECONDS = 3.0
DEFAULT_HISTORY_LIMIT = 200

DEFAULT_CLIENT_ID = "openclaw-control-ui"
DEFAULT_CLIENT_VERSION = "1.0.0"
DEFAULT_CLIENT_PLATFORM = "python"
DEFAULT_CLIENT_MODE = "ui"
DEFAULT_ROLE = "operator"
DEFAULT_SCOPES = ("operator.admin",)
DEFAULT_LOCALE = "en-US"
DEFAULT_USER_AGENT = "clawlink/0.1.0"

DEFAULT_KEY_PATH = "~/.clawlink/device_key.pem"
DEFAULT_TOKEN_PATH = "~/.clawlink/device_token.json"

# Session key used when the gateway has not told us its default yet.
FALLBACK_SESSION_KEY = "main"

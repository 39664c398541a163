from pathlib import Path
from typing import Any, Dict

from jose import jwt, JWTError

from telehealth_chat.config import Settings, get_settings
from telehealth_chat.constants import Role
from telehealth_chat.utils.logger import get_logger

logger = get_logger("token_store")


class TokenStore:
    """Bearer token persisted by the login flow.

    Resolution order: explicit token, `AUTH_TOKEN` setting, then the token file.
    """

    def __init__(self, token: str | None = None, path: str | Path | None = None, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self._token = token or self.settings.AUTH_TOKEN
        self.path = Path(path or self.settings.TOKEN_FILE).expanduser()

    def get(self) -> str | None:
        if self._token:
            return self._token
        try:
            token = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"⚠️ Could not read token file {self.path}: {e}")
            return None
        return token or None

    def save(self, token: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(token, encoding="utf-8")
        self._token = token

    def clear(self) -> None:
        self._token = None
        self.path.unlink(missing_ok=True)

    def auth_headers(self) -> Dict[str, str]:
        token = self.get()
        return {"Authorization": f"Bearer {token}"} if token else {}

    def claims(self) -> Dict[str, Any]:
        """Unverified token claims; the server verifies, the client only reads its own identity."""
        token = self.get()
        if not token:
            return {}
        try:
            return jwt.get_unverified_claims(token)
        except JWTError as e:
            logger.warning(f"⚠️ Stored token is not a readable JWT: {e}")
            return {}

    def user_id(self) -> str | None:
        claims = self.claims()
        value = claims.get("userId") or claims.get("id") or claims.get("sub")
        return str(value) if value else None

    def role(self) -> Role | None:
        value = self.claims().get("role")
        if not value:
            return None
        try:
            return Role(value)
        except ValueError:
            logger.warning(f"⚠️ Unknown role in token: {value}")
            return None

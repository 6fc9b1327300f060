from jose import JWTError, jwt
from cryptography.fernet import Fernet, InvalidToken
from datetime import datetime, timezone, timedelta
import secrets
from typing import Optional, Dict, Any
from mailledger.core.config import settings
from mailledger.core.exceptions import TokenDecryptionError


ALGORITHM = "HS256"
SERVICE_TOKEN_EXPIRE_MINUTES = 5
OAUTH_STATE_BYTES = 32


class TokenCipher:
    """Encrypts OAuth token material before it is persisted."""

    def __init__(self, key: str):
        self._fernet = Fernet(key.encode("utf-8") if isinstance(key, str) else key)

    def encrypt(self, plain_text: Optional[str]) -> Optional[str]:
        if not plain_text:
            return None
        return self._fernet.encrypt(plain_text.encode("utf-8")).decode("utf-8")

    def decrypt(self, cipher_text: Optional[str]) -> str:
        if not cipher_text:
            raise TokenDecryptionError("No token stored")
        try:
            return self._fernet.decrypt(cipher_text.encode("utf-8")).decode("utf-8")
        except (InvalidToken, ValueError) as exc:
            raise TokenDecryptionError("Stored token could not be decrypted") from exc


_cipher: Optional[TokenCipher] = None


def get_token_cipher() -> TokenCipher:
    global _cipher
    if _cipher is None:
        _cipher = TokenCipher(settings.ENCRYPTION_KEY)
    return _cipher


class SecurityUtils:
    # ==================== OAUTH STATE ====================
    @staticmethod
    def generate_state() -> str:
        """Random state parameter correlating an authorization redirect with a user"""
        return secrets.token_urlsafe(OAUTH_STATE_BYTES)

    @staticmethod
    def mask(value: Optional[str]) -> str:
        if not value or len(value) <= 4:
            return "****"
        return value[:2] + "****" + value[-2:]

    # ==================== JWT ====================
    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        """Create a signed bearer token"""
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        expire = now + (expires_delta or timedelta(minutes=SERVICE_TOKEN_EXPIRE_MINUTES))

        to_encode.update({
            "exp": expire,
            "iat": now,
            "type": "access"
        })
        return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def create_service_token(user_id: int) -> str:
        """Token presented to the ledger API when acting for a user"""
        return SecurityUtils.create_access_token({"sub": str(user_id), "roles": ["SERVICE"]})

    @staticmethod
    def verify_access_token(token: str) -> Optional[Dict[str, Any]]:
        """Verify JWT access token"""
        try:
            payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
            if payload.get("type") != "access":
                return None
            return payload
        except JWTError:
            return None

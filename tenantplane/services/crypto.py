from __future__ import annotations

from base64 import urlsafe_b64encode
import hashlib
import hmac
import secrets

from cryptography.fernet import Fernet, InvalidToken

from tenantplane.core.errors import SecretsConfigurationError


def hash_token(token: str) -> str:
    # Tokens are looked up by hash so the plaintext never sits in an index.
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def new_token(nbytes: int = 32) -> str:
    return secrets.token_urlsafe(nbytes)


def constant_time_equals(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


class SecretSealer:
    """Fernet envelope for tenant secret material stored in the control-plane database."""

    def __init__(self, master_key: str | None) -> None:
        source = (master_key or "").strip()
        if not source:
            raise SecretsConfigurationError("SECRETS_MASTER_KEY is required to store tenant secrets")
        # Derive a Fernet key so operators can supply any high-entropy string.
        digest = hashlib.sha256(source.encode("utf-8")).digest()
        self._fernet = Fernet(urlsafe_b64encode(digest))

    def seal(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def unseal(self, sealed: str) -> str:
        try:
            return self._fernet.decrypt(sealed.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise SecretsConfigurationError("sealed secret could not be decrypted with the configured key") from exc

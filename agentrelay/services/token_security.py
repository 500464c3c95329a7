from __future__ import annotations

import base64
import hashlib
import hmac
import os
import re


_BEARER_PATTERN = re.compile(r"(?i)\bbearer\s+[a-z0-9\-._~+/]+=*")
_TOKENISH_PATTERN = re.compile(r"(?i)\b(access|refresh|id)_token\b[^,\n]*")
_API_KEY_PATTERN = re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}")
_QUERY_KEY_PATTERN = re.compile(r"(?i)([?&](?:key|api_key|apikey)=)[^&\s]+")


def redact_sensitive_text(value: str | None) -> str:
    if not value:
        return ""
    out = _BEARER_PATTERN.sub("Bearer [REDACTED]", value)
    out = _TOKENISH_PATTERN.sub("[REDACTED_TOKEN_FIELD]", out)
    out = _API_KEY_PATTERN.sub("sk-[REDACTED]", out)
    out = _QUERY_KEY_PATTERN.sub(r"\1[REDACTED]", out)
    return out


class TokenCipher:
    """Decrypts provider tokens stored with the `enc:v1:` keystream prefix.

    Tokens are written by the account-linking flow, so this side only reads.
    Values without the prefix are returned unchanged.
    """

    PREFIX = "enc:v1:"

    def __init__(self, secret: str | None) -> None:
        self._secret = (secret or "").strip()
        self._key = hashlib.sha256(self._secret.encode("utf-8")).digest() if self._secret else b""

    def enabled(self) -> bool:
        return bool(self._key)

    def decrypt(self, value: str | None) -> str | None:
        if value is None or not self.enabled():
            return value
        if not value.startswith(self.PREFIX):
            return value
        encoded = value[len(self.PREFIX) :]
        try:
            masked = base64.urlsafe_b64decode(encoded.encode("ascii"))
        except ValueError:
            return None
        raw = bytes(left ^ right for left, right in zip(masked, self._keystream(len(masked))))
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            return None

    def _keystream(self, length: int) -> bytes:
        out = bytearray()
        counter = 0
        while len(out) < length:
            out.extend(
                hmac.new(
                    self._key,
                    msg=str(counter).encode("ascii"),
                    digestmod=hashlib.sha256,
                ).digest()
            )
            counter += 1
        return bytes(out[:length])


def build_token_cipher_from_env() -> TokenCipher:
    return TokenCipher(secret=os.getenv("CONNECTED_ACCOUNTS_TOKEN_ENCRYPTION_KEY"))

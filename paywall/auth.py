import time
from collections.abc import Callable

from jose import JWTError, jwt

from paywall.errors import AuthenticationError

# Seconds of slack so a token does not expire mid-request
EXPIRY_LEEWAY = 5


class BearerCredential:
    """
    Bearer token supplied by the authentication layer.

    Either a fixed token or a provider callable (e.g. reading the session
    cookie) that is asked on every request. JWTs are inspected, without
    verification, for `exp` and `sub`; opaque tokens are passed through as is.
    """

    def __init__(self, token: str | None = None, provider: Callable[[], str | None] | None = None):
        if token is None and provider is None:
            raise ValueError("token or provider is required")
        self._token = token
        self._provider = provider

    def token(self) -> str:
        token = self._provider() if self._provider is not None else self._token
        if not token:
            raise AuthenticationError("Not authenticated")
        return token

    def claims(self) -> dict:
        try:
            return jwt.get_unverified_claims(self.token())
        except JWTError:
            return {}

    @property
    def payer_ref(self) -> str | None:
        sub = self.claims().get("sub")
        return str(sub) if sub is not None else None

    def headers(self) -> dict[str, str]:
        token = self.token()
        exp = self.claims().get("exp")
        if exp is not None and float(exp) <= time.time() + EXPIRY_LEEWAY:
            raise AuthenticationError("Session expired, please log in again")
        return {"Authorization": f"Bearer {token}"}

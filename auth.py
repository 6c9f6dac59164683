from dataclasses import asdict, dataclass
from typing import Optional, Protocol

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings
from errors import Blocked, RateLimited


RATE_LIMITED = "rate-limited"
BLOCKED = "blocked"


@dataclass(frozen=True)
class ExternalIdentity:
    external_id: str
    email: str
    name: Optional[str] = None
    image_url: Optional[str] = None


class IdentityProvider(Protocol):
    def resolve(self, token: Optional[str]) -> Optional[ExternalIdentity]: ...


class SignedTokenIdentityProvider:
    """Identity tokens signed by the upstream provider with a shared secret."""

    def __init__(
        self, secret: Optional[str] = None, max_age_secs: Optional[int] = None
    ) -> None:
        settings = get_settings()
        self.max_age_secs = max_age_secs or settings.identity_max_age_secs
        self._serializer = URLSafeTimedSerializer(
            secret or settings.identity_secret, salt="identity-token"
        )

    def issue(self, identity: ExternalIdentity) -> str:
        return self._serializer.dumps(asdict(identity))

    def resolve(self, token: Optional[str]) -> Optional[ExternalIdentity]:
        if not token:
            return None
        try:
            data = self._serializer.loads(token, max_age=self.max_age_secs)
        except BadSignature:
            return None
        if not isinstance(data, dict) or not data.get("external_id"):
            return None
        if not data.get("email"):
            return None
        return ExternalIdentity(
            external_id=str(data["external_id"]),
            email=str(data["email"]),
            name=data.get("name"),
            image_url=data.get("image_url"),
        )


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None


class SecurityGate(Protocol):
    def protect(self, user_key: str, requested: int = 1) -> Decision: ...


class AllowAllGate:
    def protect(self, user_key: str, requested: int = 1) -> Decision:
        return Decision(allowed=True)


def enforce(decision: Decision) -> None:
    if decision.allowed:
        return
    if decision.reason == RATE_LIMITED:
        raise RateLimited("Too many requests. Please try again later.")
    raise Blocked("Request blocked")

import hashlib
import hmac
import secrets
from typing import Iterable

from bulwark.app.exceptions import ConfigurationError


def hash_api_key(raw_key: str) -> str:
    """SHA-256 hex digest of a key; the only form in which keys are kept."""
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(nbytes: int = 32) -> str:
    """Create a random URL-safe key from nbytes of entropy."""
    return secrets.token_urlsafe(nbytes)


class CredentialSet:
    """Immutable set of accepted API key digests.

    Secrets are digested once at construction and the plaintext is not kept.
    Membership checks compare the presented digest against every entry with
    `hmac.compare_digest` and fold the results without short-circuiting, so
    the time taken does not depend on which entry (if any) matches.

    Note:
        A plain `==` on the digests reintroduces a timing side channel even
        though the values are hashed.
    """

    __slots__ = ("_digests",)

    def __init__(self, digests: Iterable[str] = ()):
        object.__setattr__(self, "_digests", tuple(dict.fromkeys(digests)))

    def __setattr__(self, name, value):
        raise AttributeError("CredentialSet is immutable")

    @classmethod
    def from_secrets(cls, raw_keys: Iterable[str]) -> "CredentialSet":
        """Build a credential set from plaintext secrets.

        Raises:
            ConfigurationError: If a configured secret is blank
        """
        digests = []
        for raw_key in raw_keys:
            if not raw_key or not raw_key.strip():
                raise ConfigurationError("API keys must not be blank")
            digests.append(hash_api_key(raw_key))
        return cls(digests)

    def __len__(self) -> int:
        return len(self._digests)

    def __bool__(self) -> bool:
        return bool(self._digests)

    def matches(self, presented_key: str) -> bool:
        """Check a presented key against every accepted digest."""
        presented = hash_api_key(presented_key).encode("ascii")
        matched = False
        for digest in self._digests:
            matched |= hmac.compare_digest(digest.encode("ascii"), presented)
        return matched

"""
Invite token generation and fingerprinting.

SECURITY:
- Tokens come from the OS CSPRNG (secrets); there is no fallback source
- Only the HMAC fingerprint is stored; the raw token is shown once to the issuer
- The fingerprint key (pepper) lives in configuration, never in the database
"""
import hashlib
import hmac
import logging
import math
import secrets
from typing import Tuple

from app.config import settings

logger = logging.getLogger(__name__)

MIN_TOKEN_LENGTH = 12
MIN_ENTROPY_BITS = 72

DEV_PEPPER = "dev-invite-pepper-change-me"


def resolve_pepper() -> str:
    """Fingerprint key from settings; production refuses to run without one."""
    pepper = settings.invite_token_pepper
    if pepper:
        return pepper
    if settings.is_production:
        raise ValueError(
            "INVITE_TOKEN_PEPPER environment variable is required in production. "
            "Generate with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
        )
    logger.warning("INVITE_TOKEN_PEPPER not set, using development pepper (INSECURE)")
    return DEV_PEPPER


class TokenCodec:
    """Generates raw invite tokens and their keyed fingerprints."""

    def __init__(
        self,
        pepper: str,
        alphabet: str = None,
        length: int = None,
        digest: str = None
    ):
        alphabet = alphabet or settings.invite_token_alphabet
        length = length or settings.invite_token_length
        digest = digest or settings.invite_fingerprint_digest

        if not pepper:
            raise ValueError("Fingerprint pepper must not be empty")
        if len(set(alphabet)) != len(alphabet) or len(alphabet) < 2:
            raise ValueError("Token alphabet must contain at least two distinct characters")
        if length < MIN_TOKEN_LENGTH:
            raise ValueError(f"Token length must be at least {MIN_TOKEN_LENGTH}")

        entropy_bits = length * math.log2(len(alphabet))
        if entropy_bits < MIN_ENTROPY_BITS:
            raise ValueError(
                f"Token entropy {entropy_bits:.1f} bits is below the {MIN_ENTROPY_BITS}-bit minimum"
            )
        if digest not in hashlib.algorithms_available:
            raise ValueError(f"Unknown fingerprint digest: {digest}")

        self._key = pepper.encode("utf-8")
        self._alphabet = alphabet
        self._length = length
        self._digest = digest
        self.entropy_bits = entropy_bits

    def issue_raw(self) -> Tuple[str, str]:
        """
        Generate a new raw token and its fingerprint.

        Returns:
            Tuple of (raw_token, fingerprint). The raw token must only be
            handed to the issuer; never persist or log it.
        """
        raw = "".join(secrets.choice(self._alphabet) for _ in range(self._length))
        return raw, self.fingerprint(raw)

    def fingerprint(self, raw_token: str) -> str:
        """Deterministic keyed hash (hex) used as the lookup key."""
        return hmac.new(
            key=self._key,
            msg=raw_token.strip().encode("utf-8"),
            digestmod=self._digest,
        ).hexdigest()

    def matches(self, raw_token: str, fingerprint: str) -> bool:
        """Constant-time comparison of a raw token against a stored fingerprint."""
        return hmac.compare_digest(self.fingerprint(raw_token), fingerprint)

from __future__ import annotations

import hashlib
import hmac
import re
from typing import Optional

from stagekey.service.clock import RandomSource, SecureRandom
from stagekey.storage.models import Role

_STRIP_RE = re.compile(r"[\s-]+")

TOKEN_PREFIXES = {
    Role.MASTER_ADMIN: "mk",
    Role.ADMIN: "ak",
    Role.PRODUCER: "pk",
}

# hex characters of entropy after the prefix
_TOKEN_LENGTHS = {
    Role.MASTER_ADMIN: 32,
    Role.ADMIN: 16,
    Role.PRODUCER: 16,
}


def normalize(raw: str) -> str:
    """Drop whitespace and hyphens so cosmetic formatting never matters."""
    return _STRIP_RE.sub("", (raw or "").strip())


def digest(raw: str) -> str:
    return hashlib.sha256(normalize(raw).encode("utf-8")).hexdigest()


def verify(raw: str, token_hash: str) -> bool:
    return hmac.compare_digest(digest(raw), token_hash or "")


class TokenCodec:
    """Issues prefixed raw tokens and computes their storage digests.

    The prefix only identifies the token family for operators; it is never
    consulted for authorization.
    """

    def __init__(self, random_source: Optional[RandomSource] = None) -> None:
        self.random = random_source or SecureRandom()

    def issue(self, role: Role) -> str:
        prefix = TOKEN_PREFIXES[role]
        length = _TOKEN_LENGTHS[role]
        return f"{prefix}-{self.random.token_hex(length // 2)}"

    normalize = staticmethod(normalize)
    digest = staticmethod(digest)
    verify = staticmethod(verify)

"""
access/tokens.py -- Auditor token secret generation, fingerprinting, and preview.

Security design decisions:
  Secret: secrets.token_hex(32) gives 256 bits of entropy -- brute-force is
       computationally infeasible. The "aat_" prefix makes a leaked token easy
       to spot in logs and secret scanners.

  Fingerprint: HMAC-SHA256(SECRET_KEY, raw_secret). Deterministic, so the
       store can look a presented secret up by equality on a UNIQUE column. A
       stolen database alone is not enough to test guesses -- the attacker
       also needs SECRET_KEY. bcrypt's intentional slowness buys nothing for
       high-entropy secrets and would make every validation expensive.

  Preview: first 8 and last 4 characters, for humans telling tokens apart in
       a listing. Far too short to be useful to an attacker.

The raw secret leaves this module exactly once, inside IssuedToken, and is
never written to the store or to a log.

Layer rule: no imports from api/ or auth/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

from core.config import get_settings

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

SECRET_PREFIX = "aat_"

_PREVIEW_HEAD = 8
_PREVIEW_TAIL = 4


def generate_secret() -> str:
    """Generate a new raw auditor secret in the format: aat_<64 hex chars>."""
    return f"{SECRET_PREFIX}{secrets.token_hex(32)}"


def hash_secret(raw_secret: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_secret) as a 64-char hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw_secret.encode(),
        hashlib.sha256,
    ).hexdigest()


def preview_secret(raw_secret: str) -> str:
    """Return a display-only preview like 'aat_1a2b...9f0e'.

    Secrets shorter than head + tail are returned unchanged; generated secrets
    are always long enough that this never happens in practice.
    """
    if len(raw_secret) < _PREVIEW_HEAD + _PREVIEW_TAIL:
        return raw_secret
    return f"{raw_secret[:_PREVIEW_HEAD]}...{raw_secret[-_PREVIEW_TAIL:]}"

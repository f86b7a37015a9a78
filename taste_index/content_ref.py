from __future__ import annotations

import re
from urllib.parse import urlsplit

from .errors import InvalidReference

_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*$")
_DIGEST_RE = re.compile(r"^[A-Za-z0-9]+(/[A-Za-z0-9._-]+)*$")

# CIDv0 is base58btc sha2-256 ("Qm" + 44 chars); CIDv1 here is multibase base32 ("b...").
_CIDV0_RE = re.compile(r"^Qm[1-9A-HJ-NP-Za-km-z]{44}$")
_CIDV1_RE = re.compile(r"^b[a-z2-7]{20,}$")


def _looks_like_cid(value: str) -> bool:
    return bool(_CIDV0_RE.fullmatch(value) or _CIDV1_RE.fullmatch(value))


def _split_scheme(raw: str) -> tuple[str, str] | None:
    if "://" in raw:
        scheme, _, rest = raw.partition("://")
    elif ":" in raw:
        scheme, _, rest = raw.partition(":")
    else:
        return None
    return scheme, rest


def _from_gateway_url(raw: str) -> str | None:
    try:
        parts = urlsplit(raw)
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        return None

    segs = [s for s in (parts.path or "").split("/") if s]
    for i, seg in enumerate(segs[:-1]):
        if seg == "ipfs":
            return "/".join(segs[i + 1 :])
    return None


def resolve_content_ref(raw: str, *, scheme: str = "ipfs") -> str:
    """
    Validate a content-addressed locator and return its canonical form.

    Accepted inputs are "<scheme>://<digest>" and "<scheme>:<digest>". For ipfs, a
    bare CID or an HTTP gateway URL ending in /ipfs/<cid>[/path] is also accepted.
    The canonical form is always "<scheme>://<digest>".
    """
    expected = (scheme or "").strip().lower()
    if not _SCHEME_RE.fullmatch(expected):
        raise InvalidReference(f"Invalid expected scheme: {scheme!r}")

    value = (raw or "").strip()
    if not value:
        raise InvalidReference("Content reference is empty")

    digest: str | None = None

    if expected == "ipfs":
        gateway_digest = _from_gateway_url(value)
        if gateway_digest is not None:
            digest = gateway_digest
        elif _looks_like_cid(value.split("/", 1)[0]):
            digest = value

    if digest is None:
        split = _split_scheme(value)
        if split is None:
            raise InvalidReference(f"Content reference has no scheme: {value!r}")

        got_scheme, rest = split
        if not _SCHEME_RE.fullmatch(got_scheme):
            raise InvalidReference(f"Content reference has a malformed scheme: {value!r}")
        if got_scheme.lower() != expected:
            raise InvalidReference(
                f"Content reference scheme {got_scheme.lower()!r} does not match {expected!r}"
            )
        digest = rest

    digest = digest.strip().strip("/")
    if not digest or not _DIGEST_RE.fullmatch(digest):
        raise InvalidReference(f"Content reference has a malformed digest: {value!r}")

    if expected == "ipfs" and not _looks_like_cid(digest.split("/", 1)[0]):
        raise InvalidReference(f"Content reference is not a valid IPFS CID: {value!r}")

    return f"{expected}://{digest}"


def gateway_url(ref: str, *, gateway: str) -> str:
    """Render a canonical ipfs locator as an HTTP URL on the given gateway."""
    canonical = resolve_content_ref(ref, scheme="ipfs")
    digest = canonical[len("ipfs://") :]
    base = (gateway or "").strip()
    if not base:
        raise ValueError("gateway must be non-empty")
    return base.rstrip("/") + "/" + digest

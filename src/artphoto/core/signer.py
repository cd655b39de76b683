"""Request signing for the Volcengine OpenAPI (HMAC-SHA256).

This module reproduces, byte for byte, the canonical-request and keyed-hash
chain that the remote generation API verifies.  Everything here is pure:
the same :class:`SigningContext` and timestamp always produce the same
``Authorization`` value, which keeps the signer safe for concurrent use and
trivially testable.

Algorithm
---------
1. **URI escaping** -- percent-encode the UTF-8 bytes of every character
   outside ``[A-Za-z0-9_.~-]`` with upper-case hex.  ``*`` is escaped too
   (``%2A``); the server computes its side the same way.
2. **Canonical query** -- keys sorted by code point, list values escaped and
   sorted with the key repeated for each value, pairs joined with ``&``.
3. **Canonical headers** -- drop the ignore-set, optionally intersect with an
   allow-list (``host`` and ``x-date`` are always kept), lower-case keys,
   normalise whitespace in values and sort.
4. **Body hash** -- hex SHA-256 of the body unless an override is supplied
   (``X-NotSignBody`` requests sign the empty-string hash).
5. **Signature** -- ``HMAC(secret, date) -> region -> service -> "request"``,
   then ``HMAC(kSigning, stringToSign)`` rendered as lower-case hex.

Usage
-----
::

    from artphoto.core.signer import Signer

    signer = Signer(
        access_key_id=config.access_key_id,
        secret_access_key=config.secret_access_key,
        region=config.region,
        service=config.service,
    )
    headers = signer.sign_request(
        "POST",
        "/",
        query={"Action": "JimengT2IV40SubmitTask", "Version": "2024-06-06"},
        headers={"Content-Type": "application/json"},
        body=payload,
        host="open.volcengineapi.com",
    )
"""

from __future__ import annotations

import hashlib
import hmac
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from urllib.parse import quote

from artphoto.core.errors import ConfigurationError

if TYPE_CHECKING:
    from artphoto.core.config import ArtPhotoConfig

ALGORITHM = "HMAC-SHA256"
SCOPE_TERMINATOR = "request"

# Header keys that never take part in the signature.
HEADER_KEYS_TO_IGNORE = frozenset(
    {
        "authorization",
        "content-length",
        "user-agent",
        "presigned-expires",
        "expect",
    }
)

# Always signed when an allow-list is supplied.
REQUIRED_SIGNED_HEADERS = ("x-date", "host")

EMPTY_BODY_SHA256 = hashlib.sha256(b"").hexdigest()

_WHITESPACE_RE = re.compile(r"\s+")

HmacFunc = Callable[[bytes, bytes], bytes]
QueryValue = str | int | float | None | list[str] | tuple[str, ...]


def _hmac_sha256(key: bytes, msg: bytes) -> bytes:
    return hmac.new(key, msg, hashlib.sha256).digest()


@dataclass(frozen=True)
class SigningContext:
    """Everything needed to sign one request.

    Attributes:
        method: HTTP method; upper-cased in the canonical request.
        path: Request path, used verbatim (``"/"`` for the OpenAPI gateway).
        query: Query parameters.  Values may be strings, ``None`` or an
            empty sequence (both rendered as ``key=``), or sequences of
            strings.
        headers: Request headers; key case is irrelevant.  Must contain
            ``X-Date`` unless a timestamp is passed to :func:`sign`.
        region: Credential scope region, e.g. ``"cn-beijing"``.
        service: Credential scope service, e.g. ``"cv"``.
        access_key_id: Public half of the credential pair.
        secret_access_key: Secret half of the credential pair.
        body_sha256: Hex SHA-256 of the body.  ``None`` means the empty body.
        headers_to_sign: Optional allow-list of header names.
    """

    method: str
    path: str = "/"
    query: Mapping[str, QueryValue] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    region: str = ""
    service: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    body_sha256: str | None = None
    headers_to_sign: tuple[str, ...] | None = None


# ---------------------------------------------------------------------------
# Canonicalisation helpers.
# ---------------------------------------------------------------------------


def uri_escape(value: object) -> str:
    """Percent-encode *value* for use in a canonical query string.

    Args:
        value: Value to escape; converted with ``str()`` first.

    Returns:
        The escaped string with upper-case hex digits.
    """
    # quote() already leaves only [A-Za-z0-9_.~-] unescaped when safe="".
    escaped = quote(str(value), safe="", encoding="utf-8", errors="strict")
    return escaped.replace("*", "%2A")


def canonical_query_string(query: Mapping[str, QueryValue]) -> str:
    """Build the canonical query string.

    Args:
        query: Query parameters.

    Returns:
        ``key=value`` pairs sorted by key and joined with ``&``.
    """
    pairs: list[str] = []
    for key in sorted(query):
        escaped_key = uri_escape(key)
        if not escaped_key:
            continue
        value = query[key]
        if value is None or (isinstance(value, (list, tuple)) and not value):
            pairs.append(f"{escaped_key}=")
        elif isinstance(value, (list, tuple)):
            for escaped_value in sorted(uri_escape(item) for item in value):
                pairs.append(f"{escaped_key}={escaped_value}")
        else:
            pairs.append(f"{escaped_key}={uri_escape(value)}")
    return "&".join(pairs)


def _normalize_header_value(value: object) -> str:
    return _WHITESPACE_RE.sub(" ", str(value).strip())


def canonical_headers(
    headers: Mapping[str, object],
    headers_to_sign: Iterable[str] | None = None,
) -> tuple[str, str]:
    """Select and canonicalise the headers that take part in the signature.

    Args:
        headers: Request headers.
        headers_to_sign: Optional allow-list.  When given, only these headers
            plus ``host`` and ``x-date`` are signed.

    Returns:
        Tuple of ``(signed_header_names, canonical_header_block)``.  The
        block has no trailing newline.
    """
    keys = list(headers)
    if headers_to_sign is not None:
        allowed = {name.lower() for name in headers_to_sign}
        allowed.update(REQUIRED_SIGNED_HEADERS)
        keys = [key for key in keys if key.lower() in allowed]
    keys = [key for key in keys if key.lower() not in HEADER_KEYS_TO_IGNORE]
    keys.sort(key=str.lower)

    signed = ";".join(key.lower() for key in keys)
    block = "\n".join(f"{key.lower()}:{_normalize_header_value(headers[key])}" for key in keys)
    return signed, block


def hash_sha256(data: bytes | str) -> str:
    """Return the lower-case hex SHA-256 of *data* (strings are UTF-8)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def format_timestamp(moment: datetime) -> str:
    """Format *moment* as the ``YYYYMMDDTHHMMSSZ`` signing timestamp."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y%m%dT%H%M%SZ")


def credential_scope(timestamp: str, region: str, service: str) -> str:
    """Return ``date/region/service/request`` for *timestamp*."""
    return "/".join((timestamp[:8], region, service, SCOPE_TERMINATOR))


def canonical_request(ctx: SigningContext) -> tuple[str, str]:
    """Build the canonical request for *ctx*.

    Args:
        ctx: Signing context.

    Returns:
        Tuple of ``(canonical_request, signed_header_names)``.
    """
    signed, block = canonical_headers(ctx.headers, ctx.headers_to_sign)
    request = "\n".join(
        (
            ctx.method.upper(),
            ctx.path,
            canonical_query_string(ctx.query),
            f"{block}\n",
            signed,
            ctx.body_sha256 or EMPTY_BODY_SHA256,
        )
    )
    return request, signed


def string_to_sign(timestamp: str, scope: str, canonical: str) -> str:
    """Return the string the signing key is applied to."""
    return "\n".join((ALGORITHM, timestamp, scope, hash_sha256(canonical)))


def derive_signing_key(
    secret_access_key: str,
    date: str,
    region: str,
    service: str,
    hmac_func: HmacFunc = _hmac_sha256,
) -> bytes:
    """Run the four-step key derivation chain.

    Args:
        secret_access_key: Long-lived secret.
        date: ``YYYYMMDD`` portion of the signing timestamp.
        region: Credential scope region.
        service: Credential scope service.
        hmac_func: HMAC-SHA256 primitive ``(key, msg) -> digest``.

    Returns:
        The request signing key.
    """
    k_date = hmac_func(secret_access_key.encode("utf-8"), date.encode("utf-8"))
    k_region = hmac_func(k_date, region.encode("utf-8"))
    k_service = hmac_func(k_region, service.encode("utf-8"))
    return hmac_func(k_service, SCOPE_TERMINATOR.encode("utf-8"))


def _header_timestamp(headers: Mapping[str, object]) -> str | None:
    for key, value in headers.items():
        if key.lower() == "x-date":
            return str(value)
    return None


def _require_credentials(ctx: SigningContext) -> None:
    if not ctx.access_key_id or not ctx.secret_access_key:
        raise ConfigurationError("access key id and secret access key are required for signing")


def compute_signature(
    ctx: SigningContext,
    timestamp: str,
    hmac_func: HmacFunc = _hmac_sha256,
) -> tuple[str, str, str]:
    """Compute the hex signature for *ctx*.

    Returns:
        Tuple of ``(signature_hex, credential_scope, signed_header_names)``.
    """
    _require_credentials(ctx)
    canonical, signed = canonical_request(ctx)
    scope = credential_scope(timestamp, ctx.region, ctx.service)
    key = derive_signing_key(ctx.secret_access_key, timestamp[:8], ctx.region, ctx.service, hmac_func)
    digest = hmac_func(key, string_to_sign(timestamp, scope, canonical).encode("utf-8"))
    return digest.hex(), scope, signed


def sign(
    ctx: SigningContext,
    timestamp: str | None = None,
    hmac_func: HmacFunc = _hmac_sha256,
) -> str:
    """Return the ``Authorization`` header value for *ctx*.

    Args:
        ctx: Signing context.
        timestamp: ``YYYYMMDDTHHMMSSZ`` timestamp.  Defaults to the context's
            ``X-Date`` header.
        hmac_func: HMAC-SHA256 primitive.

    Returns:
        ``HMAC-SHA256 Credential=<ak>/<scope>, SignedHeaders=<names>, Signature=<hex>``

    Raises:
        ConfigurationError: If the access key id or secret is empty, or no
            timestamp is available.
    """
    _require_credentials(ctx)
    timestamp = timestamp or _header_timestamp(ctx.headers)
    if not timestamp:
        raise ConfigurationError("a signing timestamp (X-Date) is required")

    signature, scope, signed = compute_signature(ctx, timestamp, hmac_func)
    return (
        f"{ALGORITHM} Credential={ctx.access_key_id}/{scope}, "
        f"SignedHeaders={signed}, Signature={signature}"
    )


def presign_query(
    ctx: SigningContext,
    timestamp: str,
    expires: int | None = None,
    hmac_func: HmacFunc = _hmac_sha256,
) -> dict[str, QueryValue]:
    """Sign *ctx* into query parameters instead of an ``Authorization`` header.

    The body is not signed (``X-NotSignBody``) and no headers are signed, so
    the resulting query string authenticates the request on its own.

    Args:
        ctx: Signing context; its ``headers`` and ``body_sha256`` are ignored.
        timestamp: ``YYYYMMDDTHHMMSSZ`` timestamp.
        expires: Optional validity in seconds (``X-Expires``).
        hmac_func: HMAC-SHA256 primitive.

    Returns:
        The query parameters to send, including ``X-Signature``.

    Raises:
        ConfigurationError: If the access key id or secret is empty.
    """
    _require_credentials(ctx)
    query: dict[str, QueryValue] = dict(ctx.query)
    query["X-Date"] = timestamp
    query["X-NotSignBody"] = ""
    query["X-Credential"] = f"{ctx.access_key_id}/{credential_scope(timestamp, ctx.region, ctx.service)}"
    query["X-Algorithm"] = ALGORITHM
    query["X-SignedHeaders"] = ""
    if expires is not None:
        query["X-Expires"] = str(expires)
    query["X-SignedQueries"] = ";".join(sorted([*query, "X-SignedQueries"]))

    unsigned = replace(ctx, query=query, headers={}, headers_to_sign=None, body_sha256=None)
    signature, _, _ = compute_signature(unsigned, timestamp, hmac_func)
    query["X-Signature"] = signature
    return query


# ---------------------------------------------------------------------------
# Configured signer.
# ---------------------------------------------------------------------------


class Signer:
    """Signs outbound requests with a fixed credential scope.

    Credentials are validated when the signer is built, so a misconfigured
    process fails at startup rather than on the first request.

    Attributes:
        region: Credential scope region.
        service: Credential scope service.
    """

    def __init__(
        self,
        access_key_id: str,
        secret_access_key: str,
        region: str,
        service: str,
        hmac_backend: HmacFunc | None = None,
    ) -> None:
        if not access_key_id or not secret_access_key:
            raise ConfigurationError("access key id and secret access key are required for signing")
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self.region = region
        self.service = service
        self._hmac = hmac_backend or _hmac_sha256

    @classmethod
    def from_config(cls, config: ArtPhotoConfig) -> Signer:
        """Build a signer from an :class:`~artphoto.core.config.ArtPhotoConfig`."""
        config.validate_remote_credentials()
        return cls(
            access_key_id=config.access_key_id,
            secret_access_key=config.secret_access_key,
            region=config.region,
            service=config.service,
        )

    def context(
        self,
        method: str,
        path: str = "/",
        query: Mapping[str, QueryValue] | None = None,
        headers: Mapping[str, str] | None = None,
        body_sha256: str | None = None,
        headers_to_sign: Iterable[str] | None = None,
    ) -> SigningContext:
        """Return a :class:`SigningContext` bound to this signer's credentials."""
        return SigningContext(
            method=method,
            path=path,
            query=dict(query or {}),
            headers=dict(headers or {}),
            region=self.region,
            service=self.service,
            access_key_id=self._access_key_id,
            secret_access_key=self._secret_access_key,
            body_sha256=body_sha256,
            headers_to_sign=tuple(headers_to_sign) if headers_to_sign is not None else None,
        )

    def sign(self, ctx: SigningContext, timestamp: str | None = None) -> str:
        """Return the ``Authorization`` value for *ctx*."""
        return sign(ctx, timestamp, self._hmac)

    def sign_request(
        self,
        method: str,
        path: str,
        query: Mapping[str, QueryValue],
        headers: Mapping[str, str],
        body: bytes,
        host: str,
        timestamp: str | None = None,
    ) -> dict[str, str]:
        """Return the full header set for a header-signed request.

        ``Host``, ``X-Date`` and ``X-Content-Sha256`` are added to *headers*
        and all of them are signed together with the body hash.

        Args:
            method: HTTP method.
            path: Request path.
            query: Query parameters sent with the request.
            headers: Caller headers (e.g. ``Content-Type``).
            body: Exact request body bytes.
            host: Value of the ``Host`` header.
            timestamp: Signing timestamp; defaults to now (UTC).

        Returns:
            Headers to send, including ``Authorization``.
        """
        timestamp = timestamp or format_timestamp(datetime.now(timezone.utc))
        body_sha256 = hash_sha256(body)
        signed_headers = dict(headers)
        signed_headers["Host"] = host
        signed_headers["X-Date"] = timestamp
        signed_headers["X-Content-Sha256"] = body_sha256

        ctx = self.context(method, path, query, signed_headers, body_sha256=body_sha256)
        signed_headers["Authorization"] = self.sign(ctx, timestamp)
        return signed_headers

    def presign(
        self,
        method: str,
        path: str,
        query: Mapping[str, QueryValue],
        timestamp: str | None = None,
        expires: int | None = None,
    ) -> dict[str, QueryValue]:
        """Return query parameters carrying the signature (see :func:`presign_query`)."""
        timestamp = timestamp or format_timestamp(datetime.now(timezone.utc))
        return presign_query(self.context(method, path, query), timestamp, expires, self._hmac)

"""
AWS Signature Version 4 for S3-compatible object stores.

Implemented directly on hashlib/hmac instead of boto3 because we need
two things the SDK makes awkward from an async service:
- presigned part URLs that carry partNumber/uploadId in the signed query
- header-signed multipart calls issued through our own httpx client

Everything here is a pure function of its inputs plus the timestamp, which
callers may pass explicitly (tests do). No network, no state.

The signing steps, for reference:

    canonical request = METHOD \\n PATH \\n QUERY \\n HEADERS \\n \\n SIGNED \\n PAYLOAD_HASH
    string to sign    = AWS4-HMAC-SHA256 \\n amzDate \\n scope \\n sha256(canonical request)
    signing key       = HMAC chain over "AWS4"+secret, date, region, service, "aws4_request"
    signature         = hex(HMAC(signing key, string to sign))
"""

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping, Optional
from urllib.parse import urlsplit

from ...core.errors import ConfigurationError

ALGORITHM = "AWS4-HMAC-SHA256"
DEFAULT_REGION = "auto"  # R2 ignores region but requires the token
SERVICE = "s3"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
EMPTY_PAYLOAD_HASH = hashlib.sha256(b"").hexdigest()
DEFAULT_EXPIRES_SECONDS = 3600

_DEFAULT_PORTS = {"https": 443, "http": 80}

_UNRESERVED = frozenset(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_.~"
)


@dataclass(frozen=True)
class Credentials:
    """Long-term access key pair."""
    access_key_id: str
    secret_access_key: str

    def __post_init__(self) -> None:
        if not self.access_key_id or not self.secret_access_key:
            raise ConfigurationError("Object store access key and secret are required")


@dataclass(frozen=True)
class Endpoint:
    """Parsed object store endpoint (scheme, host[:port], base path)."""
    scheme: str
    host: str
    base_path: str = ""

    @classmethod
    def parse(cls, endpoint_url: Optional[str]) -> "Endpoint":
        if not endpoint_url:
            raise ConfigurationError("Object store endpoint URL is required")
        parts = urlsplit(endpoint_url.strip())
        if not parts.scheme or not parts.hostname:
            raise ConfigurationError(f"Invalid object store endpoint: {endpoint_url}")
        try:
            port = parts.port
        except ValueError:
            raise ConfigurationError(f"Invalid object store endpoint port: {endpoint_url}")

        # httpx drops the scheme's default port from the Host header it sends
        host = f"[{parts.hostname}]" if ":" in parts.hostname else parts.hostname
        if port is not None and port != _DEFAULT_PORTS.get(parts.scheme.lower()):
            host = f"{host}:{port}"

        return cls(
            scheme=parts.scheme.lower(),
            host=host,
            base_path=parts.path.rstrip("/"),
        )


@dataclass(frozen=True)
class SignedRequest:
    """A request ready to send: absolute URL plus headers to attach."""
    method: str
    url: str
    headers: dict[str, str]


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------

def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def uri_encode(value: str, *, encode_slash: bool = True) -> str:
    """
    Percent-encode using the AWS rules.

    Unreserved characters pass through; everything else becomes %XX
    (uppercase hex, one escape per UTF-8 byte). '/' is kept for paths.
    """
    out: list[str] = []
    for ch in value:
        if ch in _UNRESERVED or (ch == "/" and not encode_slash):
            out.append(ch)
        else:
            out.extend(f"%{byte:02X}" for byte in ch.encode("utf-8"))
    return "".join(out)


def format_amz_date(now: datetime) -> tuple[str, str]:
    """Return (amzDate, dateStamp), e.g. ("20240131T235959Z", "20240131")."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    amz_date = now.strftime("%Y%m%dT%H%M%SZ")
    return amz_date, amz_date[:8]


def canonical_query_string(params: Optional[Mapping[str, str]]) -> str:
    """Encode and sort query parameters by encoded name, then value."""
    if not params:
        return ""
    encoded = sorted(
        (uri_encode(str(name)), uri_encode(str(value)))
        for name, value in params.items()
    )
    return "&".join(f"{name}={value}" for name, value in encoded)


def canonical_headers(headers: Mapping[str, str]) -> tuple[str, str]:
    """
    Build the canonical header block and the signed header list.

    Names are lowercased and sorted; values are trimmed with inner runs
    of whitespace collapsed. The block ends with a newline per header.
    """
    normalized = sorted(
        (name.strip().lower(), " ".join(str(value).split()))
        for name, value in headers.items()
    )
    block = "".join(f"{name}:{value}\n" for name, value in normalized)
    signed = ";".join(name for name, _ in normalized)
    return block, signed


def build_canonical_request(
    method: str,
    path: str,
    query: Optional[Mapping[str, str]],
    headers: Mapping[str, str],
    payload_hash: str,
) -> str:
    header_block, signed_headers = canonical_headers(headers)
    return "\n".join([
        method.upper(),
        uri_encode(path, encode_slash=False),
        canonical_query_string(query),
        header_block,
        signed_headers,
        payload_hash,
    ])


def credential_scope(date_stamp: str, region: str, service: str) -> str:
    return f"{date_stamp}/{region}/{service}/aws4_request"


def build_string_to_sign(amz_date: str, scope: str, canonical_request: str) -> str:
    return "\n".join([
        ALGORITHM,
        amz_date,
        scope,
        sha256_hex(canonical_request.encode("utf-8")),
    ])


def derive_signing_key(
    secret_access_key: str,
    date_stamp: str,
    region: str,
    service: str,
) -> bytes:
    k_date = _hmac(("AWS4" + secret_access_key).encode("utf-8"), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, "aws4_request")


def compute_signature(signing_key: bytes, string_to_sign: str) -> str:
    return hmac.new(
        signing_key, string_to_sign.encode("utf-8"), hashlib.sha256
    ).hexdigest()


# ---------------------------------------------------------------------------
# Request signing
# ---------------------------------------------------------------------------

def presign_url(
    *,
    method: str,
    endpoint: Endpoint,
    path: str,
    credentials: Credentials,
    query: Optional[Mapping[str, str]] = None,
    expires_seconds: int = DEFAULT_EXPIRES_SECONDS,
    now: Optional[datetime] = None,
    region: str = DEFAULT_REGION,
    service: str = SERVICE,
) -> str:
    """
    Build a query-string-signed URL.

    Only the host header is signed and the payload is UNSIGNED-PAYLOAD,
    so whoever holds the URL can PUT any body until it expires.
    `query` carries operation parameters such as partNumber/uploadId.
    """
    amz_date, date_stamp = format_amz_date(now or datetime.now(timezone.utc))
    scope = credential_scope(date_stamp, region, service)
    full_path = endpoint.base_path + path

    params = dict(query or {})
    params.update({
        "X-Amz-Algorithm": ALGORITHM,
        "X-Amz-Credential": f"{credentials.access_key_id}/{scope}",
        "X-Amz-Date": amz_date,
        "X-Amz-Expires": str(expires_seconds),
        "X-Amz-SignedHeaders": "host",
    })

    canonical_request = build_canonical_request(
        method, full_path, params, {"host": endpoint.host}, UNSIGNED_PAYLOAD
    )
    signing_key = derive_signing_key(
        credentials.secret_access_key, date_stamp, region, service
    )
    signature = compute_signature(
        signing_key, build_string_to_sign(amz_date, scope, canonical_request)
    )

    return (
        f"{endpoint.scheme}://{endpoint.host}"
        f"{uri_encode(full_path, encode_slash=False)}"
        f"?{canonical_query_string(params)}&X-Amz-Signature={signature}"
    )


def sign_request(
    *,
    method: str,
    endpoint: Endpoint,
    path: str,
    credentials: Credentials,
    query: Optional[Mapping[str, str]] = None,
    headers: Optional[Mapping[str, str]] = None,
    payload_hash: str = EMPTY_PAYLOAD_HASH,
    now: Optional[datetime] = None,
    region: str = DEFAULT_REGION,
    service: str = SERVICE,
) -> SignedRequest:
    """
    Sign a request with an Authorization header.

    host, x-amz-content-sha256 and x-amz-date are always signed, along
    with every header passed in (content-type for initiate/complete).
    The returned headers are exactly the signed ones plus Authorization.
    """
    amz_date, date_stamp = format_amz_date(now or datetime.now(timezone.utc))
    scope = credential_scope(date_stamp, region, service)
    full_path = endpoint.base_path + path

    signed: dict[str, str] = {name.lower(): value for name, value in (headers or {}).items()}
    signed.update({
        "host": endpoint.host,
        "x-amz-content-sha256": payload_hash,
        "x-amz-date": amz_date,
    })

    canonical_request = build_canonical_request(
        method, full_path, query, signed, payload_hash
    )
    _, signed_names = canonical_headers(signed)
    signing_key = derive_signing_key(
        credentials.secret_access_key, date_stamp, region, service
    )
    signature = compute_signature(
        signing_key, build_string_to_sign(amz_date, scope, canonical_request)
    )

    authorization = (
        f"{ALGORITHM} "
        f"Credential={credentials.access_key_id}/{scope}, "
        f"SignedHeaders={signed_names}, "
        f"Signature={signature}"
    )

    url = f"{endpoint.scheme}://{endpoint.host}{uri_encode(full_path, encode_slash=False)}"
    query_string = canonical_query_string(query)
    if query_string:
        url = f"{url}?{query_string}"

    request_headers = dict(signed)
    request_headers["authorization"] = authorization
    return SignedRequest(method=method.upper(), url=url, headers=request_headers)

"""
AWS Signature Version 4 query-string signing for WebSocket endpoints.

The signaling service authenticates the WebSocket upgrade through query
parameters rather than headers, so the whole signature lives in the URL.  The
session token is part of the canonical (signed) request for this service.

References:
    https://docs.aws.amazon.com/AmazonS3/latest/API/sigv4-query-string-auth.html
    https://docs.aws.amazon.com/general/latest/gr/sigv4-calculate-signature.html
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union
from urllib.parse import quote

from .errors import SigningError

LOG = logging.getLogger(__name__)

DEFAULT_ALGORITHM = "AWS4-HMAC-SHA256"
DEFAULT_SERVICE = "kinesisvideo"
DEFAULT_EXPIRES = "299"
REQUEST_TYPE = "aws4_request"
PROTOCOL = "wss"
URL_PROTOCOL = f"{PROTOCOL}://"
SIGNED_HEADERS = ";".join(["host"])
METHOD = "GET"

# Characters encodeURIComponent leaves untouched besides alphanumerics.
_QUERY_SAFE = "-_.!~*'()"

KeyLike = Union[str, bytes]


def get_datetime_string(date: datetime) -> str:
    """Return the signing timestamp for ``date``, e.g. ``20190927T165210Z``."""

    return _as_utc(date).strftime("%Y%m%dT%H%M%SZ")


def get_date_string(date: datetime) -> str:
    """Return the signing date stamp for ``date``, e.g. ``20190927``."""

    return get_datetime_string(date)[:8]


def _as_utc(date: datetime) -> datetime:
    if date.tzinfo is None:
        return date.replace(tzinfo=timezone.utc)
    return date.astimezone(timezone.utc)


def create_query_string(query_params: Mapping[str, Any]) -> str:
    """Join ``query_params`` sorted by name, with values percent-encoded."""

    return "&".join(
        f"{key}={quote(str(query_params[key]), safe=_QUERY_SAFE)}" for key in sorted(query_params)
    )


def create_headers_string(headers: Mapping[str, str]) -> str:
    return "".join(f"{name}:{value}\n" for name, value in headers.items())


def sha256_hex(message: str) -> str:
    return hashlib.sha256(message.encode("utf-8")).hexdigest()


def hmac_sha256(key: KeyLike, message: str) -> bytes:
    if isinstance(key, str):
        key = key.encode("utf-8")
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def get_signature_key(secret_access_key: str, date_string: str, region: str, service: str) -> bytes:
    """Derive the signing key by chaining HMACs over the credential scope."""

    k_date = hmac_sha256("AWS4" + secret_access_key, date_string)
    k_region = hmac_sha256(k_date, region)
    k_service = hmac_sha256(k_region, service)
    return hmac_sha256(k_service, REQUEST_TYPE)


def split_endpoint(endpoint: str) -> tuple[str, str]:
    """
    Validate ``endpoint`` and split it into host and path.
    """

    if not endpoint.startswith(URL_PROTOCOL):
        raise SigningError(
            f"Endpoint '{endpoint}' is not a secure WebSocket endpoint. It should start with '{URL_PROTOCOL}'."
        )
    if "?" in endpoint:
        raise SigningError(f"Endpoint '{endpoint}' should not contain any query parameters.")

    path_start = endpoint.find("/", len(URL_PROTOCOL))
    if path_start < 0:
        return endpoint[len(URL_PROTOCOL):], "/"
    return endpoint[len(URL_PROTOCOL):path_start], endpoint[path_start:]


def sign_url(
    endpoint: str,
    query_params: Mapping[str, Any],
    *,
    region: str,
    access_key_id: str,
    secret_access_key: str,
    session_token: Optional[str] = None,
    service: str = DEFAULT_SERVICE,
    date: datetime,
) -> str:
    """
    Return ``endpoint`` with SigV4 query parameters appended.

    Pure function of its arguments: the same inputs always produce the same URL.
    """

    host, path = split_endpoint(endpoint)
    datetime_string = get_datetime_string(date)
    date_string = datetime_string[:8]

    credential_scope = "/".join([date_string, region, service, REQUEST_TYPE])
    canonical_query_params = dict(query_params)
    canonical_query_params.update(
        {
            "X-Amz-Algorithm": DEFAULT_ALGORITHM,
            "X-Amz-Credential": f"{access_key_id}/{credential_scope}",
            "X-Amz-Date": datetime_string,
            "X-Amz-Expires": DEFAULT_EXPIRES,
            "X-Amz-SignedHeaders": SIGNED_HEADERS,
        }
    )
    if session_token:
        canonical_query_params["X-Amz-Security-Token"] = session_token

    canonical_query_string = create_query_string(canonical_query_params)
    canonical_headers_string = create_headers_string({"host": host})
    payload_hash = sha256_hex("")

    canonical_request = "\n".join(
        [
            METHOD,
            path,
            canonical_query_string,
            canonical_headers_string,
            SIGNED_HEADERS,
            payload_hash,
        ]
    )
    string_to_sign = "\n".join(
        [DEFAULT_ALGORITHM, datetime_string, credential_scope, sha256_hex(canonical_request)]
    )

    signing_key = get_signature_key(secret_access_key, date_string, region, service)
    signature = hmac_sha256(signing_key, string_to_sign).hex()

    signed_query_params = dict(canonical_query_params)
    signed_query_params["X-Amz-Signature"] = signature
    return f"{URL_PROTOCOL}{host}{path}?{create_query_string(signed_query_params)}"


def _secret(value: Any) -> Optional[str]:
    if value is None:
        return None
    getter = getattr(value, "get_secret_value", None)
    return getter() if callable(getter) else str(value)


class SigV4RequestSigner:
    """
    Signs WebSocket URLs for a region with a fixed set of credentials.

    ``credentials`` is any object exposing ``access_key_id``,
    ``secret_access_key`` and optionally ``session_token``; plain strings and
    pydantic ``SecretStr`` values are both accepted.
    """

    def __init__(self, region: str, credentials: Any, service: str = DEFAULT_SERVICE) -> None:
        self.region = region
        self.credentials = credentials
        self.service = service

    async def get_signed_url(
        self,
        endpoint: str,
        query_params: Mapping[str, Any],
        date: Optional[datetime] = None,
    ) -> str:
        if date is None:
            date = datetime.now(timezone.utc)
        return sign_url(
            endpoint,
            query_params,
            region=self.region,
            access_key_id=self.credentials.access_key_id,
            secret_access_key=_secret(self.credentials.secret_access_key),
            session_token=_secret(getattr(self.credentials, "session_token", None)),
            service=self.service,
            date=date,
        )

    def __repr__(self) -> str:
        return f"SigV4RequestSigner(region={self.region!r}, service={self.service!r})"


__all__ = [
    "DEFAULT_ALGORITHM",
    "DEFAULT_SERVICE",
    "SigV4RequestSigner",
    "create_query_string",
    "get_signature_key",
    "sign_url",
]

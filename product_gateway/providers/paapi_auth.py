"""AWS Signature Version 4 request signing for the Product Advertising API."""

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Callable, Dict, Protocol
from urllib.parse import quote, urlsplit, parse_qsl


class RequestSigner(Protocol):
    """Produces the signed header map for one request."""

    def get_signed_headers(self, method: str, url: str, payload: str, host: str, target: str) -> Dict[str, str]:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AwsV4Signer:
    """
    AWS4-HMAC-SHA256 signer.

    Signing is deterministic for identical inputs and an identical clock
    reading; pass ``now`` to pin the timestamp in tests.
    """

    SERVICE = "ProductAdvertisingAPI"
    ALGORITHM = "AWS4-HMAC-SHA256"
    SIGNED_HEADERS = ("content-encoding", "content-type", "host", "x-amz-date", "x-amz-target")

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        region: str,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.access_key = access_key
        self.secret_key = secret_key
        self.region = region
        self._now = now

    def get_signed_headers(self, method: str, url: str, payload: str, host: str, target: str) -> Dict[str, str]:
        """
        Build request headers including the ``Authorization`` signature.

        Args:
            method: HTTP method
            url: Full request URL
            payload: Exact request body
            host: Host header value
            target: ``x-amz-target`` operation name

        Returns:
            Header map ready to send
        """
        moment = self._now()
        timestamp = moment.strftime("%Y%m%dT%H%M%SZ")
        date = moment.strftime("%Y%m%d")

        headers = {
            "content-encoding": "amz-1.0",
            "content-type": "application/json; charset=utf-8",
            "host": host,
            "x-amz-date": timestamp,
            "x-amz-target": target,
        }

        canonical_request = self.canonical_request(method, url, headers, payload)
        string_to_sign = "\n".join([
            self.ALGORITHM,
            timestamp,
            self.credential_scope(date),
            hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
        ])
        signature = hmac.new(self.signing_key(date), string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

        headers["Authorization"] = (
            f"{self.ALGORITHM} Credential={self.access_key}/{self.credential_scope(date)}, "
            f"SignedHeaders={';'.join(self.SIGNED_HEADERS)}, Signature={signature}"
        )
        return headers

    def canonical_request(self, method: str, url: str, headers: Dict[str, str], payload: str) -> str:
        parts = urlsplit(url)
        canonical_headers = {
            key.strip().lower(): str(value).strip()
            for key, value in headers.items()
            if key.strip().lower() in self.SIGNED_HEADERS
        }
        ordered = sorted(canonical_headers.items())
        return "\n".join([
            method.upper(),
            self._encode_path(parts.path or "/"),
            self._canonical_query(parts.query),
            "\n".join(f"{key}:{value}" for key, value in ordered),
            "",
            ";".join(key for key, _ in ordered),
            hashlib.sha256(payload.encode("utf-8")).hexdigest(),
        ])

    def credential_scope(self, date: str) -> str:
        return f"{date}/{self.region}/{self.SERVICE}/aws4_request"

    def signing_key(self, date: str) -> bytes:
        key = ("AWS4" + self.secret_key).encode("utf-8")
        for part in (date, self.region, self.SERVICE, "aws4_request"):
            key = hmac.new(key, part.encode("utf-8"), hashlib.sha256).digest()
        return key

    @staticmethod
    def _encode_path(path: str) -> str:
        if path == "/":
            return "/"
        segments = [quote(segment, safe="") for segment in path.split("/") if segment]
        return "/" + "/".join(segments)

    @staticmethod
    def _canonical_query(query: str) -> str:
        if not query:
            return ""
        pairs = sorted(parse_qsl(query, keep_blank_values=True))
        return "&".join(f"{quote(key, safe='')}={quote(value, safe='')}" for key, value in pairs)

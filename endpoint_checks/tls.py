from __future__ import annotations

import asyncio
import ssl
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlsplit

import httpx

from endpoint_checks.errors import ProtocolError, TransportError


def tls_host_port_from_url(url: str) -> tuple[str, int] | None:
    try:
        parts = urlsplit(str(url or "").strip())
        port = int(parts.port or 443)
    except ValueError:
        return None
    if (parts.scheme or "").lower() != "https":
        return None
    host = (parts.hostname or "").strip()
    if not host:
        return None
    return host, port


def parse_cert_not_after(cert: dict[str, Any]) -> datetime | None:
    # Python ssl.getpeercert() returns e.g. "Feb  6 12:00:00 2026 GMT"
    s = cert.get("notAfter")
    if not isinstance(s, str) or not s.strip():
        return None
    try:
        dt = datetime.strptime(s.strip(), "%b %d %H:%M:%S %Y %Z")
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def is_tls_failure(exc: BaseException) -> bool:
    """True when `exc` (or anything it was raised from) is a TLS handshake/verification error."""
    seen: set[int] = set()
    cur: BaseException | None = exc
    while cur is not None and id(cur) not in seen:
        seen.add(id(cur))
        if isinstance(cur, ssl.SSLError):
            return True
        msg = str(cur)
        if "CERTIFICATE_VERIFY_FAILED" in msg or "SSL:" in msg or "TLSV1_ALERT" in msg:
            return True
        cur = cur.__cause__ or cur.__context__
    return False


def cert_expiry_from_response(resp: httpx.Response) -> datetime | None:
    """
    Leaf certificate expiry of the live connection behind `resp`.

    Must be called while the response stream is still open.
    """
    stream = resp.extensions.get("network_stream")
    if stream is None:
        return None
    try:
        sslobj = stream.get_extra_info("ssl_object")
    except (AttributeError, KeyError):
        return None
    if sslobj is None:
        return None
    cert = sslobj.getpeercert()
    if not isinstance(cert, dict):
        return None
    return parse_cert_not_after(cert)


async def fetch_certificate_expiry(host: str, port: int, *, timeout_seconds: float) -> datetime:
    """Open a verified TLS connection to host:port and return the leaf certificate's notAfter."""
    ctx = ssl.create_default_context()
    ctx.check_hostname = True
    ctx.verify_mode = ssl.CERT_REQUIRED

    writer = None
    try:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host=host, port=port, ssl=ctx, server_hostname=host),
            timeout=max(0.1, float(timeout_seconds)),
        )
        sslobj = writer.get_extra_info("ssl_object")
        cert = sslobj.getpeercert() if sslobj else {}
    except asyncio.TimeoutError as exc:
        raise TransportError(f"tls_handshake_timeout: {host}:{port}") from exc
    except ssl.SSLError as exc:
        raise ProtocolError(f"tls_error: {type(exc).__name__}: {exc}") from exc
    except OSError as exc:
        raise TransportError(f"tls_connect_error: {type(exc).__name__}: {exc}") from exc
    finally:
        if writer is not None:
            try:
                writer.close()
                await writer.wait_closed()
            except OSError:
                pass

    not_after = parse_cert_not_after(cert) if isinstance(cert, dict) else None
    if not_after is None:
        raise ProtocolError("tls_error: certificate has no notAfter")
    return not_after

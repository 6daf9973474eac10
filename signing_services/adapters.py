"""
signing_services.adapters -- Reference implementations of the ports.

Responsibility:
    In-process adapters for every port declared in
    ``signing_kernel.domain.ports``: in-memory and filesystem object
    stores, an HMAC timestamp authority, a recording notifier and an
    in-memory PKI.  They back the test suite and single-process
    deployments; production bindings implement the same protocols.

Architecture position:
    Services layer -- adapters.  Called only through
    ``signing_services.port_gateway.PortGateway``.

Invariants enforced:
    - Adapters are thread-safe: the gateway calls them from worker threads.
    - Timestamp tokens are bound to the digest, the issue time and the
      authority name; any change invalidates the token.
"""

from __future__ import annotations

import hashlib
import hmac
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any
from urllib.parse import unquote, urlparse
from uuid import uuid4

from signing_kernel.domain.clock import Clock, SystemClock
from signing_kernel.domain.task import TimestampToken
from signing_kernel.exceptions import InvalidInputError, ObjectNotFoundError
from signing_kernel.logging_config import get_logger
from signing_kernel.utils.rfc3339 import format_utc

logger = get_logger("services.adapters")


# =========================================================================
# Object stores
# =========================================================================


def _clean_key(key: str) -> str:
    path = PurePosixPath(key)
    if not key or path.is_absolute() or ".." in path.parts:
        raise InvalidInputError("key", f"object key {key!r} must be a relative path without '..'")
    return str(path)


class InMemoryObjectStore:
    """Object store holding blobs in a dict.  URIs look like ``mem://<key>``."""

    SCHEME = "mem://"

    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def _key(self, key_or_uri: str) -> str:
        if key_or_uri.startswith(self.SCHEME):
            key_or_uri = key_or_uri[len(self.SCHEME):]
        return _clean_key(key_or_uri)

    def put(self, key: str, data: bytes) -> str:
        key = self._key(key)
        with self._lock:
            self._objects[key] = bytes(data)
        return self.SCHEME + key

    def get(self, key: str) -> bytes:
        key = self._key(key)
        with self._lock:
            try:
                return self._objects[key]
            except KeyError:
                raise ObjectNotFoundError(key) from None

    def delete(self, key: str) -> None:
        with self._lock:
            self._objects.pop(self._key(key), None)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return self._key(key) in self._objects

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)


class FileSystemObjectStore:
    """Object store rooted at a directory.  Writes are atomic renames."""

    def __init__(self, root: Path | str):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key_or_uri: str) -> Path:
        if key_or_uri.startswith("file://"):
            path = Path(unquote(urlparse(key_or_uri).path)).resolve()
            if self.root not in path.parents:
                raise InvalidInputError("key", f"{key_or_uri!r} is outside the store")
            return path
        return self.root / _clean_key(key_or_uri)

    def put(self, key: str, data: bytes) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        return path.as_uri()

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise ObjectNotFoundError(key) from None

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


# =========================================================================
# Timestamp authority
# =========================================================================


class HmacTimestampAuthority:
    """
    Timestamp authority signing ``digest|issued_at|authority`` with HMAC-SHA256.

    Stands in for an RFC 3161 service: tokens verify only against the same
    secret, so tampering with any field is detected.
    """

    def __init__(self, secret: bytes, clock: Clock | None = None, authority: str = "reference-tsa"):
        if not secret:
            raise ValueError("secret must not be empty")
        self._secret = bytes(secret)
        self._clock = clock or SystemClock()
        self.authority = authority

    def _mac(self, digest: str, issued_at: str, authority: str) -> str:
        message = f"{digest}|{issued_at}|{authority}".encode()
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def stamp(self, digest: str) -> TimestampToken:
        issued_at = self._clock.now()
        return TimestampToken(
            token=self._mac(digest, format_utc(issued_at), self.authority),
            digest=digest,
            issued_at=issued_at,
            authority=self.authority,
        )

    def verify(self, token: TimestampToken, digest: str) -> bool:
        if token.digest != digest or token.authority != self.authority:
            return False
        expected = self._mac(token.digest, format_utc(token.issued_at), token.authority)
        return hmac.compare_digest(expected, token.token)


# =========================================================================
# Notifier
# =========================================================================


@dataclass(frozen=True)
class SentNotification:
    delivery_id: str
    channel: str
    template_id: str
    recipient: str
    variables: dict[str, Any] = field(default_factory=dict)


class RecordingNotifier:
    """
    Notifier that records every message instead of delivering it.

    Channels listed in ``failing_channels`` raise ConnectionError, to
    exercise the engine's failure routes.
    """

    def __init__(self, failing_channels: set[str] | None = None):
        self.failing_channels = set(failing_channels or ())
        self._sent: list[SentNotification] = []
        self._lock = threading.Lock()

    def send(self, channel: str, template_id: str, recipient: str, variables: dict[str, Any]) -> str:
        if channel in self.failing_channels:
            raise ConnectionError(f"channel {channel} unavailable")
        with self._lock:
            delivery_id = f"dlv-{len(self._sent) + 1}"
            self._sent.append(
                SentNotification(delivery_id, channel, template_id, recipient, dict(variables))
            )
        logger.debug(
            "notification_recorded",
            extra={"delivery_id": delivery_id, "template_id": template_id, "recipient": recipient},
        )
        return delivery_id

    @property
    def sent(self) -> list[SentNotification]:
        with self._lock:
            return list(self._sent)

    def for_template(self, template_id: str) -> list[SentNotification]:
        return [n for n in self.sent if n.template_id == template_id]

    def clear(self) -> None:
        with self._lock:
            self._sent.clear()


# =========================================================================
# PKI
# =========================================================================


class InMemoryPki:
    """Certificate service issuing opaque serials; tracks revocation."""

    def __init__(self, issuer: str = "Reference CA"):
        self.issuer = issuer
        self._requests: dict[str, dict[str, Any]] = {}
        self._by_serial: dict[str, str] = {}
        self._lock = threading.Lock()

    def issue(self, csr: str, profile: str) -> dict[str, Any]:
        if not csr:
            raise InvalidInputError("csr", "certificate signing request is empty")
        request_id = str(uuid4())
        serial = hashlib.sha256(f"{request_id}|{csr}".encode()).hexdigest()[:32]
        certificate = {
            "request_id": request_id,
            "serial": serial,
            "issuer": self.issuer,
            "profile": profile,
            "status": "issued",
        }
        with self._lock:
            self._requests[request_id] = certificate
            self._by_serial[serial] = request_id
        return dict(certificate)

    def status(self, request_id: str) -> str:
        with self._lock:
            certificate = self._requests.get(request_id)
        if certificate is None:
            raise ObjectNotFoundError(request_id)
        return certificate["status"]

    def revoke(self, serial: str, reason: str) -> None:
        with self._lock:
            request_id = self._by_serial.get(serial)
            if request_id is None:
                raise ObjectNotFoundError(serial)
            self._requests[request_id] = {
                **self._requests[request_id],
                "status": "revoked",
                "revocation_reason": reason,
            }
        logger.info("certificate_revoked", extra={"serial": serial, "reason": reason})

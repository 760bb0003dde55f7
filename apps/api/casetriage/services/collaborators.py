"""External collaborators consumed by the engine.

The engine depends only on the Protocols below. Defaults are in-memory (or
logging) implementations; setting IDENTITY_SERVICE_URL or
NOTIFICATION_SERVICE_URL switches to httpx-backed clients.
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

import httpx

from casetriage.core.config import settings
from casetriage.services.errors import BlobNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    username: str
    email: str | None = None


@dataclass(frozen=True)
class BlobMeta:
    blob_id: str
    name: str
    size: int
    content_type: str


class IdentityService(Protocol):
    def resolve_user(self, user_id: str) -> UserProfile | None: ...


class NotificationService(Protocol):
    def notify(self, user_id: str, event: dict[str, Any]) -> None: ...


class AttachmentStore(Protocol):
    def put_blob(self, data: bytes, *, name: str, content_type: str) -> str: ...

    def get_blob_meta(self, blob_id: str) -> BlobMeta | None: ...


# =============================================================================
# Identity
# =============================================================================


class InMemoryIdentityDirectory:
    """
    Directory backed by a dict.

    With ``open_directory=True`` any ID resolves (username = ID), which is the
    dev default when no operator list is configured.
    """

    def __init__(self, users: dict[str, UserProfile] | None = None, *, open_directory: bool = False):
        self._users = dict(users or {})
        self._open = open_directory

    def add(self, user_id: str, username: str | None = None, email: str | None = None) -> UserProfile:
        profile = UserProfile(user_id=user_id, username=username or user_id, email=email)
        self._users[user_id] = profile
        return profile

    def resolve_user(self, user_id: str) -> UserProfile | None:
        profile = self._users.get(user_id)
        if profile is None and self._open and user_id:
            return UserProfile(user_id=user_id, username=user_id)
        return profile


class HttpIdentityService:
    """Identity lookups over HTTP (GET {base}/users/{id})."""

    def __init__(self, base_url: str, timeout: float):
        self._client = httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    def resolve_user(self, user_id: str) -> UserProfile | None:
        response = self._client.get(f"/users/{user_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        data = response.json()
        return UserProfile(
            user_id=user_id,
            username=data.get("username") or user_id,
            email=data.get("email"),
        )


# =============================================================================
# Notifications (fire-and-forget)
# =============================================================================


class LoggingNotificationService:
    """Records events in memory and logs them; used in dev and tests."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []

    def notify(self, user_id: str, event: dict[str, Any]) -> None:
        self.sent.append((user_id, event))
        logger.info("notify user=%s event=%s", user_id, event.get("type"))


class HttpNotificationService:
    """POSTs events from a background pool; never blocks or retries."""

    def __init__(self, base_url: str, timeout: float, max_workers: int = 4):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    def _send(self, user_id: str, event: dict[str, Any]) -> None:
        try:
            httpx.post(
                f"{self._base_url}/notifications",
                json={"user_id": user_id, "event": event},
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            logger.warning("Notification delivery failed for user=%s: %s", user_id, exc)

    def notify(self, user_id: str, event: dict[str, Any]) -> None:
        self._pool.submit(self._send, user_id, event)


# =============================================================================
# Attachments
# =============================================================================


@dataclass
class InMemoryAttachmentStore:
    """Blob store stand-in; the engine itself only keeps blob IDs."""

    _blobs: dict[str, BlobMeta] = field(default_factory=dict)

    def put_blob(self, data: bytes, *, name: str, content_type: str = "application/octet-stream") -> str:
        blob_id = uuid.uuid4().hex
        self._blobs[blob_id] = BlobMeta(
            blob_id=blob_id, name=name, size=len(data), content_type=content_type
        )
        return blob_id

    def get_blob_meta(self, blob_id: str) -> BlobMeta | None:
        return self._blobs.get(blob_id)


# =============================================================================
# Registry
# =============================================================================


@dataclass
class Collaborators:
    identity: IdentityService
    notifier: NotificationService
    attachments: AttachmentStore


def build_default_collaborators() -> Collaborators:
    if settings.IDENTITY_SERVICE_URL:
        identity: IdentityService = HttpIdentityService(
            settings.IDENTITY_SERVICE_URL, settings.COLLABORATOR_TIMEOUT_SECONDS
        )
    else:
        operators = settings.known_operators_list
        identity = InMemoryIdentityDirectory(
            {op: UserProfile(user_id=op, username=op) for op in operators},
            open_directory=not operators,
        )

    if settings.NOTIFICATION_SERVICE_URL:
        notifier: NotificationService = HttpNotificationService(
            settings.NOTIFICATION_SERVICE_URL, settings.COLLABORATOR_TIMEOUT_SECONDS
        )
    else:
        notifier = LoggingNotificationService()

    return Collaborators(identity=identity, notifier=notifier, attachments=InMemoryAttachmentStore())


_collaborators: Collaborators | None = None


def get_collaborators() -> Collaborators:
    global _collaborators
    if _collaborators is None:
        _collaborators = build_default_collaborators()
    return _collaborators


def set_collaborators(collaborators: Collaborators | None) -> None:
    """Swap collaborators (tests, alternative deployments)."""
    global _collaborators
    _collaborators = collaborators


def notify_safely(user_id: str | None, event: dict[str, Any]) -> None:
    """Fire-and-forget notification; delivery problems are logged, never raised."""
    if not user_id:
        return
    try:
        get_collaborators().notifier.notify(user_id, event)
    except Exception:
        logger.exception("Notifier raised for user=%s event=%s", user_id, event.get("type"))


def resolve_display(user_id: str | None) -> UserProfile | None:
    """Best-effort display lookup for responses; never persisted."""
    if not user_id:
        return None
    try:
        return get_collaborators().identity.resolve_user(user_id)
    except httpx.HTTPError as exc:
        logger.warning("Identity lookup failed for user=%s: %s", user_id, exc)
        return None


def resolve_blobs(blob_ids: Iterable[str]) -> list[dict[str, Any]]:
    """Reference dicts for stored blobs; unknown IDs raise BlobNotFoundError."""
    store = get_collaborators().attachments
    refs = []
    for blob_id in blob_ids:
        meta = store.get_blob_meta(blob_id)
        if meta is None:
            raise BlobNotFoundError(f"Attachment {blob_id} not found", blob_id=blob_id)
        refs.append(
            {
                "blob_id": meta.blob_id,
                "name": meta.name,
                "size": meta.size,
                "content_type": meta.content_type,
            }
        )
    return refs

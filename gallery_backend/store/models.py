"""Records held by the quota and entitlement stores.

All timestamps are timezone-aware UTC datetimes. ``to_dict``/``from_dict``
produce the JSON documents written by the Redis backend.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

DIMENSIONS = ("account", "device", "network")

# Index kinds a grant is reachable by
GRANT_INDEX_KINDS = ("account", "device", "payment", "code")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class IdentityKeys:
    """Quota lookup keys for one request, all in the same epoch."""

    account: str
    device: str | None
    network: str
    epoch: int
    network_address: str = "unknown"

    def present(self) -> list[str]:
        """Keys that exist for this request, account first."""
        return [k for k in (self.account, self.device, self.network) if k]


def dimension_of(key: str) -> str:
    """Return the dimension of a ``{dimension}:{identifier}:{epoch}`` key."""
    return key.split(":", 1)[0]


@dataclass
class DownloadEvent:
    image_ref: str
    timestamp: datetime
    network_address: str
    image_title: str | None = None
    user_agent: str | None = None
    unlimited: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "image_ref": self.image_ref,
            "image_title": self.image_title,
            "timestamp": _iso(self.timestamp),
            "network_address": self.network_address,
            "user_agent": self.user_agent,
            "unlimited": self.unlimited,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DownloadEvent":
        return cls(
            image_ref=data["image_ref"],
            image_title=data.get("image_title"),
            timestamp=_dt(data["timestamp"]),
            network_address=data.get("network_address", "unknown"),
            user_agent=data.get("user_agent"),
            unlimited=bool(data.get("unlimited", False)),
        )


@dataclass
class QuotaRecord:
    """Free-download usage for one (dimension, identifier, epoch) key.

    ``downloads_used`` always equals ``len(events)``: unlimited downloads are
    recorded on the grant, never here.
    """

    key: str
    first_seen: datetime
    last_seen: datetime
    downloads_used: int = 0
    events: list[DownloadEvent] = field(default_factory=list)

    @property
    def dimension(self) -> str:
        return dimension_of(self.key)

    @classmethod
    def new(cls, key: str, now: datetime) -> "QuotaRecord":
        return cls(key=key, first_seen=now, last_seen=now)

    def record(self, event: DownloadEvent) -> None:
        self.downloads_used += 1
        self.events.append(event)
        self.last_seen = event.timestamp

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "downloads_used": self.downloads_used,
            "events": [e.to_dict() for e in self.events],
            "first_seen": _iso(self.first_seen),
            "last_seen": _iso(self.last_seen),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QuotaRecord":
        return cls(
            key=data["key"],
            downloads_used=int(data.get("downloads_used", 0)),
            events=[DownloadEvent.from_dict(e) for e in data.get("events", [])],
            first_seen=_dt(data["first_seen"]),
            last_seen=_dt(data["last_seen"]),
        )


@dataclass(frozen=True)
class QuotaIncrement:
    """Outcome of an atomic increment-with-ceiling.

    ``usage`` is the reconciled usage after the increment when ``applied``,
    otherwise the usage that blocked it.
    """

    applied: bool
    usage: int


@dataclass
class EntitlementGrant:
    """Unlimited-access grant created after a confirmed payment."""

    grant_id: str
    account_id: str
    payment_id: str
    payment_method: str
    activation_code: str
    issued_at: datetime
    expires_at: datetime
    device_id: str | None = None
    features: list[str] = field(default_factory=list)
    downloads_count: int = 0
    last_download_at: datetime | None = None
    download_log: list[DownloadEvent] = field(default_factory=list)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def index_entries(self) -> list[tuple[str, str]]:
        """(kind, value) pairs this grant is reachable by."""
        entries = [("account", self.account_id)]
        if self.device_id:
            entries.append(("device", self.device_id))
        entries.append(("payment", self.payment_id))
        entries.append(("code", self.activation_code))
        return entries

    def record(self, event: DownloadEvent) -> None:
        self.downloads_count += 1
        self.download_log.append(event)
        self.last_download_at = event.timestamp

    def to_dict(self) -> dict[str, Any]:
        return {
            "grant_id": self.grant_id,
            "account_id": self.account_id,
            "device_id": self.device_id,
            "payment_id": self.payment_id,
            "payment_method": self.payment_method,
            "activation_code": self.activation_code,
            "issued_at": _iso(self.issued_at),
            "expires_at": _iso(self.expires_at),
            "features": list(self.features),
            "downloads_count": self.downloads_count,
            "last_download_at": _iso(self.last_download_at),
            "download_log": [e.to_dict() for e in self.download_log],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntitlementGrant":
        return cls(
            grant_id=data["grant_id"],
            account_id=data["account_id"],
            device_id=data.get("device_id"),
            payment_id=data["payment_id"],
            payment_method=data["payment_method"],
            activation_code=data["activation_code"],
            issued_at=_dt(data["issued_at"]),
            expires_at=_dt(data["expires_at"]),
            features=list(data.get("features", [])),
            downloads_count=int(data.get("downloads_count", 0)),
            last_download_at=_dt(data.get("last_download_at")),
            download_log=[DownloadEvent.from_dict(e) for e in data.get("download_log", [])],
        )

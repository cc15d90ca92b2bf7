"""Identity key building for quota lookups."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from gallery_backend.core.exceptions import InvalidRequestError
from gallery_backend.store.models import IdentityKeys


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def quota_key(dimension: str, identifier: str, epoch: int) -> str:
    return f"{dimension}:{identifier}:{epoch}"


def build_identity_keys(
    account_id: Optional[str],
    device_id: Optional[str],
    network_address: Optional[str],
    *,
    now: datetime,
) -> IdentityKeys:
    """Derive the quota keys for one request.

    The epoch is the calendar year of ``now``, so counters reset on
    January 1st without any write.

    Raises:
        InvalidRequestError: account_id is missing or blank.
    """
    account = _clean(account_id)
    if account is None:
        raise InvalidRequestError("userId is required", field="userId")
    device = _clean(device_id)
    network = _clean(network_address) or "unknown"
    epoch = now.year

    return IdentityKeys(
        account=quota_key("account", account, epoch),
        device=quota_key("device", device, epoch) if device else None,
        network=quota_key("network", network, epoch),
        epoch=epoch,
        network_address=network,
    )

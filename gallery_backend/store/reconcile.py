"""Effective-usage reconciliation across identity dimensions."""

from __future__ import annotations

from typing import Iterable, Optional

from gallery_backend.store.models import QuotaRecord


def reconcile_usage(records: Iterable[Optional[QuotaRecord]]) -> int:
    """Return the effective downloads used for a request.

    The maximum over the records that exist: dropping one dimension (a new
    network address, a cleared device cookie) cannot lower the count, and a
    single download recorded under several dimensions is counted once.
    """
    return max((r.downloads_used for r in records if r is not None), default=0)

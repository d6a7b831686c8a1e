"""
Mark-and-sweep reconciliation of local inbox state.

After an inbox listing pass, every locally active email of the account that
the pass did not return is archived. The listing is bounded by
``max_messages``, so an email older than the window is indistinguishable
from one that left the inbox and is archived as well.
"""

import logging
from typing import Iterable, Set

from .storage import MailStore

logger = logging.getLogger(__name__)


def reconcile_archived(store: MailStore, account_id: str, seen_ids: Iterable[str]) -> Set[str]:
    """
    Archive local active emails that were not seen in the latest listing.

    Args:
        store: Persistent store
        account_id: Account that was synced
        seen_ids: Ids returned by the listing pass

    Returns:
        The set of ids that were archived
    """
    seen = set(seen_ids)
    active = store.get_active_ids_by_account(account_id)
    stale = active - seen
    for email_id in stale:
        store.archive_email(email_id)
    if stale:
        logger.info(f"Reconciled {len(stale)} archived emails for account {account_id}")
    return stale

"""Folder selection for folder-capable protocols."""
import logging
from typing import List, Sequence

from mailwatch.models import FolderMode, FolderPolicy

logger = logging.getLogger(__name__)


def resolve_folders(policy: FolderPolicy, live_folders: Sequence[str]) -> List[str]:
    """
    Resolve the configured folder policy against the live folder listing.

    - ALL: the live listing, unchanged and in server order
    - INCLUDE: the configured include list verbatim. Names are not checked
      against the server; a missing folder fails to select during the poll
      cycle and is skipped there.
    - EXCLUDE: the live listing minus the excluded names (exact match),
      keeping server order

    Args:
        policy: The account's folder policy
        live_folders: Folder names as returned by the server's LIST

    Returns:
        Ordered list of folder names to scan
    """
    if policy.mode is FolderMode.INCLUDE:
        return list(policy.include)

    if policy.mode is FolderMode.EXCLUDE:
        excluded = set(policy.exclude)
        resolved = [name for name in live_folders if name not in excluded]
        logger.debug(f"Excluded {len(live_folders) - len(resolved)} folder(s) from {len(live_folders)}")
        return resolved

    return list(live_folders)

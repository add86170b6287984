"""
Filter evaluator for per-account notification policies.

A FilterPolicy holds four lists: include/exclude senders and include/exclude
subject keywords. should_notify() evaluates them in a fixed precedence order,
first matching rule decides:

    1. Sender equals an exclude-sender (case-insensitive)      -> reject
    2. Subject contains an exclude-keyword (case-insensitive)  -> reject
    3. Policy is selective (any include rule configured):
         sender equals an include-sender                       -> accept
         subject contains an include-keyword                   -> accept
         otherwise                                             -> reject
    4. Policy is not selective                                 -> accept

Exclusion is absolute: a blocked sender cannot be brought back by an include
keyword. With no include rules every message notifies.

A sender address that could not be parsed is matched as ''. It never equals a
configured (non-empty) address, so sender rules simply do not fire for it.

Example:
    >>> policy = build_filter_policy({'exclude_keyword': ['newsletter']})
    >>> should_notify(policy, 'news@shop.com', 'Weekly Newsletter')
    False
    >>> should_notify(policy, 'billing@shop.com', 'Invoice #4')
    True
"""
import logging
from typing import Any, Dict, Iterable, Optional, Tuple

from mailwatch.models import FilterPolicy

logger = logging.getLogger(__name__)


class InvalidFilterError(Exception):
    """Raised when a filter list in the configuration is malformed."""
    pass


# Config keys, as written in config.yaml
FILTER_KEYS = {
    'include_email': 'include_senders',
    'exclude_email': 'exclude_senders',
    'include_keyword': 'include_keywords',
    'exclude_keyword': 'exclude_keywords',
}


def _normalize_entries(key: str, raw: Any) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        raise InvalidFilterError(
            f"Filter '{key}' must be a list of strings, got a single string: {raw!r}"
        )
    if not isinstance(raw, (list, tuple)):
        raise InvalidFilterError(
            f"Filter '{key}' must be a list, got {type(raw).__name__}"
        )

    entries = []
    for item in raw:
        if not isinstance(item, (str, int, float)):
            raise InvalidFilterError(
                f"Filter '{key}' entries must be strings, got {type(item).__name__}"
            )
        value = str(item).strip()
        if not value:
            # An empty keyword would be a substring of every subject
            logger.warning(f"Ignoring blank entry in filter '{key}'")
            continue
        entries.append(value)
    return tuple(entries)


def build_filter_policy(raw_account: Dict[str, Any]) -> FilterPolicy:
    """
    Build a FilterPolicy from a raw account configuration mapping.

    Reads include_email, exclude_email, include_keyword and exclude_keyword.
    Missing keys are empty lists; blank entries are dropped.

    Raises:
        InvalidFilterError: If a filter value is not a list of strings
    """
    values = {
        field_name: _normalize_entries(key, raw_account.get(key))
        for key, field_name in FILTER_KEYS.items()
    }
    return FilterPolicy(**values)


def filter_policy_to_dict(policy: FilterPolicy) -> Dict[str, list]:
    """Inverse of build_filter_policy, for persisting configuration."""
    return {key: list(getattr(policy, field_name)) for key, field_name in FILTER_KEYS.items()}


def _sender_matches(sender: str, addresses: Iterable[str]) -> bool:
    sender = sender.casefold()
    return any(sender == address.casefold() for address in addresses)


def _subject_matches(subject_lower: str, keywords: Iterable[str]) -> bool:
    return any(keyword.casefold() in subject_lower for keyword in keywords)


def should_notify(
    policy: FilterPolicy,
    sender_address: Optional[str],
    subject: Optional[str],
) -> bool:
    """
    Decide whether a message passes the account's filter policy.

    Args:
        policy: The account's filter policy
        sender_address: Bare sender address, or the trimmed From header when it has no address
        subject: Message subject ('' or None when absent)

    Returns:
        True if a notification should fire for this message
    """
    sender = sender_address or ""
    subject_lower = (subject or "").casefold()

    if _sender_matches(sender, policy.exclude_senders):
        logger.debug(f"Rejected by exclude-sender rule: {sender}")
        return False

    if _subject_matches(subject_lower, policy.exclude_keywords):
        logger.debug(f"Rejected by exclude-keyword rule: {subject!r}")
        return False

    if policy.is_selective:
        if _sender_matches(sender, policy.include_senders):
            return True
        if _subject_matches(subject_lower, policy.include_keywords):
            return True
        logger.debug(f"No include rule matched (sender={sender}, subject={subject!r})")
        return False

    return True

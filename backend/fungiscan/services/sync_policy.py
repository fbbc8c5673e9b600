"""
Read policy per repository operation.

Kept as one table so the local/remote decision is made in a single place
instead of being re-derived at every call site.
"""
from enum import Enum
from typing import Dict


class ReadPolicy(str, Enum):
    LOCAL_ONLY = "local_only"
    # Serve local hits directly when there are enough of them, else go remote
    LOCAL_FIRST_REMOTE_REFRESH = "local_first_remote_refresh"
    REMOTE_FIRST_LOCAL_FALLBACK = "remote_first_local_fallback"


READ_POLICIES: Dict[str, ReadPolicy] = {
    "get_mushroom": ReadPolicy.REMOTE_FIRST_LOCAL_FALLBACK,
    "get_all_mushrooms": ReadPolicy.REMOTE_FIRST_LOCAL_FALLBACK,
    "search_mushrooms": ReadPolicy.LOCAL_FIRST_REMOTE_REFRESH,
    "get_dangerous_lookalikes": ReadPolicy.REMOTE_FIRST_LOCAL_FALLBACK,
    "get_identification_history": ReadPolicy.REMOTE_FIRST_LOCAL_FALLBACK,
    "get_recent_identifications": ReadPolicy.REMOTE_FIRST_LOCAL_FALLBACK,
    "get_saved_location": ReadPolicy.REMOTE_FIRST_LOCAL_FALLBACK,
    "get_all_saved_locations": ReadPolicy.REMOTE_FIRST_LOCAL_FALLBACK,
    "get_user_preferences": ReadPolicy.REMOTE_FIRST_LOCAL_FALLBACK,
    "pending_mutations": ReadPolicy.LOCAL_ONLY,
    "storage_usage": ReadPolicy.LOCAL_ONLY,
}


def policy_for(operation: str) -> ReadPolicy:
    try:
        return READ_POLICIES[operation]
    except KeyError:
        raise KeyError(f"No read policy registered for {operation!r}") from None


def should_skip_remote(policy: ReadPolicy, local_count: int, threshold: int) -> bool:
    """True when the policy lets the local result stand without asking the backend."""
    if policy is ReadPolicy.LOCAL_ONLY:
        return True
    if policy is ReadPolicy.LOCAL_FIRST_REMOTE_REFRESH:
        return local_count > threshold
    return False

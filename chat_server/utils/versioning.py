"""Version control utilities for optimistic locking.

Conversations carry a version field (_v). Every membership, admin or
naming change is written with the version it was computed from and bumps
it, so two writers that read the same version cannot both succeed.

Usage:
    from chat_server.utils.versioning import versioned_update, VERSION_FIELD
"""
from typing import Any, Dict, Optional

from chat_server.utils.time_utils import utc_now


VERSION_FIELD = '_v'


def increment_version(update_doc: Dict[str, Any]) -> Dict[str, Any]:
    """Add version increment to an update document."""
    if '$inc' not in update_doc:
        update_doc['$inc'] = {}
    update_doc['$inc'][VERSION_FIELD] = 1
    return update_doc


def versioned_update(
    collection,
    query: Dict[str, Any],
    update_doc: Dict[str, Any],
    expected_version: Optional[int] = None
) -> Dict[str, Any]:
    """Perform an update with optimistic locking.

    If expected_version is provided, the update will only succeed
    if the document's current version matches.

    Returns:
        Dict with 'success', 'matched_count' and optional 'version_mismatch'
    """
    if expected_version is not None:
        query = {**query, VERSION_FIELD: expected_version}

    update_doc = increment_version(update_doc)

    if '$set' not in update_doc:
        update_doc['$set'] = {}
    update_doc['$set']['updated_at'] = utc_now()

    result = collection.update_one(query, update_doc)

    response = {
        'success': result.matched_count > 0,
        'matched_count': result.matched_count
    }

    if expected_version is not None and result.matched_count == 0:
        response['version_mismatch'] = True

    return response


def versioned_delete(collection, query: Dict[str, Any], expected_version: Optional[int] = None) -> Dict[str, Any]:
    """Delete a document only if it is still at the expected version."""
    if expected_version is not None:
        query = {**query, VERSION_FIELD: expected_version}
    result = collection.delete_one(query)
    response = {'success': result.deleted_count > 0, 'deleted_count': result.deleted_count}
    if expected_version is not None and result.deleted_count == 0:
        response['version_mismatch'] = True
    return response


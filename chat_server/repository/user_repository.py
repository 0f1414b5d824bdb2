import logging
from typing import Dict, Iterable

from chat_server.repository.mongo_helper import USERS
from chat_server.utils.decorators import storage_guard

logger = logging.getLogger(__name__)


class UserDirectory:
    """Read-only lookup of display names owned by the profile service."""

    def __init__(self, db):
        self.collection = db[USERS]

    @staticmethod
    def _display_name(doc) -> str:
        full = ' '.join(p for p in (doc.get('first_name'), doc.get('last_name')) if p)
        return full or doc.get('username') or doc.get('email') or doc['user_key']

    @storage_guard
    def display_names(self, user_keys: Iterable[str]) -> Dict[str, str]:
        keys = list(dict.fromkeys(user_keys))
        if not keys:
            return {}
        names = {k: k for k in keys}
        cursor = self.collection.find(
            {'user_key': {'$in': keys}},
            {'user_key': 1, 'first_name': 1, 'last_name': 1, 'username': 1, 'email': 1}
        )
        for doc in cursor:
            names[doc['user_key']] = self._display_name(doc)
        return names

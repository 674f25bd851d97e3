"""Who is online, and on which Socket.IO connection."""

import logging

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """In-memory routing table from user id to connection id (sid).

    Best effort only: nothing is persisted and there is no expiry, so a client
    that drops without a clean disconnect stays listed until the transport
    notices. Mutations are single dict operations, which is safe under the
    cooperative (eventlet) scheduler the app runs on.
    """

    def __init__(self):
        self._sid_by_user = {}
        self._user_by_sid = {}

    def connect(self, user_id, sid):
        """Register ``sid`` for ``user_id``; a reconnect replaces the old sid."""
        user_id = str(user_id)
        previous = self._sid_by_user.get(user_id)
        if previous is not None and previous != sid:
            self._user_by_sid.pop(previous, None)
        other_user = self._user_by_sid.get(sid)
        if other_user is not None and other_user != user_id and self._sid_by_user.get(other_user) == sid:
            del self._sid_by_user[other_user]
        self._sid_by_user[user_id] = sid
        self._user_by_sid[sid] = user_id
        logger.info("User %s connected on %s", user_id, sid)
        return previous

    def disconnect(self, sid):
        """Forget ``sid``. Returns the user id it belonged to, if any.

        The user's entry is only removed while it still points at ``sid``;
        a stale connection closing after a reconnect leaves the newer one alone.
        """
        user_id = self._user_by_sid.pop(sid, None)
        if user_id is None:
            return None
        if self._sid_by_user.get(user_id) == sid:
            del self._sid_by_user[user_id]
        logger.info("User %s disconnected from %s", user_id, sid)
        return user_id

    def lookup(self, user_id):
        if user_id is None:
            return None
        return self._sid_by_user.get(str(user_id))

    def user_for(self, sid):
        return self._user_by_sid.get(sid)

    def online_users(self):
        return list(self._sid_by_user.keys())

    def is_online(self, user_id):
        return self.lookup(user_id) is not None

    def clear(self):
        self._sid_by_user.clear()
        self._user_by_sid.clear()

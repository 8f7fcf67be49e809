"""
A store which keeps associations and nonces in memcached.

The cache expires records by itself, so the cleanup methods have
nothing to do.
"""
import logging
import time

from openid_rp import cryptutil, oidutil
from openid_rp.association import Association
from openid_rp.store import nonce
from openid_rp.store.interface import OpenIDStore

__all__ = ['MemcacheStore']

_LOGGER = logging.getLogger(__name__)


def _hashKey(s):
    # Memcached keys may not contain whitespace or control characters
    # and are limited in length.
    return oidutil.toBase64(cryptutil.sha1(s.encode('utf-8'))).rstrip('=')


class MemcacheStore(OpenIDStore):
    """
    An C{L{OpenIDStore}} on top of a memcached client.

    The client needs the C{get}, C{set}, C{add} and C{delete} methods of
    C{memcache.Client} from python-memcached. Nonces are recorded with
    C{add}, which the cache server executes atomically.

    Each association is stored twice: under its server URL and handle
    and under the server URL alone, which points to the association with
    the latest issue time.

    @ivar skew: Number of seconds a nonce timestamp may differ from the
        current time.
    @type skew: int
    """

    def __init__(self, client, key_prefix='openid-store:', skew=nonce.SKEW):
        """
        @param client: memcached client
        @param key_prefix: Prefix of every key written by this store, so
            several stores may share one cache.
        @type key_prefix: str
        """
        self.client = client
        self.key_prefix = key_prefix
        self.skew = skew

    @classmethod
    def fromServers(cls, servers, **kwargs):
        """Create the store with a new C{memcache.Client} for the given
        servers, e.g. C{['127.0.0.1:11211']}."""
        import memcache
        return cls(memcache.Client(servers), **kwargs)

    def _assocKey(self, server_url, handle=None):
        key = self.key_prefix + 'A' + _hashKey(server_url)
        if handle is not None:
            key += '|' + _hashKey(handle)
        return key

    def _nonceKey(self, server_url, timestamp, salt):
        return '%sN%s|%08x|%s' % (self.key_prefix, _hashKey(server_url), int(timestamp), _hashKey(salt))

    def _expiry(self, timeout):
        """Absolute expiration time for memcached."""
        return int(time.time()) + int(timeout)

    def _deserialize(self, key, assoc_s):
        if assoc_s is None:
            return None
        try:
            association = Association.deserialize(assoc_s)
        except ValueError:
            _LOGGER.warning('Removing corrupt association record %s', key)
            self.client.delete(key)
            return None
        if association.getExpiresIn() == 0:
            self.client.delete(key)
            return None
        return association

    def storeAssociation(self, server_url, association):
        serialized = association.serialize()
        expiry = self._expiry(association.getExpiresIn())
        self.client.set(self._assocKey(server_url, association.handle), serialized, expiry)

        latest_key = self._assocKey(server_url)
        latest = self._deserialize(latest_key, self.client.get(latest_key))
        if latest is None or latest.issued <= association.issued:
            self.client.set(latest_key, serialized, expiry)

    def getAssociation(self, server_url, handle=None):
        key = self._assocKey(server_url, handle)
        return self._deserialize(key, self.client.get(key))

    def removeAssociation(self, server_url, handle):
        if self.getAssociation(server_url, handle) is None:
            return False
        self.client.delete(self._assocKey(server_url, handle))

        latest_key = self._assocKey(server_url)
        latest = self._deserialize(latest_key, self.client.get(latest_key))
        if latest is not None and latest.handle == handle:
            self.client.delete(latest_key)
        return True

    def useNonce(self, server_url, timestamp, salt):
        if abs(timestamp - time.time()) > self.skew:
            return False

        key = self._nonceKey(server_url, timestamp, salt)
        # Keep the marker until the timestamp falls out of the window
        expiry = int(timestamp) + self.skew + 5
        return bool(self.client.add(key, '1', expiry))

    def cleanupNonces(self):
        return 0

    def cleanupAssociations(self):
        return 0

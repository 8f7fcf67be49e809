"""Tests of the store backends.

Every backend runs the same set of checks from C{L{StoreTestMixin}}.
"""
import errno
import os
import os.path
import shutil
import tempfile
import time
import unittest
from unittest.mock import patch

from testfixtures import LogCapture, StringComparison

from openid_rp import cryptutil
from openid_rp.association import Association
from openid_rp.store import filestore
from openid_rp.store.interface import OpenIDStore
from openid_rp.store.memcachestore import MemcacheStore
from openid_rp.store.memstore import MemoryStore
from openid_rp.store.nonce import SKEW, mkNonce, split as splitNonce

try:
    import memcache
except ImportError:
    memcache = None


def genAssoc(issued, lifetime=600):
    now = int(time.time())
    sec = cryptutil.randomBytes(20)
    hdl = cryptutil.randomString(128)
    return Association(hdl, sec, now + issued, lifetime, 'HMAC-SHA1')


class StoreTestMixin(object):
    """Checks shared by all the store backends. Subclasses set
    C{self.store} in C{setUp}."""

    server_url = 'http://www.myopenid.com/openid'

    def checkRetrieve(self, url, handle=None, expected=None):
        retrieved_assoc = self.store.getAssociation(url, handle)
        self.assertEqual(retrieved_assoc, expected)

    def checkRemove(self, url, handle, expected):
        present = self.store.removeAssociation(url, handle)
        self.assertEqual(bool(present), expected)

    def checkUseNonce(self, nonce, expected, server_url):
        stamp, salt = splitNonce(nonce)
        actual = self.store.useNonce(server_url, stamp, salt)
        self.assertEqual(bool(actual), expected)

    def test_association(self):
        server_url = self.server_url
        assoc = genAssoc(issued=0)

        # Make sure that a missing association returns no result
        self.checkRetrieve(server_url)

        # Check that after storage, getting returns the same result
        self.store.storeAssociation(server_url, assoc)
        self.checkRetrieve(server_url, None, assoc)

        # more than once
        self.checkRetrieve(server_url, None, assoc)

        # Storing more than once has no ill effect
        self.store.storeAssociation(server_url, assoc)
        self.checkRetrieve(server_url, None, assoc)

        # Removing an association that does not exist returns not present
        self.checkRemove(server_url, assoc.handle + 'x', False)

        # Removing an association that does not exist returns not present
        self.checkRemove(server_url + 'x', assoc.handle, False)

        # Removing an association that is present returns present
        self.checkRemove(server_url, assoc.handle, True)

        # but not present on subsequent calls
        self.checkRemove(server_url, assoc.handle, False)

        # Put assoc back in the store
        self.store.storeAssociation(server_url, assoc)

        # More recent and expires after assoc
        assoc2 = genAssoc(issued=1)
        self.store.storeAssociation(server_url, assoc2)

        # After storing an association with a different handle, but the
        # same server_url, the handle with the later issue date is returned.
        self.checkRetrieve(server_url, None, assoc2)

        # We can still retrieve the older association
        self.checkRetrieve(server_url, assoc.handle, assoc)

        # Plus we can retrieve the association with the later issue date
        # explicitly
        self.checkRetrieve(server_url, assoc2.handle, assoc2)

        # More recent, and expires earlier than assoc2 or assoc. Make sure
        # that we're picking the one with the latest issued date and not
        # taking into account the expiration.
        assoc3 = genAssoc(issued=2, lifetime=100)
        self.store.storeAssociation(server_url, assoc3)

        self.checkRetrieve(server_url, None, assoc3)
        self.checkRetrieve(server_url, assoc.handle, assoc)
        self.checkRetrieve(server_url, assoc2.handle, assoc2)
        self.checkRetrieve(server_url, assoc3.handle, assoc3)

        self.checkRemove(server_url, assoc2.handle, True)

        self.checkRetrieve(server_url, None, assoc3)
        self.checkRetrieve(server_url, assoc.handle, assoc)
        self.checkRetrieve(server_url, assoc2.handle, None)
        self.checkRetrieve(server_url, assoc3.handle, assoc3)

        self.checkRemove(server_url, assoc2.handle, False)
        self.checkRemove(server_url, assoc3.handle, True)

        # A store may forget the older association when the latest one
        # is removed, but never returns a removed one.
        ret_assoc = self.store.getAssociation(server_url, None)
        unexpected = [assoc2.handle, assoc3.handle]
        self.assertTrue(ret_assoc is None or ret_assoc.handle not in unexpected)

        self.checkRetrieve(server_url, assoc.handle, assoc)
        self.checkRetrieve(server_url, assoc2.handle, None)
        self.checkRetrieve(server_url, assoc3.handle, None)

        self.checkRemove(server_url, assoc2.handle, False)
        self.checkRemove(server_url, assoc.handle, True)
        self.checkRemove(server_url, assoc3.handle, False)

        self.checkRetrieve(server_url, None, None)
        self.checkRetrieve(server_url, assoc.handle, None)
        self.checkRetrieve(server_url, assoc2.handle, None)
        self.checkRetrieve(server_url, assoc3.handle, None)

        self.checkRemove(server_url, assoc2.handle, False)
        self.checkRemove(server_url, assoc.handle, False)
        self.checkRemove(server_url, assoc3.handle, False)

    def test_expiredAssociation(self):
        assoc = genAssoc(issued=-7200, lifetime=3600)
        self.store.storeAssociation(self.server_url, assoc)
        self.checkRetrieve(self.server_url, None, None)
        self.checkRetrieve(self.server_url, assoc.handle, None)

    def test_otherServer(self):
        assoc = genAssoc(issued=0)
        self.store.storeAssociation(self.server_url, assoc)
        self.checkRetrieve('http://www.example.com/openid', None, None)
        self.checkRetrieve('http://www.example.com/openid', assoc.handle, None)

    def test_assocCleanup(self):
        assoc_valid1 = genAssoc(-3600, 7200)
        assoc_valid2 = genAssoc(-5)
        assoc_expired1 = genAssoc(-7200, 3600)
        assoc_expired2 = genAssoc(-7200, 3600)

        self.store.cleanupAssociations()
        self.store.storeAssociation(self.server_url + '1', assoc_valid1)
        self.store.storeAssociation(self.server_url + '1', assoc_expired1)
        self.store.storeAssociation(self.server_url + '2', assoc_expired2)
        self.store.storeAssociation(self.server_url + '3', assoc_valid2)

        cleaned = self.store.cleanupAssociations()
        self.assertEqual(cleaned, 2)

        self.checkRetrieve(self.server_url + '1', assoc_valid1.handle, assoc_valid1)
        self.checkRetrieve(self.server_url + '3', None, assoc_valid2)

    def test_nonce(self):
        for url in [self.server_url, '']:
            nonce1 = mkNonce()

            # A nonce is allowed by default
            self.checkUseNonce(nonce1, True, url)
            # Second and third use is refused
            self.checkUseNonce(nonce1, False, url)
            self.checkUseNonce(nonce1, False, url)

            # Old nonces shouldn't pass
            old_nonce = mkNonce(3600)
            self.checkUseNonce(old_nonce, False, url)

    def test_nonceScope(self):
        nonce1 = mkNonce()
        self.checkUseNonce(nonce1, True, self.server_url)
        # The same nonce from another server is a different nonce
        self.checkUseNonce(nonce1, True, 'http://www.example.com/openid')

    def test_nonceFuture(self):
        future = mkNonce(int(time.time()) + SKEW + 100)
        self.checkUseNonce(future, False, self.server_url)

    def test_nonceCleanup(self):
        now = int(time.time())
        old_nonce1 = mkNonce(now - 20000)
        old_nonce2 = mkNonce(now - 10000)
        recent_nonce = mkNonce(now - 600)

        self.store.skew = 0
        self.store.cleanupNonces()

        self.store.skew = 1000000
        self.checkUseNonce(old_nonce1, True, self.server_url)
        self.checkUseNonce(old_nonce2, True, self.server_url)
        self.checkUseNonce(recent_nonce, True, self.server_url)

        self.store.skew = 1000
        cleaned = self.store.cleanupNonces()
        self.assertEqual(cleaned, 2)

        self.store.skew = 100000
        self.checkUseNonce(old_nonce1, True, self.server_url)
        self.checkUseNonce(old_nonce2, True, self.server_url)
        self.checkUseNonce(recent_nonce, False, self.server_url)

    def test_cleanup(self):
        self.store.storeAssociation(self.server_url, genAssoc(-7200, 3600))
        self.assertEqual(self.store.cleanup(), (0, 1))


class FileStoreTest(StoreTestMixin, unittest.TestCase):
    def setUp(self):
        self.store_dir = tempfile.mkdtemp()
        self.store = filestore.FileOpenIDStore(self.store_dir)

    def tearDown(self):
        shutil.rmtree(self.store_dir)

    def test_directories(self):
        for name in ('nonces', 'associations', 'temp'):
            self.assertTrue(os.path.isdir(os.path.join(self.store_dir, name)))
        # Opening the store again is fine
        filestore.FileOpenIDStore(self.store_dir)

    def test_notADirectory(self):
        path = os.path.join(self.store_dir, 'file')
        open(path, 'w').close()
        self.assertRaises(OSError, filestore.FileOpenIDStore, path)

    def test_tempFileRemoved(self):
        self.store.storeAssociation(self.server_url, genAssoc(0))
        self.assertEqual(os.listdir(self.store.temp_dir), [])

    def test_associationFilename(self):
        assoc = genAssoc(0)
        self.store.storeAssociation(self.server_url, assoc)
        filename = self.store.getAssociationFilename(self.server_url, assoc.handle)
        self.assertEqual(os.listdir(self.store.association_dir), [os.path.basename(filename)])
        self.assertTrue(os.path.basename(filename).startswith('http-www.myopenid.com-'))

    def _renameExistsOnce(self):
        """Return a replacement of C{os.rename} failing with EEXIST on the first call."""
        real_rename = os.rename
        calls = []

        def rename(src, dst):
            calls.append((src, dst))
            if len(calls) == 1:
                raise OSError(errno.EEXIST, os.strerror(errno.EEXIST), dst)
            return real_rename(src, dst)
        return rename

    def test_replaceExistingAssociation(self):
        old_assoc = genAssoc(0)
        self.store.storeAssociation(self.server_url, old_assoc)
        new_assoc = Association(old_assoc.handle, cryptutil.randomBytes(20), int(time.time()), 600, 'HMAC-SHA1')

        with patch('os.rename', side_effect=self._renameExistsOnce()) as rename_mock:
            self.store.storeAssociation(self.server_url, new_assoc)

        self.assertEqual(rename_mock.call_count, 2)
        self.checkRetrieve(self.server_url, old_assoc.handle, new_assoc)
        self.assertEqual(len(os.listdir(self.store.association_dir)), 1)
        self.assertEqual(os.listdir(self.store.temp_dir), [])

    def test_renameExistsWithoutTarget(self):
        assoc = genAssoc(0)
        with patch('os.rename', side_effect=self._renameExistsOnce()):
            self.store.storeAssociation(self.server_url, assoc)
        self.checkRetrieve(self.server_url, assoc.handle, assoc)

    def test_nonceSharedBetweenInstances(self):
        timestamp, salt = splitNonce(mkNonce())
        other_store = filestore.FileOpenIDStore(self.store_dir)
        self.assertTrue(self.store.useNonce(self.server_url, timestamp, salt))
        self.assertFalse(other_store.useNonce(self.server_url, timestamp, salt))

    def test_badServerURL(self):
        self.assertRaises(ValueError, self.store.storeAssociation, 'not a url', genAssoc(0))

    def test_corruptAssociation(self):
        assoc = genAssoc(0)
        self.store.storeAssociation(self.server_url, assoc)
        filename = self.store.getAssociationFilename(self.server_url, assoc.handle)
        with open(filename, 'wb') as assoc_file:
            assoc_file.write(b'garbage')

        with LogCapture() as logbook:
            self.checkRetrieve(self.server_url, None, None)
        logbook.check(('openid_rp.store.filestore', 'WARNING',
                       StringComparison('Removing corrupt association file .*')))
        self.assertFalse(os.path.exists(filename))

    def test_cleanupCorruptAssociation(self):
        assoc = genAssoc(0)
        self.store.storeAssociation(self.server_url, assoc)
        with open(os.path.join(self.store.association_dir, 'garbage'), 'wb') as assoc_file:
            assoc_file.write(b'\xff\xfe')

        with LogCapture() as logbook:
            self.assertEqual(self.store.cleanupAssociations(), 1)
        logbook.check(('openid_rp.store.filestore', 'WARNING',
                       StringComparison('Removing corrupt association file .*garbage')))
        self.checkRetrieve(self.server_url, None, assoc)

    def test_cleanupForeignNonceFile(self):
        open(os.path.join(self.store.nonce_dir, 'README'), 'w').close()
        self.assertEqual(self.store.cleanupNonces(), 1)
        self.assertEqual(os.listdir(self.store.nonce_dir), [])

    def test_nonceFilename(self):
        timestamp, salt = splitNonce(mkNonce())
        self.assertTrue(self.store.useNonce(self.server_url, timestamp, salt))
        nonce_files = os.listdir(self.store.nonce_dir)
        self.assertEqual(len(nonce_files), 1)
        self.assertTrue(nonce_files[0].startswith('%08x-http-www.myopenid.com-' % timestamp))


class FileStoreHelpersTest(unittest.TestCase):
    def test_filenameEscape(self):
        self.assertEqual(filestore._filenameEscape('www.example.com'), 'www.example.com')
        self.assertEqual(filestore._filenameEscape('example.com:8000'), 'example.com_3A8000')
        self.assertEqual(filestore._filenameEscape('\xe9'), '_C3_A9')

    def test_safe64(self):
        value = filestore._safe64('http://www.myopenid.com/openid')
        self.assertEqual(len(value), 27)
        for char in '+/=':
            self.assertNotIn(char, value)

    def test_splitServerURL(self):
        self.assertEqual(filestore._splitServerURL('https://example.com:8000/openid'),
                         ('https', 'example.com_3A8000'))
        self.assertRaisesRegex(ValueError, 'Bad server URL', filestore._splitServerURL, 'example.com')


class MemoryStoreTest(StoreTestMixin, unittest.TestCase):
    def setUp(self):
        self.store = MemoryStore()

    def test_emptyServersRemoved(self):
        self.store.storeAssociation(self.server_url, genAssoc(-7200, 3600))
        self.store.cleanupAssociations()
        self.assertEqual(self.store.server_assocs, {})

    def test_lookupsDoNotAddServers(self):
        for index in range(3):
            server_url = 'http://provider%d.example.com/' % index
            self.checkRetrieve(server_url, None, None)
            self.checkRetrieve(server_url, 'handle', None)
            self.checkRemove(server_url, 'handle', False)
        self.assertEqual(self.store.server_assocs, {})


class FakeMemcacheClient(object):
    """Keeps the values of a memcached client in a dictionary. Expiration
    times are absolute timestamps."""

    def __init__(self):
        self.data = {}

    def get(self, key):
        try:
            value, expiry = self.data[key]
        except KeyError:
            return None
        if expiry and expiry < time.time():
            del self.data[key]
            return None
        return value

    def set(self, key, value, time=0):
        self.data[key] = (value, time)
        return True

    def add(self, key, value, time=0):
        if self.get(key) is not None:
            return False
        self.data[key] = (value, time)
        return True

    def delete(self, key):
        self.data.pop(key, None)
        return 1


class MemcacheStoreTest(StoreTestMixin, unittest.TestCase):
    def setUp(self):
        self.client = FakeMemcacheClient()
        self.store = MemcacheStore(self.client)

    # The cache expires the records itself
    def test_assocCleanup(self):
        self.assertEqual(self.store.cleanupAssociations(), 0)

    def test_nonceCleanup(self):
        self.store.useNonce(self.server_url, *splitNonce(mkNonce()))
        self.assertEqual(self.store.cleanupNonces(), 0)

    def test_cleanup(self):
        self.assertEqual(self.store.cleanup(), (0, 0))

    def test_keyPrefix(self):
        store = MemcacheStore(self.client, key_prefix='test:')
        store.storeAssociation(self.server_url, genAssoc(0))
        store.useNonce(self.server_url, *splitNonce(mkNonce()))
        self.assertEqual(len(self.client.data), 3)
        for key in self.client.data:
            self.assertTrue(key.startswith('test:'))
            self.assertNotIn(' ', key)

    def test_olderDoesNotReplaceLatest(self):
        assoc = genAssoc(0)
        assoc2 = genAssoc(1)
        self.store.storeAssociation(self.server_url, assoc2)
        self.store.storeAssociation(self.server_url, assoc)
        self.checkRetrieve(self.server_url, None, assoc2)
        self.checkRetrieve(self.server_url, assoc.handle, assoc)

    def test_corruptRecord(self):
        assoc = genAssoc(0)
        self.store.storeAssociation(self.server_url, assoc)
        key = self.store._assocKey(self.server_url, assoc.handle)
        self.client.set(key, 'garbage')

        with LogCapture() as logbook:
            self.checkRetrieve(self.server_url, assoc.handle, None)
        logbook.check(('openid_rp.store.memcachestore', 'WARNING',
                       StringComparison('Removing corrupt association record .*')))
        self.assertNotIn(key, self.client.data)

    def test_nonceExpiry(self):
        timestamp, salt = splitNonce(mkNonce())
        self.assertTrue(self.store.useNonce(self.server_url, timestamp, salt))
        key = self.store._nonceKey(self.server_url, timestamp, salt)
        self.assertEqual(self.client.data[key], ('1', timestamp + SKEW + 5))

    @unittest.skipUnless(memcache, "python-memcached is not installed")
    def test_fromServers(self):
        store = MemcacheStore.fromServers(['127.0.0.1:11211'], key_prefix='test:')
        self.assertIsInstance(store.client, memcache.Client)
        self.assertEqual(store.key_prefix, 'test:')


class InterfaceTest(unittest.TestCase):
    def test_abstract(self):
        self.assertRaises(TypeError, OpenIDStore)

    def test_cleanup(self):
        class CountingStore(MemoryStore):
            def cleanupNonces(self):
                return 3

            def cleanupAssociations(self):
                return 4

        self.assertEqual(CountingStore().cleanup(), (3, 4))

"""
This module contains an C{L{OpenIDStore}} implementation backed by
flat files.
"""
import glob
import logging
import os
import os.path
import string
import tempfile
import time
from errno import EEXIST, ENOENT

from openid_rp import cryptutil, oidutil
from openid_rp.association import Association
from openid_rp.store import nonce
from openid_rp.store.interface import OpenIDStore

__all__ = ['FileOpenIDStore']

_LOGGER = logging.getLogger(__name__)

_filename_allowed = frozenset(string.ascii_letters + string.digits + '.-')


def _safe64(s):
    h64 = oidutil.toBase64(cryptutil.sha1(s.encode('utf-8')))
    h64 = h64.replace('+', '_')
    h64 = h64.replace('/', '.')
    h64 = h64.replace('=', '')
    return h64


def _filenameEscape(s):
    filename_chunks = []
    for c in s:
        if c in _filename_allowed:
            filename_chunks.append(c)
        else:
            filename_chunks.extend('_%02X' % b for b in c.encode('utf-8'))
    return ''.join(filename_chunks)


def _splitServerURL(server_url):
    """Return the protocol and the escaped domain of a server URL.

    (str) -> (str, str)
    """
    try:
        proto, rest = server_url.split('://', 1)
    except ValueError:
        raise ValueError('Bad server URL: %r' % (server_url,))
    return proto, _filenameEscape(rest.split('/', 1)[0])


def _removeIfPresent(filename):
    """Attempt to remove a file, returning whether the file existed at
    the time of the call.

    str -> bool
    """
    try:
        os.unlink(filename)
    except OSError as why:
        if why.errno == ENOENT:
            # Someone beat us to it, but it's gone, so that's OK
            return False
        else:
            raise
    else:
        # File was present
        return True


def _ensureDir(dir_name):
    """Create dir_name as a directory if it does not exist. If it
    exists, make sure that it is, in fact, a directory.

    Can raise OSError

    str -> NoneType
    """
    try:
        os.makedirs(dir_name)
    except OSError as why:
        if why.errno != EEXIST or not os.path.isdir(dir_name):
            raise


class FileOpenIDStore(OpenIDStore):
    """
    This is a filesystem-based store for OpenID associations and
    nonces.  This store should be safe for use in concurrent systems
    on both windows and unix (excluding NFS filesystems).  There are a
    couple race conditions in the system, but those failure cases have
    been set up in such a way that the worst-case behavior is someone
    having to try to log in a second time.

    Most of the methods of this class are implementation details.
    People wishing to just use this store need only pay attention to
    the C{L{__init__}} method.

    Methods of this object can raise OSError if unexpected filesystem
    conditions, such as bad permissions or missing directories, occur.

    @ivar skew: Number of seconds a nonce timestamp may differ from the
        current time.
    @type skew: int
    """

    def __init__(self, directory, skew=nonce.SKEW):
        """
        Initializes a new FileOpenIDStore.  This initializes the
        nonce and association directories, which are subdirectories of
        the directory passed in.

        @param directory: This is the directory to put the store
            directories in.
        @type directory: str

        @param skew: Allowed nonce clock skew in seconds.
        @type skew: int
        """
        # Make absolute
        directory = os.path.normpath(os.path.abspath(directory))

        self.nonce_dir = os.path.join(directory, 'nonces')

        self.association_dir = os.path.join(directory, 'associations')

        # Temp dir must be on the same filesystem as the assciations
        # directory
        self.temp_dir = os.path.join(directory, 'temp')

        self.skew = skew

        self._setup()

    def _setup(self):
        """Make sure that the directories in which we store our data
        exist.

        () -> NoneType
        """
        _ensureDir(self.nonce_dir)
        _ensureDir(self.association_dir)
        _ensureDir(self.temp_dir)

    def _mktemp(self):
        """Create a temporary file on the same filesystem as
        self.association_dir.

        The temporary directory should not be cleaned if there are any
        processes using the store. If there is no active process using
        the store, it is safe to remove all of the files in the
        temporary directory.

        () -> (file, str)
        """
        fd, name = tempfile.mkstemp(dir=self.temp_dir)
        try:
            file_obj = os.fdopen(fd, 'wb')
            return file_obj, name
        except Exception:
            _removeIfPresent(name)
            raise

    def getAssociationFilename(self, server_url, handle):
        """Create a unique filename for a given server url and
        handle. This implementation does not assume anything about the
        format of the handle. The filename that is returned will
        contain the domain name from the server URL for ease of human
        inspection of the data directory. Without a handle, the result
        is the prefix shared by all associations of the server URL.

        (str, Optional[str]) -> str
        """
        proto, domain = _splitServerURL(server_url)
        url_hash = _safe64(server_url)

        if handle:
            handle_hash = _safe64(handle)
        else:
            handle_hash = ''

        filename = '%s-%s-%s-%s' % (proto, domain, url_hash, handle_hash)

        return os.path.join(self.association_dir, filename)

    def storeAssociation(self, server_url, association):
        """Store an association in the association directory.

        (str, Association) -> NoneType
        """
        association_s = association.serialize().encode('utf-8')
        filename = self.getAssociationFilename(server_url, association.handle)
        tmp_file, tmp = self._mktemp()

        try:
            try:
                tmp_file.write(association_s)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
            finally:
                tmp_file.close()

            try:
                os.rename(tmp, filename)
            except OSError as why:
                if why.errno != EEXIST:
                    raise

                # We only expect EEXIST to happen only on Windows. It's
                # possible that we will succeed in unlinking the existing
                # file, but not in putting the temporary file in place.
                _removeIfPresent(filename)

                # Now the target should not exist. Try renaming again,
                # giving up if it fails.
                os.rename(tmp, filename)
        except Exception:
            # If there was an error, don't leave the temporary file
            # around.
            _removeIfPresent(tmp)
            raise

    def getAssociation(self, server_url, handle=None):
        """Retrieve an association. If no handle is specified, return
        the association with the latest issue time.

        (str, Optional[str]) -> Optional[Association]
        """
        filename = self.getAssociationFilename(server_url, handle)
        if handle:
            return self._getAssociation(filename)

        matching_associations = []
        # The filename with the empty handle is a prefix of all the
        # server's association filenames.
        for association_file in sorted(glob.glob(glob.escape(filename) + '*')):
            association = self._getAssociation(association_file)
            if association is not None:
                matching_associations.append(association)

        if not matching_associations:
            return None
        return max(matching_associations, key=lambda a: a.issued)

    def _getAssociation(self, filename):
        try:
            assoc_file = open(filename, 'rb')
        except IOError as why:
            if why.errno == ENOENT:
                # No association exists for that URL and handle
                return None
            else:
                raise

        with assoc_file:
            assoc_s = assoc_file.read()

        try:
            association = Association.deserialize(assoc_s.decode('utf-8'))
        except ValueError:
            _LOGGER.warning('Removing corrupt association file %s', filename)
            _removeIfPresent(filename)
            return None

        # Clean up expired associations
        if association.getExpiresIn() == 0:
            _removeIfPresent(filename)
            return None
        else:
            return association

    def removeAssociation(self, server_url, handle):
        """Remove an association if it exists. Do nothing if it does not.

        (str, str) -> bool
        """
        assoc = self.getAssociation(server_url, handle)
        if assoc is None:
            return False
        else:
            filename = self.getAssociationFilename(server_url, handle)
            return _removeIfPresent(filename)

    def useNonce(self, server_url, timestamp, salt):
        """Return whether this nonce is valid.

        The nonce is recorded by creating a marker file exclusively, so
        only the first of concurrent callers succeeds.

        (str, int, str) -> bool
        """
        if abs(timestamp - time.time()) > self.skew:
            return False

        if server_url:
            proto, domain = _splitServerURL(server_url)
        else:
            proto, domain = '', ''

        url_hash = _safe64(server_url)
        salt_hash = _safe64(salt)

        filename = '%08x-%s-%s-%s-%s' % (int(timestamp), proto, domain, url_hash, salt_hash)
        filename = os.path.join(self.nonce_dir, filename)

        try:
            fd = os.open(filename, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o200)
        except OSError as why:
            if why.errno == EEXIST:
                return False
            else:
                raise
        else:
            os.close(fd)
            return True

    def _allAssocs(self):
        all_associations = []

        association_filenames = [os.path.join(self.association_dir, filename)
                                 for filename in os.listdir(self.association_dir)]
        for association_filename in association_filenames:
            try:
                association_file = open(association_filename, 'rb')
            except IOError as why:
                if why.errno == ENOENT:
                    _LOGGER.info("%s disappeared during %s._allAssocs", association_filename, self.__class__.__name__)
                    continue
                else:
                    raise

            with association_file:
                assoc_s = association_file.read()

            # Remove expired or corrupted associations
            try:
                association = Association.deserialize(assoc_s.decode('utf-8'))
            except ValueError:
                association = None
            all_associations.append((association_filename, association))

        return all_associations

    def cleanupNonces(self):
        """Remove the nonce markers whose timestamp is outside of the
        skew window.

        () -> int
        """
        now = time.time()
        removed = 0

        for nonce_fname in os.listdir(self.nonce_dir):
            timestamp = nonce_fname.split('-', 1)[0]
            try:
                timestamp = int(timestamp, 16)
            except ValueError:
                # Not a marker written by this store
                expired = True
            else:
                expired = abs(timestamp - now) > self.skew

            if expired and _removeIfPresent(os.path.join(self.nonce_dir, nonce_fname)):
                removed += 1

        return removed

    def cleanupAssociations(self):
        """Remove expired and unreadable association files.

        () -> int
        """
        removed = 0
        for assoc_filename, assoc in self._allAssocs():
            if assoc is None:
                _LOGGER.warning('Removing corrupt association file %s', assoc_filename)
            elif assoc.getExpiresIn() != 0:
                continue
            if _removeIfPresent(assoc_filename):
                removed += 1
        return removed

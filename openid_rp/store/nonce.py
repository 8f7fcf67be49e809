"""Response nonces: an UTC timestamp followed by a random salt.

A nonce looks like C{2006-09-12T18:06:33Zk3Yx5b}. Stores accept a nonce
only once and only while its timestamp is within C{SKEW} seconds of the
current time.
"""
import string
import time
from calendar import timegm

from openid_rp import cryptutil

__all__ = [
    'split',
    'mkNonce',
    'checkTimestamp',
]

NONCE_CHARS = string.ascii_letters + string.digits
SALT_LENGTH = 6

# Five hours, for the request round trip and clock skew together.
SKEW = 60 * 60 * 5

TIME_FORMAT = '%Y-%m-%dT%H:%M:%SZ'
TIME_LENGTH = len('1970-01-01T00:00:00Z')


def split(nonce_string):
    """Split a nonce into its timestamp and salt.

    @type nonce_string: str

    @returns: A pair of a Unix timestamp and the salt characters
    @rtype: Tuple[int, str]

    @raises ValueError: if the nonce does not start with a correctly
        formatted time string
    """
    timestamp = timegm(time.strptime(nonce_string[:TIME_LENGTH], TIME_FORMAT))
    if timestamp < 0:
        raise ValueError('Nonce timestamp before the epoch: %r' % (nonce_string,))
    return timestamp, nonce_string[TIME_LENGTH:]


def checkTimestamp(nonce_string, allowed_skew=SKEW, now=None):
    """Return whether the nonce is well formed and its timestamp lies within C{allowed_skew} of C{now}.

    @param allowed_skew: Seconds allowed in either direction
    @type allowed_skew: int

    @param now: Unix timestamp, the current time by default
    @type now: int

    @rtype: bool
    """
    try:
        stamp, _ = split(nonce_string)
    except ValueError:
        return False

    if now is None:
        now = time.time()
    return abs(stamp - now) <= allowed_skew


def mkNonce(when=None):
    """Generate a nonce issued at C{when}, the current time by default.

    @type when: Optional[int]
    @rtype: str
    """
    issued = time.gmtime() if when is None else time.gmtime(when)
    return time.strftime(TIME_FORMAT, issued) + cryptutil.randomString(SALT_LENGTH, NONCE_CHARS)

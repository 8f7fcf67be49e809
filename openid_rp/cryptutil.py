"""Cryptographic primitives used by associations and stores.

Hashing, HMAC and constant time comparison are provided by
C{cryptography}. Random values come from the operating system.
"""
import codecs
import os
import random
import string

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.constant_time import bytes_eq
from cryptography.hazmat.primitives.hmac import HMAC

from openid_rp.oidutil import fromBase64, toBase64

__all__ = [
    'base64ToLong',
    'bytes_to_int',
    'const_eq',
    'hmac',
    'hmacSha1',
    'hmacSha256',
    'int_to_bytes',
    'longToBase64',
    'randomBytes',
    'randomString',
    'randrange',
    'sha1',
    'sha256',
]

# Characters of the URL safe base64 alphabet
BASE64_SAFE_CHARS = string.ascii_letters + string.digits + '-_'

_srand = random.SystemRandom()


def _hash(algorithm, data):
    digest = hashes.Hash(algorithm, backend=default_backend())
    digest.update(data)
    return digest.finalize()


def sha1(data):
    """
    @type data: bytes
    @rtype: bytes
    """
    return _hash(hashes.SHA1(), data)


def sha256(data):
    """
    @type data: bytes
    @rtype: bytes
    """
    return _hash(hashes.SHA256(), data)


def hmac(secret, data, algorithm):
    """Return the raw HMAC digest of data.

    @param secret: The key
    @type secret: bytes

    @type data: bytes

    @param algorithm: The hash to use, e.g. C{hashes.SHA1()}
    @type algorithm: hashes.HashAlgorithm

    @rtype: bytes
    """
    mac = HMAC(secret, algorithm, backend=default_backend())
    mac.update(data)
    return mac.finalize()


def hmacSha1(secret, data):
    return hmac(secret, data, hashes.SHA1())


def hmacSha256(secret, data):
    return hmac(secret, data, hashes.SHA256())


def const_eq(first, second):
    """Compare two byte strings in time which does not depend on the
    position of the first difference.

    @type first: bytes
    @type second: bytes
    @rtype: bool
    """
    return bytes_eq(first, second)


def randomBytes(length):
    """Return C{length} cryptographically secure random bytes."""
    return os.urandom(length)


def randomString(length, chars=None):
    """Produce a string of C{length} random characters chosen from
    C{chars}.

    @param chars: The alphabet, defaults to URL safe base64 characters.
    @type chars: str

    @rtype: str
    """
    if chars is None:
        chars = BASE64_SAFE_CHARS
    return ''.join(_srand.choice(chars) for _ in range(length))


def randrange(start, stop=None, step=1):
    return _srand.randrange(start, stop, step)


def bytes_to_int(value):
    """
    Convert byte string to integer.

    @type value: bytes
    @rtype: int
    """
    return int(codecs.encode(value, 'hex'), 16)


def fix_btwoc(value):
    """
    Utility function to ensure the output conforms the `btwoc` function output.

    See http://openid.net/specs/openid-authentication-2_0.html#btwoc for details.

    @type value: bytes or bytearray
    @rtype: bytes
    """
    array = bytearray(value)
    # First bit must be zero. If it isn't, the bytes must be prepended by zero byte.
    if array[0] > 127:
        array = bytearray([0]) + array
    return bytes(array)


def int_to_bytes(value):
    """
    Convert integer to byte string.

    @type value: int
    @rtype: bytes
    """
    hex_value = '{:x}'.format(value)
    if len(hex_value) % 2:
        hex_value = '0' + hex_value
    return fix_btwoc(bytearray.fromhex(hex_value))


def longToBase64(value):
    return toBase64(int_to_bytes(value))


def base64ToLong(s):
    return bytes_to_int(fromBase64(s))

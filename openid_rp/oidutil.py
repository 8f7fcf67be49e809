"""This module contains general utility code that is used throughout
the library.
"""
import binascii
from urllib.parse import urlencode

__all__ = ['appendArgs', 'toBase64', 'fromBase64', 'force_text', 'Symbol']


def appendArgs(url, args):
    """Append query arguments to a HTTP(s) URL. If the URL already has
    query arguments, these arguments will be added, and the existing
    arguments will be preserved. Duplicate arguments will not be
    detected or collapsed (both will appear in the output).

    @param url: The url to which the arguments will be appended
    @type url: str

    @param args: The query arguments to add to the URL. If a
        dictionary is passed, the items will be sorted before
        appending them to the URL. If a sequence of pairs is passed,
        the order of the sequence will be preserved.
    @type args: Union[Dict[str, str], List[Tuple[str, str]]]

    @returns: The URL with the parameters added
    @rtype: str
    """
    if hasattr(args, 'items'):
        args = sorted(args.items())
    else:
        args = list(args)

    if not args:
        return url

    if '?' in url:
        sep = '&'
    else:
        sep = '?'

    return '%s%s%s' % (url, sep, urlencode(args))


def toBase64(s):
    """Return string s as base64, omitting newlines.

    @type s: bytes
    @rtype str
    """
    return binascii.b2a_base64(s)[:-1].decode('utf-8')


def fromBase64(s):
    """Return binary data from base64 encoded string.

    @type s: str
    @rtype bytes
    @raise ValueError: If the input is not valid base64.
    """
    try:
        return binascii.a2b_base64(s)
    except binascii.Error as why:
        # Convert to a common exception type
        raise ValueError(str(why))


def force_text(value):
    """
    Return a text object representing value in UTF-8 encoding.
    """
    if isinstance(value, str):
        return value
    elif isinstance(value, bytes):
        return value.decode('utf-8')
    else:
        return str(value)


class Symbol(object):
    """This class implements an object that compares equal to others
    of the same type that have the same name. These are distict from
    string objects.
    """

    def __init__(self, name):
        self.name = name

    def __eq__(self, other):
        return type(self) == type(other) and self.name == other.name

    def __ne__(self, other):
        return not (self == other)

    def __hash__(self):
        return hash((self.__class__, self.name))

    def __repr__(self):
        return '<Symbol %s>' % (self.name,)

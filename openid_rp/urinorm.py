"""URI normalization, RFC 3986 section 6, for HTTP and HTTPS URLs."""
import string
from urllib.parse import parse_qsl, quote, unquote, urlencode, urlsplit, urlunsplit

__all__ = ['urinorm', 'remove_dot_segments']

SUB_DELIMS = "!$&'()*+,;="
_ALLOWED_CHARACTERS = frozenset(string.ascii_letters + string.digits + "-._~" + ":/?#[]@" + SUB_DELIMS + "%")
_DEFAULT_PORTS = {'http': 80, 'https': 443}


def remove_dot_segments(path):
    """Resolve C{.} and C{..} segments of a path, RFC 3986 section 5.2.4.

    @type path: str
    @rtype: str
    """
    segments = path.split('/')
    output = []
    for segment in segments:
        if segment == '.':
            continue
        if segment == '..':
            # The leading empty segment of an absolute path is the root.
            if len(output) > 1 or (output and output[0]):
                output.pop()
            continue
        output.append(segment)
    if segments[-1] in ('.', '..'):
        output.append('')
    return '/'.join(output)


def _check_characters(value, part_name):
    if not _ALLOWED_CHARACTERS.issuperset(value):
        raise ValueError('Illegal characters in URI {}: {}'.format(part_name, value))


def _normalize_hostname(split_uri):
    hostname = unquote((split_uri.hostname or '').lower())
    try:
        hostname = hostname.encode('idna').decode('ascii')
    except ValueError as error:
        raise ValueError('Invalid hostname {!r}: {}'.format(hostname, error))
    _check_characters(hostname, 'hostname')
    return hostname


def _normalize_netloc(split_uri, scheme):
    netloc = _normalize_hostname(split_uri)

    try:
        port = split_uri.port
    except ValueError as error:
        raise ValueError('Invalid port in {!r}: {}'.format(split_uri.netloc, error))
    if port is not None and port != _DEFAULT_PORTS[scheme]:
        netloc = '{}:{}'.format(netloc, port)

    userinfo = ':'.join(i for i in (split_uri.username, split_uri.password) if i is not None)
    if userinfo:
        _check_characters(userinfo, 'userinfo')
        netloc = '{}@{}'.format(userinfo, netloc)
    return netloc


def _normalize_path(path):
    # Decoding first turns %2d into '-' and upper-cases the remaining escapes.
    path = remove_dot_segments(quote(unquote(path), safe='/' + SUB_DELIMS)) or '/'
    _check_characters(path, 'path')
    return path


def urinorm(uri):
    """Return normalized URI.

    Only absolute HTTP and HTTPS URLs are supported. The scheme and host
    are lower-cased, IDN host names are encoded, default ports dropped,
    dot segments resolved and percent encoding normalized.

    @type uri: str
    @rtype: str
    @raise ValueError: If URI is invalid.
    """
    split_uri = urlsplit(uri)

    scheme = split_uri.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        raise ValueError('Not an absolute HTTP or HTTPS URI: {!r}'.format(uri))
    if not split_uri.netloc:
        raise ValueError('Not an absolute URI: {!r}'.format(uri))

    netloc = _normalize_netloc(split_uri, scheme)
    path = _normalize_path(split_uri.path)

    query = urlencode(parse_qsl(split_uri.query))
    _check_characters(query, 'query')

    fragment = unquote(split_uri.fragment)
    _check_characters(fragment, 'fragment')

    return urlunsplit((scheme, netloc, path, query, fragment))

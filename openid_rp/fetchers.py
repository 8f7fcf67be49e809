"""HTTP fetchers used for discovery and direct communication with providers.

A fetcher is an object with a C{fetch} method, see L{HTTPFetcher}. The
default one is built by L{createHTTPFetcher}, which prefers C{requests}
and falls back to C{urllib}.
"""
import logging
import sys
from urllib.error import HTTPError as UrllibHTTPError
from urllib.request import Request, urlopen

import openid_rp

__all__ = ['HTTPResponse', 'HTTPFetcher', 'createHTTPFetcher', 'HTTPFetchingError',
           'ExceptionWrappingFetcher', 'Urllib2Fetcher', 'RequestsFetcher']

try:
    import requests
except ImportError:
    requests = None

_LOGGER = logging.getLogger(__name__)

USER_AGENT = "python-openid-rp/%s (%s)" % (openid_rp.__version__, sys.platform)
MAX_RESPONSE_KB = 1024


def createHTTPFetcher():
    """Create a default HTTP fetcher instance.

    C{requests} is used when it is installed, C{urllib} otherwise.

    @rtype: L{HTTPFetcher}
    """
    if requests is not None:
        return RequestsFetcher()
    return Urllib2Fetcher()


class HTTPResponse(object):
    """The result of a fetch.

    @ivar final_url: The URL of the response, after redirects
    @ivar status: HTTP status code
    @ivar headers: Response headers
    @ivar body: Response body
    @type body: bytes
    """

    def __init__(self, final_url=None, status=None, headers=None, body=None):
        self.final_url = final_url
        self.status = status
        self.headers = headers
        self.body = body

    def __repr__(self):
        return "<%s status %s for %s>" % (type(self).__name__, self.status, self.final_url)


class HTTPFetchingError(Exception):
    """Raised by L{ExceptionWrappingFetcher} for any failure of the wrapped fetcher.

    @ivar why: The exception that caused this exception
    """

    def __init__(self, why=None):
        super(HTTPFetchingError, self).__init__(why)
        self.why = why


class HTTPFetcher(object):
    """Interface of the HTTP fetchers.

    Implement it only to plug in another HTTP library.
    """

    def fetch(self, url, body=None, headers=None):
        """Perform an HTTP GET, or a POST when C{body} is given, following redirects.

        @type url: str
        @type body: Optional[bytes]
        @param headers: HTTP headers to include with the request
        @type headers: Optional[Dict[str, str]]

        @return: The server's response. HTTP error statuses like 404 or 500
            are returned, not raised.
        @rtype: L{HTTPResponse}

        @raise Exception: On network or protocol errors. The type depends
            on the underlying HTTP library.
        """
        raise NotImplementedError


class ExceptionWrappingFetcher(HTTPFetcher):
    """Fetcher wrapper which turns every error into L{HTTPFetchingError}."""

    def __init__(self, fetcher):
        self.fetcher = fetcher

    def fetch(self, *args, **kwargs):
        try:
            return self.fetcher.fetch(*args, **kwargs)
        except HTTPFetchingError:
            raise
        except Exception as why:
            raise HTTPFetchingError(why=why) from why


class _LibraryFetcher(HTTPFetcher):
    """Common parts of the fetchers backed by an HTTP library."""

    library_name = None

    def _prepareHeaders(self, headers):
        headers = dict(headers or {})
        headers.setdefault('User-Agent', "%s %s" % (USER_AGENT, self.library_name))
        return headers


class Urllib2Fetcher(_LibraryFetcher):
    """An L{HTTPFetcher} that uses urllib."""

    library_name = 'Python-urllib'
    urlopen = staticmethod(urlopen)

    def fetch(self, url, body=None, headers=None):
        assert body is None or isinstance(body, bytes)
        # urllib would also open file: and ftp: URLs.
        if not url.startswith(('http://', 'https://')):
            raise ValueError('Bad URL scheme: %r' % (url,))

        _LOGGER.debug('Fetching %s with urllib', url)
        request = Request(url, data=body, headers=self._prepareHeaders(headers))
        try:
            urllib_response = self.urlopen(request)
        except UrllibHTTPError as error:
            urllib_response = error
        try:
            return self._makeResponse(urllib_response)
        finally:
            urllib_response.close()

    def _makeResponse(self, urllib_response):
        return HTTPResponse(final_url=urllib_response.geturl(),
                            status=getattr(urllib_response, 'code', 200),
                            headers=dict(urllib_response.info().items()),
                            body=urllib_response.read(MAX_RESPONSE_KB * 1024))


class RequestsFetcher(_LibraryFetcher):
    """An L{HTTPFetcher} that uses C{requests}."""

    library_name = 'python-requests'

    def __init__(self):
        if requests is None:
            raise RuntimeError('Cannot find requests library')

    def fetch(self, url, body=None, headers=None):
        """Perform an HTTP request.

        @raise Exception: Any exception that can be raised by C{requests}

        @see: L{HTTPFetcher.fetch}
        """
        assert body is None or isinstance(body, bytes)

        method = 'POST' if body else 'GET'
        _LOGGER.debug('Fetching %s %s with requests', method, url)
        response = requests.request(method, url, data=body, headers=self._prepareHeaders(headers))
        return HTTPResponse(response.url, response.status_code, response.headers, response.content)

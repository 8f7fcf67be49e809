"""Functions to discover OpenID endpoints from identifiers.

Only HTML-based discovery is implemented: the identifier page is fetched
and its C{<link rel="...">} elements name the provider endpoint.
"""
import io
import logging
from urllib.parse import urldefrag, urljoin, urlsplit

from lxml import etree

from openid_rp import fetchers, urinorm
from openid_rp.message import OPENID1_NS as OPENID_1_0_MESSAGE_NS, OPENID2_NS as OPENID_2_0_MESSAGE_NS

__all__ = [
    'DiscoveryFailure',
    'OPENID_1_0_NS',
    'OPENID_1_0_TYPE',
    'OPENID_1_1_TYPE',
    'OPENID_2_0_TYPE',
    'OPENID_IDP_2_0_TYPE',
    'OpenIDServiceEndpoint',
    'discover',
]

_LOGGER = logging.getLogger(__name__)

OPENID_1_0_NS = 'http://openid.net/xmlns/1.0'
OPENID_IDP_2_0_TYPE = 'http://specs.openid.net/auth/2.0/server'
OPENID_2_0_TYPE = 'http://specs.openid.net/auth/2.0/signon'
OPENID_1_1_TYPE = 'http://openid.net/signon/1.1'
OPENID_1_0_TYPE = 'http://openid.net/signon/1.0'


class DiscoveryFailure(Exception):
    """Raised when a identifier can not be resolved to OpenID endpoints.

    @ivar http_response: The response which failed discovery, if any
    """

    def __init__(self, message, http_response):
        Exception.__init__(self, message)
        self.http_response = http_response


class OpenIDServiceEndpoint(object):
    """Object representing an OpenID service endpoint.

    @ivar claimed_id: the identifier the user claims, C{None} for OP
        identifier endpoints
    @ivar local_id: the identifier the provider knows the user by
    @ivar server_url: the provider endpoint URL
    @ivar type_uris: the protocol version markers of the endpoint
    """

    # OpenID service type URIs, listed in order of preference.
    openid_type_uris = [
        OPENID_IDP_2_0_TYPE,

        OPENID_2_0_TYPE,
        OPENID_1_1_TYPE,
        OPENID_1_0_TYPE,
    ]

    def __init__(self):
        self.claimed_id = None
        self.server_url = None
        self.type_uris = []
        self.local_id = None
        self.display_identifier = None

    def getDisplayIdentifier(self):
        """Return the display_identifier if set, else return the claimed_id.
        """
        if self.display_identifier is not None:
            return self.display_identifier
        if self.claimed_id is None:
            return None
        else:
            return urldefrag(self.claimed_id)[0]

    def usesExtension(self, extension_uri):
        return extension_uri in self.type_uris

    def preferredNamespace(self):
        if (OPENID_IDP_2_0_TYPE in self.type_uris or
                OPENID_2_0_TYPE in self.type_uris):
            return OPENID_2_0_MESSAGE_NS
        else:
            return OPENID_1_0_MESSAGE_NS

    def compatibilityMode(self):
        return self.preferredNamespace() != OPENID_2_0_MESSAGE_NS

    def isOPIdentifier(self):
        return OPENID_IDP_2_0_TYPE in self.type_uris

    def getLocalID(self):
        """Return the identifier that should be sent as the
        openid.identity parameter to the server."""
        if self.local_id is None:
            return self.claimed_id
        else:
            return self.local_id

    @classmethod
    def fromHTML(cls, uri, html):
        """Parse the given document as HTML looking for an OpenID <link
        rel=...>

        @type html: Union[str, bytes]
        @rtype: List[OpenIDServiceEndpoint]
        """
        discovery_types = [
            (OPENID_2_0_TYPE, 'openid2.provider', 'openid2.local_id'),
            (OPENID_1_1_TYPE, 'openid.server', 'openid.delegate'),
        ]

        links = findLinks(html)
        services = []
        for type_uri, op_endpoint_rel, local_id_rel in discovery_types:
            op_endpoint_url = findFirstHref(links, op_endpoint_rel)
            if op_endpoint_url is None:
                continue

            service = cls()
            service.claimed_id = uri
            service.local_id = findFirstHref(links, local_id_rel)
            service.server_url = urljoin(uri, op_endpoint_url)
            service.type_uris = [type_uri]

            services.append(service)

        return services

    @classmethod
    def fromOPEndpointURL(cls, op_endpoint_url):
        """Construct an OP-Identifier OpenIDServiceEndpoint object for
        a given OP Endpoint URL

        @param op_endpoint_url: The URL of the endpoint
        @rtype: OpenIDServiceEndpoint
        """
        service = cls()
        service.server_url = op_endpoint_url
        service.type_uris = [OPENID_IDP_2_0_TYPE]
        return service

    def __str__(self):
        return ("<%s.%s server_url=%r claimed_id=%r "
                "local_id=%r display_identifier=%r>"
                % (self.__class__.__module__, self.__class__.__name__,
                   self.server_url, self.claimed_id, self.local_id, self.display_identifier))


def findLinks(html):
    """Find the C{<link>} elements in the head of a HTML document.

    @type html: Union[str, bytes]

    @return: pairs of lower cased rel values and the href
    @rtype: List[Tuple[List[str], str]]
    """
    if isinstance(html, bytes):
        stream = io.BytesIO(html)
    else:
        stream = io.StringIO(html)

    parser = etree.HTMLParser()
    try:
        document = etree.parse(stream, parser)
    except (ValueError, etree.XMLSyntaxError):
        _LOGGER.info("Couldn't parse HTML page.")
        return []

    # Invalid input may return element with no content
    if document.getroot() is None:
        return []

    links = []
    for link in document.xpath('/html/head/link[@rel and @href]'):
        rels = link.get('rel').lower().split()
        links.append((rels, link.get('href').strip()))
    return links


def findFirstHref(links, rel):
    """Return the href of the first link with the given rel value."""
    for rels, href in links:
        if rel in rels:
            return href
    return None


def normalizeURL(url):
    """Normalize a URL, converting normalization failures to
    DiscoveryFailure"""
    try:
        normalized = urinorm.urinorm(url)
    except ValueError as why:
        raise DiscoveryFailure('Normalizing identifier: %s' % (why,), None)
    else:
        return urldefrag(normalized)[0]


def discover(identifier, fetcher=None):
    """Discover OpenID endpoints for an URL identifier.

    @param fetcher: The fetcher for the identifier page. Defaults to an
        exception wrapping C{L{fetchers.createHTTPFetcher}} fetcher.
    @type fetcher: L{fetchers.HTTPFetcher}

    @return: The normalized identifier and the list of endpoints
    @rtype: Tuple[str, List[OpenIDServiceEndpoint]]

    @raises DiscoveryFailure: when the identifier page can not be
        fetched or the identifier is invalid
    """
    if fetcher is None:
        fetcher = fetchers.ExceptionWrappingFetcher(fetchers.createHTTPFetcher())

    parsed = urlsplit(identifier)
    if parsed.scheme and parsed.netloc:
        if parsed.scheme not in ('http', 'https'):
            raise DiscoveryFailure('URI scheme is not HTTP or HTTPS', None)
    else:
        identifier = 'http://' + identifier

    claimed_id = normalizeURL(identifier)
    _LOGGER.debug('Performing HTML discovery on %s', claimed_id)
    try:
        response = fetcher.fetch(claimed_id)
    except fetchers.HTTPFetchingError as why:
        raise DiscoveryFailure('Error fetching %r: %s' % (claimed_id, why), None)

    if response.status not in (200, 206):
        raise DiscoveryFailure('HTTP Response status from identity URL host is not 200. '
                               'Got status %r' % (response.status,), response)

    if response.final_url:
        claimed_id = normalizeURL(response.final_url)

    services = OpenIDServiceEndpoint.fromHTML(claimed_id, response.body)
    return claimed_id, services

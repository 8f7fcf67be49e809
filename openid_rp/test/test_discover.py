"""Test HTML-based discovery."""
import unittest
from unittest.mock import Mock

from testfixtures import LogCapture

from openid_rp import fetchers
from openid_rp.consumer import discover
from openid_rp.message import OPENID1_NS, OPENID2_NS

OPENID2_HTML = b"""<html>
<head>
<title>Identity page</title>
<link rel="openid2.provider" href="http://www.myopenid.com/server" />
<link rel="openid2.local_id" href="http://smoker.myopenid.com/" />
</head>
<body><p>Hello</p></body>
</html>
"""

OPENID1_HTML = b"""<html>
<head>
<link rel="openid.server" href="http://www.myopenid.com/server" />
<link rel="openid.delegate" href="http://smoker.myopenid.com/" />
</head>
</html>
"""

BOTH_HTML = b"""<html>
<head>
<link rel="openid.server openid2.provider" href="  http://www.myopenid.com/server  " />
</head>
</html>
"""

NO_OPENID_HTML = b"""<html>
<head>
<link rel="stylesheet" href="http://example.com/style.css" />
</head>
<body><link rel="openid2.provider" href="http://www.myopenid.com/server" /></body>
</html>
"""


class TestFromHTML(unittest.TestCase):
    """Test `OpenIDServiceEndpoint.fromHTML` method."""

    def test_openid2(self):
        services = discover.OpenIDServiceEndpoint.fromHTML('http://example.com/', OPENID2_HTML)
        self.assertEqual(len(services), 1)
        service = services[0]
        self.assertEqual(service.claimed_id, 'http://example.com/')
        self.assertEqual(service.server_url, 'http://www.myopenid.com/server')
        self.assertEqual(service.local_id, 'http://smoker.myopenid.com/')
        self.assertEqual(service.type_uris, [discover.OPENID_2_0_TYPE])
        self.assertEqual(service.preferredNamespace(), OPENID2_NS)
        self.assertFalse(service.compatibilityMode())
        self.assertFalse(service.isOPIdentifier())

    def test_openid1(self):
        services = discover.OpenIDServiceEndpoint.fromHTML('http://example.com/', OPENID1_HTML)
        self.assertEqual(len(services), 1)
        service = services[0]
        self.assertEqual(service.server_url, 'http://www.myopenid.com/server')
        self.assertEqual(service.local_id, 'http://smoker.myopenid.com/')
        self.assertEqual(service.type_uris, [discover.OPENID_1_1_TYPE])
        self.assertEqual(service.preferredNamespace(), OPENID1_NS)
        self.assertTrue(service.compatibilityMode())

    def test_both(self):
        services = discover.OpenIDServiceEndpoint.fromHTML('http://example.com/', BOTH_HTML)
        self.assertEqual([s.type_uris for s in services], [[discover.OPENID_2_0_TYPE], [discover.OPENID_1_1_TYPE]])
        for service in services:
            self.assertEqual(service.server_url, 'http://www.myopenid.com/server')
            self.assertIsNone(service.local_id)
            self.assertEqual(service.getLocalID(), 'http://example.com/')

    def test_relative_provider(self):
        html = b'<html><head><link rel="openid2.provider" href="/openid/server" /></head></html>'
        services = discover.OpenIDServiceEndpoint.fromHTML('http://example.com/users/smoker', html)
        self.assertEqual(len(services), 1)
        self.assertEqual(services[0].server_url, 'http://example.com/openid/server')

    def test_no_openid(self):
        self.assertEqual(discover.OpenIDServiceEndpoint.fromHTML('http://example.com/', NO_OPENID_HTML), [])

    def test_text(self):
        services = discover.OpenIDServiceEndpoint.fromHTML('http://example.com/', OPENID2_HTML.decode('utf-8'))
        self.assertEqual(len(services), 1)

    def test_empty(self):
        self.assertEqual(discover.OpenIDServiceEndpoint.fromHTML('http://example.com/', b''), [])


class TestFindLinks(unittest.TestCase):
    def test_links(self):
        links = discover.findLinks(BOTH_HTML)
        self.assertEqual(links, [(['openid.server', 'openid2.provider'], 'http://www.myopenid.com/server')])

    def test_case(self):
        html = b'<html><head><LINK REL="OpenID2.Provider" HREF="http://example.com/op"></head></html>'
        self.assertEqual(discover.findLinks(html), [(['openid2.provider'], 'http://example.com/op')])

    def test_missing_href(self):
        html = b'<html><head><link rel="openid2.provider"></head></html>'
        self.assertEqual(discover.findLinks(html), [])

    def test_findFirstHref(self):
        links = [(['stylesheet'], 'style.css'), (['openid.server'], 'first'), (['openid.server'], 'second')]
        self.assertEqual(discover.findFirstHref(links, 'openid.server'), 'first')
        self.assertIsNone(discover.findFirstHref(links, 'openid2.provider'))


class TestServiceEndpoint(unittest.TestCase):
    def setUp(self):
        self.endpoint = discover.OpenIDServiceEndpoint()

    def test_getDisplayIdentifier(self):
        self.endpoint.claimed_id = 'http://example.com/#fragment'
        self.assertEqual(self.endpoint.getDisplayIdentifier(), 'http://example.com/')
        self.endpoint.display_identifier = 'example.com'
        self.assertEqual(self.endpoint.getDisplayIdentifier(), 'example.com')

    def test_getDisplayIdentifier_none(self):
        self.assertIsNone(self.endpoint.getDisplayIdentifier())

    def test_fromOPEndpointURL(self):
        endpoint = discover.OpenIDServiceEndpoint.fromOPEndpointURL('http://example.com/op')
        self.assertEqual(endpoint.server_url, 'http://example.com/op')
        self.assertIsNone(endpoint.claimed_id)
        self.assertTrue(endpoint.isOPIdentifier())
        self.assertEqual(endpoint.preferredNamespace(), OPENID2_NS)

    def test_usesExtension(self):
        self.endpoint.type_uris = [discover.OPENID_2_0_TYPE]
        self.assertTrue(self.endpoint.usesExtension(discover.OPENID_2_0_TYPE))
        self.assertFalse(self.endpoint.usesExtension(discover.OPENID_1_0_TYPE))

    def test_str(self):
        self.endpoint.server_url = 'http://example.com/op'
        self.assertIn("server_url='http://example.com/op'", str(self.endpoint))


class TestNormalizeURL(unittest.TestCase):
    def test_normalize(self):
        self.assertEqual(discover.normalizeURL('HTTP://Example.COM/a/../b#frag'), 'http://example.com/b')

    def test_failure(self):
        self.assertRaisesRegex(discover.DiscoveryFailure, '^Normalizing identifier: ',
                               discover.normalizeURL, 'http://example.com:bad/')


class TestDiscover(unittest.TestCase):
    """Test `discover` function."""

    def setUp(self):
        self.fetcher = Mock(spec=fetchers.HTTPFetcher)

    def respond(self, body, status=200, final_url='http://example.com/'):
        self.fetcher.fetch.return_value = fetchers.HTTPResponse(final_url, status, {}, body)

    def test_discover(self):
        self.respond(OPENID2_HTML)
        with LogCapture() as logbook:
            claimed_id, services = discover.discover('http://example.com/', fetcher=self.fetcher)
        self.assertEqual(claimed_id, 'http://example.com/')
        self.assertEqual(len(services), 1)
        self.assertEqual(services[0].claimed_id, 'http://example.com/')
        self.fetcher.fetch.assert_called_once_with('http://example.com/')
        logbook.check(('openid_rp.consumer.discover', 'DEBUG', 'Performing HTML discovery on http://example.com/'))

    def test_scheme_prepended(self):
        self.respond(OPENID2_HTML)
        claimed_id, services = discover.discover('example.com', fetcher=self.fetcher)
        self.fetcher.fetch.assert_called_once_with('http://example.com/')
        self.assertEqual(claimed_id, 'http://example.com/')

    def test_final_url(self):
        self.respond(OPENID1_HTML, final_url='http://example.com/redirected#frag')
        claimed_id, services = discover.discover('http://example.com/', fetcher=self.fetcher)
        self.assertEqual(claimed_id, 'http://example.com/redirected')
        self.assertEqual(services[0].claimed_id, 'http://example.com/redirected')

    def test_no_services(self):
        self.respond(NO_OPENID_HTML)
        self.assertEqual(discover.discover('http://example.com/', fetcher=self.fetcher), ('http://example.com/', []))

    def test_bad_scheme(self):
        self.assertRaisesRegex(discover.DiscoveryFailure, 'URI scheme is not HTTP or HTTPS',
                               discover.discover, 'ftp://example.com/', fetcher=self.fetcher)
        self.fetcher.fetch.assert_not_called()

    def test_bad_status(self):
        self.respond(b'Not found', status=404)
        with self.assertRaisesRegex(discover.DiscoveryFailure, 'Got status 404') as catcher:
            discover.discover('http://example.com/', fetcher=self.fetcher)
        self.assertEqual(catcher.exception.http_response.status, 404)

    def test_partial_content(self):
        self.respond(OPENID2_HTML, status=206)
        claimed_id, services = discover.discover('http://example.com/', fetcher=self.fetcher)
        self.assertEqual(len(services), 1)

    def test_fetching_error(self):
        self.fetcher.fetch.side_effect = fetchers.HTTPFetchingError(why=ValueError('Connection refused'))
        with self.assertRaisesRegex(discover.DiscoveryFailure, "^Error fetching 'http://example.com/': ") as catcher:
            discover.discover('http://example.com/', fetcher=self.fetcher)
        self.assertIsNone(catcher.exception.http_response)

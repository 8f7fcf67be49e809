"""Verification of positive assertions (C{openid.mode=id_res}).

C{L{IdResHandler}} runs the checks of a single response in order and
stops at the first failure:

 1. the required fields are present and signed,
 2. the C{return_to} URL matches the URL the response arrived at,
 3. the asserted identifier agrees with discovered information,
 4. the signature is valid, checked with a stored association or by
    asking the provider (C{check_authentication}),
 5. the nonce was not used before.

Failures are raised as C{L{ProtocolError}} with an C{L{ErrorKind}}.
"""
import copy
import enum
import functools
import logging
from urllib.parse import parse_qsl, urldefrag, urlsplit

from openid_rp import fetchers, urinorm
from openid_rp.consumer.discover import (OPENID_1_0_TYPE, OPENID_1_1_TYPE, OPENID_2_0_TYPE, OpenIDServiceEndpoint,
                                         discover as discoverIdentifier)
from openid_rp.message import (BARE_NS, OPENID1_NS, OPENID2_NS, OPENID_NS, KeyNotFound, Message, no_default)
from openid_rp.oidutil import force_text
from openid_rp.store.nonce import split as splitNonce

__all__ = ['ErrorKind', 'IdResHandler', 'ProtocolError', 'ServerError', 'TypeURIMismatch', 'makeKVPost']

_LOGGER = logging.getLogger(__name__)


class ErrorKind(enum.Enum):
    """Classification of verification failures."""
    MALFORMED_MESSAGE = 'malformed_message'
    INVALID_MODE = 'invalid_mode'
    MISSING_FIELD = 'missing_field'
    UNSIGNED_FIELD = 'unsigned_field'
    RETURN_TO_MISMATCH = 'return_to_mismatch'
    UNEXPECTED_PARAMETER = 'unexpected_parameter'
    DISCOVERY_MISMATCH = 'discovery_mismatch'
    NO_OPENID_INFORMATION = 'no_openid_information'
    DISCOVERY_FAILED = 'discovery_failed'
    ASSOCIATION_EXPIRED = 'association_expired'
    BAD_SIGNATURE = 'bad_signature'
    CHECK_AUTH_FAILED = 'check_auth_failed'
    CHECK_AUTH_REJECTED = 'check_auth_rejected'
    TRANSPORT = 'transport'
    NONCE_MISSING = 'nonce_missing'
    MALFORMED_NONCE = 'malformed_nonce'
    NONCE_REUSED = 'nonce_reused'
    PROVIDER_ERROR = 'provider_error'


class ProtocolError(ValueError):
    """Exception that indicates that a message violated the
    protocol. It is raised and caught internally to this file.

    @ivar kind: The class of the violation
    @type kind: L{ErrorKind}
    """

    def __init__(self, message, kind=ErrorKind.MALFORMED_MESSAGE):
        ValueError.__init__(self, message)
        self.kind = kind


class TypeURIMismatch(ProtocolError):
    """A protocol error arising from type URIs mismatching
    """

    def __init__(self, expected, endpoint):
        ProtocolError.__init__(self, 'Required type %r not found in %s' % (expected, endpoint),
                               ErrorKind.DISCOVERY_MISMATCH)
        self.expected = expected
        self.endpoint = endpoint


class ServerError(Exception):
    """Exception that is raised when the server returns a 400 response
    code to a direct request."""

    def __init__(self, error_text, error_code, message):
        Exception.__init__(self, error_text)
        self.error_text = error_text
        self.error_code = error_code
        self.message = message

    @classmethod
    def fromMessage(cls, message):
        """Generate a ServerError instance, extracting the error text
        and the error code from the message."""
        error_text = message.getArg(OPENID_NS, 'error', '<no error message supplied>')
        error_code = message.getArg(OPENID_NS, 'error_code')
        return cls(error_text, error_code, message)


def _httpResponseToMessage(response, server_url):
    """Adapt a POST response to a Message.

    @type response: L{openid_rp.fetchers.HTTPResponse}

    @raises ServerError: when the remote OpenID server returns an error.
    @raises HTTPFetchingError: when the status code is not expected or
        the body is not a KV form document.
    """
    if response.status not in (200, 206, 400):
        fmt = 'bad status code from server %s: %s'
        error_message = fmt % (server_url, response.status)
        raise fetchers.HTTPFetchingError(error_message)

    try:
        response_message = Message.fromKVForm(force_text(response.body))
    except ValueError as why:
        raise fetchers.HTTPFetchingError('bad response from server %s: %s' % (server_url, why)) from why

    if response.status == 400:
        raise ServerError.fromMessage(response_message)

    return response_message


def makeKVPost(request_message, server_url, fetcher):
    """Make a Direct Request to an OpenID Provider and return the
    result as a Message object.

    @raises HTTPFetchingError: if an error is encountered in making the
        HTTP post.

    @rtype: L{openid_rp.message.Message}
    """
    resp = fetcher.fetch(server_url, body=request_message.toURLEncoded().encode('utf-8'))
    return _httpResponseToMessage(resp, server_url)


class IdResHandler(object):
    """Checks a single C{id_res} response.

    @cvar openid1_nonce_query_arg_name: The name of the query parameter
        on the C{return_to} URL that carries the consumer made nonce
        for OpenID 1 responses.

    @cvar openid1_return_to_identifier_name: The name of the query
        parameter on the C{return_to} URL that carries the claimed
        identifier for OpenID 1 responses.
    """

    openid1_nonce_query_arg_name = 'rp_nonce'
    openid1_return_to_identifier_name = 'openid1_claimed_id'

    def __init__(self, message, return_to, store=None, endpoint=None, fetcher=None, discover=None):
        """
        @param message: The response
        @type message: L{openid_rp.message.Message}

        @param return_to: The URL the response arrived at, or C{None}
            to skip the comparison with the signed C{return_to}.
        @type return_to: Optional[str]

        @param store: Store with associations and used nonces. Without
            a store, signatures are always checked by the provider and
            nonces are not checked.
        @type store: Optional[L{openid_rp.store.interface.OpenIDStore}]

        @param endpoint: Endpoint discovered when the request was made
        @type endpoint: Optional[L{OpenIDServiceEndpoint}]

        @param fetcher: The fetcher for the C{check_authentication}
            requests
        @type fetcher: L{openid_rp.fetchers.HTTPFetcher}

        @param discover: Discovery function, see
            L{openid_rp.consumer.discover.discover}
        """
        self.message = message
        self.return_to = return_to
        self.store = store
        self.endpoint = endpoint
        if fetcher is None:
            fetcher = fetchers.ExceptionWrappingFetcher(fetchers.createHTTPFetcher())
        self.fetcher = fetcher
        if discover is None:
            discover = functools.partial(discoverIdentifier, fetcher=fetcher)
        self._discover = discover
        self._signed_list = None

    def verify(self):
        """Run all the checks.

        @return: The endpoint the response was verified against
        @rtype: L{OpenIDServiceEndpoint}

        @raises ProtocolError: when any of the checks fails
        @raises DiscoveryFailure: when discovery fails
        """
        self._checkForFields()
        self._verifyReturnTo()
        endpoint = self._verifyDiscoveryResults()
        _LOGGER.info('Received id_res response from %s using association %s',
                     endpoint.server_url, self.message.getArg(OPENID_NS, 'assoc_handle'))
        self._checkSignature(endpoint.server_url)
        self._checkNonce(endpoint.server_url)
        self.endpoint = endpoint
        return endpoint

    def signedList(self):
        """Return the names of the signed fields.

        @rtype: List[str]
        @raises ProtocolError: if the response has no signed list
        """
        if self._signed_list is None:
            signed_list_str = self.message.getArg(OPENID_NS, 'signed')
            if signed_list_str is None:
                raise ProtocolError('Response missing signed list', ErrorKind.MISSING_FIELD)
            self._signed_list = signed_list_str.split(',')
        return self._signed_list

    def _checkForFields(self):
        basic_fields = ['return_to', 'assoc_handle', 'sig', 'signed']
        basic_sig_fields = ['return_to', 'identity']

        if self.message.isOpenID2():
            require_fields = basic_fields + ['op_endpoint']
            require_sigs = basic_sig_fields + ['response_nonce', 'claimed_id', 'assoc_handle', 'op_endpoint']
        else:
            require_fields = basic_fields + ['identity']
            require_sigs = basic_sig_fields

        for field in require_fields:
            if not self.message.hasKey(OPENID_NS, field):
                raise ProtocolError('Missing required field %r' % (field,), ErrorKind.MISSING_FIELD)

        signed_list = self.signedList()
        for field in require_sigs:
            # Field is present and not in signed list
            if self.message.hasKey(OPENID_NS, field) and field not in signed_list:
                raise ProtocolError('"%s" not signed' % (field,), ErrorKind.UNSIGNED_FIELD)

    def _verifyReturnTo(self):
        msg_return_to = self.message.getArg(OPENID_NS, 'return_to')
        if msg_return_to is None:
            raise ProtocolError('Response has no return_to', ErrorKind.MISSING_FIELD)
        try:
            normalized = urinorm.urinorm(msg_return_to)
        except ValueError:
            raise ProtocolError('return_to is not a valid URI: %r' % (msg_return_to,), ErrorKind.MALFORMED_MESSAGE)

        self._verifyReturnToArgs(msg_return_to)
        if self.return_to is not None:
            self._verifyReturnToBase(normalized)

    def _verifyReturnToArgs(self, msg_return_to):
        """Verify that the arguments in the return_to URL are present in
        the response and that every argument outside of the OpenID
        namespace is on the return_to URL."""
        return_to_args = {}
        for rt_key, rt_value in parse_qsl(urlsplit(msg_return_to).query, keep_blank_values=True):
            return_to_args.setdefault(rt_key, rt_value)

        query = self.message.toPostArgs()
        for rt_key, rt_value in return_to_args.items():
            msg_value = query.get(rt_key)
            if msg_value is None:
                raise ProtocolError('Message missing return_to argument %r' % (rt_key,),
                                    ErrorKind.RETURN_TO_MISMATCH)
            if msg_value != rt_value:
                raise ProtocolError("Parameter %r value %r does not match return_to's value %r"
                                    % (rt_key, msg_value, rt_value), ErrorKind.RETURN_TO_MISMATCH)

        # Make sure all non-OpenID arguments in the response are also in
        # the signed return_to.
        for bare_key, bare_value in self.message.getArgs(BARE_NS).items():
            if bare_key not in return_to_args:
                raise ProtocolError('Unexpected parameter (not on return_to): %r=%r' % (bare_key, bare_value),
                                    ErrorKind.UNEXPECTED_PARAMETER)

    def _verifyReturnToBase(self, normalized_return_to):
        """Compare the signed return_to with the URL the response
        arrived at."""
        try:
            app_return_to = urinorm.urinorm(self.return_to)
        except ValueError:
            raise ProtocolError('return_to is not a valid URI: %r' % (self.return_to,), ErrorKind.MALFORMED_MESSAGE)

        msg_parts = urlsplit(normalized_return_to)
        app_parts = urlsplit(app_return_to)
        for part in ('scheme', 'netloc', 'path'):
            if getattr(msg_parts, part) != getattr(app_parts, part):
                raise ProtocolError('return_to %s does not match' % (part,), ErrorKind.RETURN_TO_MISMATCH)

        query = self.message.toPostArgs()
        for app_key, app_value in parse_qsl(urlsplit(self.return_to).query, keep_blank_values=True):
            msg_value = query.get(app_key)
            if msg_value != app_value:
                raise ProtocolError('Parameter %r value %r does not match the return URL value %r'
                                    % (app_key, msg_value, app_value), ErrorKind.RETURN_TO_MISMATCH)

    def _checkSignature(self, server_url):
        assoc_handle = self.message.getArg(OPENID_NS, 'assoc_handle')
        if self.store is None:
            assoc = None
        else:
            assoc = self.store.getAssociation(server_url, assoc_handle)

        if assoc is None:
            # It's not an association we know about. Stateless mode is
            # our only possible path for recovery.
            self._checkAuth(server_url)
            return

        if assoc.getExpiresIn() <= 0:
            raise ProtocolError('Association with %s expired' % (server_url,), ErrorKind.ASSOCIATION_EXPIRED)

        try:
            valid = assoc.checkMessageSignature(self.message)
        except ValueError as why:
            _LOGGER.warning('Unverifiable signature in response from %s: %s', server_url, why)
            raise ProtocolError('Bad signature: %s' % (why,), ErrorKind.BAD_SIGNATURE) from why
        if not valid:
            _LOGGER.warning('Bad signature in response from %s', server_url)
            raise ProtocolError('Bad signature', ErrorKind.BAD_SIGNATURE)

    def _checkAuth(self, server_url):
        """Make a check_authentication request to verify this message.

        @raises ProtocolError: if the provider does not confirm the
            signature
        """
        _LOGGER.info("Using 'check_authentication' with %s", server_url)
        try:
            request = self._createCheckAuthRequest()
        except KeyNotFound as why:
            raise ProtocolError("Could not generate 'check_authentication' message: %s" % (why,),
                                ErrorKind.CHECK_AUTH_FAILED)

        try:
            response = makeKVPost(request, server_url, self.fetcher)
        except ServerError as why:
            _LOGGER.error("'check_authentication' with %s failed: %s", server_url, why)
            raise ProtocolError("Server %s refused 'check_authentication': %s" % (server_url, why),
                                ErrorKind.CHECK_AUTH_FAILED)
        except fetchers.HTTPFetchingError as why:
            _LOGGER.error("'check_authentication' with %s failed: %s", server_url, why)
            raise ProtocolError("'check_authentication' with %s failed: %s" % (server_url, why),
                                ErrorKind.TRANSPORT)

        self._processCheckAuthResponse(response, server_url)

    def _createCheckAuthRequest(self):
        """Generate a check_authentication request message given an
        id_res message.

        @raises KeyNotFound: if a signed field is missing
        """
        # check that we got all the signed arguments
        for field in self.signedList():
            self.message.getAliasedArg(field, no_default)

        check_auth_message = self.message.copy()
        check_auth_message.setArg(OPENID_NS, 'mode', 'check_authentication')
        return check_auth_message

    def _processCheckAuthResponse(self, response, server_url):
        """Process the response message from a check_authentication
        request, invalidating associations if requested.
        """
        is_valid = response.getArg(OPENID_NS, 'is_valid', 'false')

        invalidate_handle = response.getArg(OPENID_NS, 'invalidate_handle')
        if invalidate_handle is not None:
            _LOGGER.info("Received 'invalidate_handle' from server %s", server_url)
            if self.store is None:
                _LOGGER.info('Unexpectedly got "invalidate_handle" without a store!')
            else:
                self.store.removeAssociation(server_url, invalidate_handle)

        if is_valid != 'true':
            _LOGGER.warning("Server %s responds that the 'check_authentication' call is not valid", server_url)
            raise ProtocolError("Server %s responds that the 'check_authentication' call is not valid"
                                % (server_url,), ErrorKind.CHECK_AUTH_REJECTED)

    def _checkNonce(self, server_url):
        if self.message.isOpenID1():
            # We generated the nonce, so it uses the empty string as the
            # server URL
            nonce = self.message.getArg(BARE_NS, self.openid1_nonce_query_arg_name)
            server_url = ''
        else:
            nonce = self.message.getArg(OPENID2_NS, 'response_nonce')

        if nonce is None:
            raise ProtocolError('Nonce missing from response', ErrorKind.NONCE_MISSING)

        try:
            timestamp, salt = splitNonce(nonce)
        except ValueError as why:
            raise ProtocolError('Malformed nonce %r: %s' % (nonce, why), ErrorKind.MALFORMED_NONCE)

        if self.store is not None and not self.store.useNonce(server_url, timestamp, salt):
            raise ProtocolError('Nonce already used or out of range: %r' % (nonce,), ErrorKind.NONCE_REUSED)

    def _verifyDiscoveryResults(self):
        """
        Extract the information from an OpenID assertion message and
        verify it against the original

        @returns: the verified endpoint
        @rtype: L{OpenIDServiceEndpoint}
        """
        if self.message.isOpenID2():
            return self._verifyDiscoveryResultsOpenID2()
        else:
            return self._verifyDiscoveryResultsOpenID1()

    def _verifyDiscoveryResultsOpenID2(self):
        to_match = OpenIDServiceEndpoint()
        to_match.type_uris = [OPENID_2_0_TYPE]
        to_match.claimed_id = self.message.getArg(OPENID2_NS, 'claimed_id')
        to_match.local_id = self.message.getArg(OPENID2_NS, 'identity')
        to_match.server_url = self.message.getArg(OPENID2_NS, 'op_endpoint')

        if to_match.server_url is None:
            raise ProtocolError('Missing required field openid.op_endpoint', ErrorKind.MISSING_FIELD)

        # claimed_id and identifier must both be present or both
        # be absent
        if to_match.claimed_id is None and to_match.local_id is not None:
            raise ProtocolError('openid.identity is present without openid.claimed_id', ErrorKind.MISSING_FIELD)
        elif to_match.claimed_id is not None and to_match.local_id is None:
            raise ProtocolError('openid.claimed_id is present without openid.identity', ErrorKind.MISSING_FIELD)

        # This is a response without identifiers, so there's really no
        # checking that we can do, so return an endpoint that's for
        # the specified `openid.op_endpoint'
        elif to_match.claimed_id is None:
            return OpenIDServiceEndpoint.fromOPEndpointURL(to_match.server_url)

        # The claimed ID doesn't match, so we have to do discovery
        # again. This covers not using sessions, OP identifier
        # endpoints and responses that didn't match the original
        # request.
        if not self.endpoint:
            _LOGGER.info('No pre-discovered information supplied.')
            endpoint = self._discoverAndVerify(to_match.claimed_id, [to_match])
        else:
            # The claimed ID matches, so we use the endpoint that we
            # discovered in initiation. This should be the most common
            # case.
            endpoint = self.endpoint
            try:
                self._verifyDiscoverySingle(endpoint, to_match)
            except ProtocolError as why:
                _LOGGER.error("Error attempting to use stored discovery information: %s", why)
                _LOGGER.info("Attempting discovery to verify endpoint")
                endpoint = self._discoverAndVerify(to_match.claimed_id, [to_match])

        # The endpoint we return should have the claimed ID from the
        # message we just verified, fragment and all.
        if endpoint.claimed_id != to_match.claimed_id:
            endpoint = copy.copy(endpoint)
            endpoint.claimed_id = to_match.claimed_id
        return endpoint

    def _verifyDiscoveryResultsOpenID1(self):
        claimed_id = self.message.getArg(BARE_NS, self.openid1_return_to_identifier_name)

        if self.endpoint is None and claimed_id is None:
            raise ProtocolError('When using OpenID 1, the claimed ID must be supplied, either by passing it '
                                'through as a return_to parameter or by using a session, and supplied to the '
                                'consumer as the endpoint', ErrorKind.MISSING_FIELD)
        elif self.endpoint is not None and claimed_id is None:
            claimed_id = self.endpoint.claimed_id

        to_match = OpenIDServiceEndpoint()
        to_match.type_uris = [OPENID_1_1_TYPE]
        to_match.local_id = self.message.getArg(OPENID1_NS, 'identity')
        # Restore delegate information from the initiation phase
        to_match.claimed_id = claimed_id

        if to_match.local_id is None:
            raise ProtocolError('Missing required field openid.identity', ErrorKind.MISSING_FIELD)

        to_match_1_0 = copy.copy(to_match)
        to_match_1_0.type_uris = [OPENID_1_0_TYPE]

        if self.endpoint is not None:
            try:
                try:
                    self._verifyDiscoverySingle(self.endpoint, to_match)
                except TypeURIMismatch:
                    self._verifyDiscoverySingle(self.endpoint, to_match_1_0)
            except ProtocolError as why:
                _LOGGER.error("Error attempting to use stored discovery information: %s", why)
                _LOGGER.info("Attempting discovery to verify endpoint")
            else:
                return self.endpoint

        # Endpoint is either bad (failed verification) or None
        return self._discoverAndVerify(claimed_id, [to_match, to_match_1_0])

    def _verifyDiscoverySingle(self, endpoint, to_match):
        """Verify that the given endpoint matches the information
        extracted from the OpenID assertion, and raise an exception if
        there is a mismatch.

        @type endpoint: L{OpenIDServiceEndpoint}
        @type to_match: L{OpenIDServiceEndpoint}

        @raises ProtocolError: when the endpoint does not match the
            discovered information.
        """
        # Every type URI that's in the to_match endpoint has to be
        # present in the discovered endpoint.
        for type_uri in to_match.type_uris:
            if not endpoint.usesExtension(type_uri):
                raise TypeURIMismatch(type_uri, endpoint)

        # Fragments do not influence discovery, so we can't compare a
        # claimed identifier with a fragment to discovered information.
        defragged_claimed_id, _ = urldefrag(to_match.claimed_id)
        if defragged_claimed_id != endpoint.claimed_id:
            raise ProtocolError('Claimed ID does not match (different subjects!), Expected %s, got %s'
                                % (defragged_claimed_id, endpoint.claimed_id), ErrorKind.DISCOVERY_MISMATCH)

        if to_match.getLocalID() != endpoint.getLocalID():
            raise ProtocolError('local_id mismatch. Expected %s, got %s'
                                % (to_match.getLocalID(), endpoint.getLocalID()), ErrorKind.DISCOVERY_MISMATCH)

        # If the server URL is None, this must be an OpenID 1
        # response, because op_endpoint is a required parameter in
        # OpenID 2. In that case, we don't actually care what the
        # discovered server_url is, because signature checking or
        # check_auth should take care of that check for us.
        if to_match.server_url is None:
            assert to_match.preferredNamespace() == OPENID1_NS, (
                "The code calling this must ensure that OpenID 2 responses have a non-none "
                "`openid.op_endpoint' and that it is set as the `server_url' attribute of the "
                "`to_match' endpoint.")

        elif to_match.server_url != endpoint.server_url:
            raise ProtocolError('OP Endpoint mismatch. Expected %s, got %s'
                                % (to_match.server_url, endpoint.server_url), ErrorKind.DISCOVERY_MISMATCH)

    def _discoverAndVerify(self, claimed_id, to_match_endpoints):
        """Given an endpoint object created from the information in an
        OpenID response, perform discovery and verify the discovery
        results, returning the matching endpoint that is the result of
        doing that discovery.

        @param claimed_id: The claimed identifier to discover
        @type claimed_id: str

        @param to_match_endpoints: Endpoints with the information from
            the response
        @type to_match_endpoints: List[OpenIDServiceEndpoint]

        @raises DiscoveryFailure: when discovery fails.
        @raises ProtocolError: when no discovered endpoint matches.
        """
        _LOGGER.info('Performing discovery on %s', claimed_id)
        _, services = self._discover(claimed_id)
        if not services:
            raise ProtocolError('No OpenID information found at %s' % (claimed_id,),
                                ErrorKind.NO_OPENID_INFORMATION)
        return self._verifyDiscoveredServices(claimed_id, services, to_match_endpoints)

    def _verifyDiscoveredServices(self, claimed_id, services, to_match_endpoints):
        """See @L{_discoverAndVerify}"""
        # Search the services resulting from discovery to find one
        # that matches the information from the assertion
        failure_messages = []
        for endpoint in services:
            for to_match_endpoint in to_match_endpoints:
                try:
                    self._verifyDiscoverySingle(endpoint, to_match_endpoint)
                except ProtocolError as why:
                    failure_messages.append(str(why))
                else:
                    # It matches, so discover verification has
                    # succeeded. Return this endpoint.
                    return endpoint

        _LOGGER.error('Discovery verification failure for %s', claimed_id)
        for failure_message in failure_messages:
            _LOGGER.error(' * Endpoint mismatch: %s', failure_message)

        raise ProtocolError('No matching endpoint found after discovering %s' % (claimed_id,),
                            ErrorKind.DISCOVERY_MISMATCH)

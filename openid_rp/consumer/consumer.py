"""OpenID support for Relying Parties (aka Consumers).

Authenticating a user takes two steps. First the user's identifier is
discovered and the user is redirected to the provider:

    >>> consumer = Consumer(session, store)
    >>> auth_request = consumer.begin(user_url)
    >>> redirect_to = auth_request.redirectURL(realm, return_to)

When the provider sends the user back to C{return_to}, the response is
checked:

    >>> response = consumer.complete(request.GET, current_url)
    >>> if response.status == SUCCESS:
    ...     login(response.identity_url)

The result of C{complete} is one of C{L{SuccessResponse}},
C{L{FailureResponse}}, C{L{CancelResponse}} or
C{L{SetupNeededResponse}}. Verification failures never raise; they are
reported as a C{L{FailureResponse}} whose C{kind} names the failed check.

Associations are not established by this library. If the store already
holds an association with the provider, it is used to check signatures;
otherwise the provider is asked to check them (stateless mode).
"""
import functools
import logging

from openid_rp import fetchers, oidutil
from openid_rp.association import SessionNegotiator
from openid_rp.consumer.discover import DiscoveryFailure, discover as discoverIdentifier
from openid_rp.consumer.idres import ErrorKind, IdResHandler, ProtocolError
from openid_rp.message import IDENTIFIER_SELECT, OPENID2_NS, OPENID_NS, Message
from openid_rp.store.nonce import mkNonce

__all__ = ['AuthRequest', 'Consumer', 'SuccessResponse', 'SetupNeededResponse', 'CancelResponse', 'FailureResponse',
           'SUCCESS', 'FAILURE', 'CANCEL', 'SETUP_NEEDED', 'verify']

_LOGGER = logging.getLogger(__name__)


class Consumer(object):
    """Session aware relying party.

    The endpoint chosen by L{begin} is kept in the session, so that
    L{complete} can verify the response against it.

    @ivar consumer: The protocol implementation
    @type consumer: L{GenericConsumer}

    @ivar session: Mapping with the user's session data

    @cvar session_key_prefix: Prefix of the keys this class puts in the session
    """
    session_key_prefix = "_openid_consumer_"

    def __init__(self, session, store, consumer_class=None, fetcher=None):
        """
        @param store: Associations and used nonces, or C{None} to run without a store
        @type store: Optional[L{openid_rp.store.interface.OpenIDStore}]

        @param consumer_class: Class of the protocol implementation,
            L{GenericConsumer} by default
        """
        self.session = session
        self.consumer = (consumer_class or GenericConsumer)(store, fetcher=fetcher)
        self._endpoint_key = self.session_key_prefix + 'last_token'

    def begin(self, user_url, anonymous=False):
        """Discover the user's identifier and prepare the authentication request.

        @param user_url: Identifier entered by the user
        @type user_url: str

        @param anonymous: Leave the identifier out of the request. Not
            possible with OpenID 1 providers.
        @type anonymous: bool

        @rtype: L{AuthRequest}

        @raises DiscoveryFailure: when the identifier can not be
            fetched or no OpenID endpoint is found
        """
        _, services = self.consumer.discover(user_url)
        if not services:
            raise DiscoveryFailure('No usable OpenID services found for %s' % (user_url,), None)
        return self.beginWithoutDiscovery(services[0], anonymous)

    def beginWithoutDiscovery(self, service, anonymous=False):
        """Prepare the authentication request for an already discovered endpoint.

        @type service: L{openid_rp.consumer.discover.OpenIDServiceEndpoint}
        @rtype: L{AuthRequest}
        @raises ValueError: when an anonymous OpenID 1 request is asked for
        """
        auth_req = self.consumer.begin(service)
        auth_req.setAnonymous(anonymous)
        self.session[self._endpoint_key] = auth_req.endpoint
        return auth_req

    def complete(self, query, current_url):
        """Verify the provider's response.

        The endpoint stored by L{begin} is removed from the session.

        @param query: The query arguments the response arrived with
        @type query: Dict[str, str]

        @param current_url: The URL the response arrived at. It is checked
            against C{openid.return_to}.
        @type current_url: str

        @returns: The response, its C{status} is one of C{SUCCESS},
            C{CANCEL}, C{FAILURE} and C{SETUP_NEEDED}.
        @rtype: L{Response}
        """
        endpoint = self.session.pop(self._endpoint_key, None)
        return self.consumer.complete(Message.fromPostArgs(query), endpoint, current_url)


class GenericConsumer(object):
    """Protocol logic of the relying party, without session handling.

    @ivar negotiator: Association types the consumer accepts. Stored
        associations of other types are not used.
    @type negotiator: L{openid_rp.association.SessionNegotiator}

    @ivar discover: Callable which returns C{(claimed_id, endpoints)} for an identifier
    """

    # Query arguments added to the return_to URL of OpenID 1 requests
    openid1_nonce_query_arg_name = IdResHandler.openid1_nonce_query_arg_name
    openid1_return_to_identifier_name = IdResHandler.openid1_return_to_identifier_name

    idres_handler_class = IdResHandler

    def __init__(self, store, negotiator=None, fetcher=None, discover=None):
        """
        @param store: Associations and used nonces, or C{None}
        @type store: Optional[L{openid_rp.store.interface.OpenIDStore}]

        @param fetcher: Defaults to a C{L{fetchers.createHTTPFetcher}}
            fetcher wrapped in C{L{fetchers.ExceptionWrappingFetcher}}.
        @type fetcher: L{openid_rp.fetchers.HTTPFetcher}
        """
        self.store = store
        self.negotiator = negotiator or SessionNegotiator.default()
        if fetcher is None:
            fetcher = fetchers.ExceptionWrappingFetcher(fetchers.createHTTPFetcher())
        self.fetcher = fetcher
        self.discover = discover or functools.partial(discoverIdentifier, fetcher=fetcher)

    def begin(self, service_endpoint):
        """Create the authentication request for the endpoint.

        A stored association with the endpoint is used when there is one.

        @type service_endpoint: L{openid_rp.consumer.discover.OpenIDServiceEndpoint}
        @rtype: L{AuthRequest}
        """
        request = AuthRequest(service_endpoint, self._getAssociation(service_endpoint))
        request.return_to_args[self.openid1_nonce_query_arg_name] = mkNonce()
        if request.message.isOpenID1():
            request.return_to_args[self.openid1_return_to_identifier_name] = service_endpoint.claimed_id
        return request

    def _getAssociation(self, endpoint):
        """Return the stored association with the endpoint, if the negotiator allows its type.

        @rtype: Optional[L{openid_rp.association.Association}]
        """
        if self.store is None:
            return None

        assoc = self.store.getAssociation(endpoint.server_url)
        if assoc is None:
            return None

        allowed = set(assoc_type for assoc_type, _ in self.negotiator.allowed_types)
        if assoc.assoc_type not in allowed:
            _LOGGER.info('Not using association %s of type %s with %s', assoc.handle, assoc.assoc_type,
                         endpoint.server_url)
            return None
        return assoc

    def complete(self, message, endpoint, return_to):
        """Process any OpenID message sent to the return_to URL.

        @type message: L{openid_rp.message.Message}

        @param endpoint: The endpoint discovered when the request was
            made, if known
        @type endpoint: Optional[L{openid_rp.consumer.discover.OpenIDServiceEndpoint}]

        @param return_to: The URL the response arrived at
        @type return_to: str

        @rtype: L{Response}
        """
        mode = message.getArg(OPENID_NS, 'mode', '<No mode set>')
        handler = getattr(self, '_complete_' + mode, self._completeInvalid)
        return handler(message, endpoint, return_to)

    def _complete_cancel(self, message, endpoint, return_to):
        return CancelResponse(endpoint)

    def _complete_error(self, message, endpoint, return_to):
        return FailureResponse(endpoint, message.getArg(OPENID_NS, 'error'),
                               contact=message.getArg(OPENID_NS, 'contact'),
                               reference=message.getArg(OPENID_NS, 'reference'),
                               kind=ErrorKind.PROVIDER_ERROR)

    def _complete_setup_needed(self, message, endpoint, return_to):
        # OpenID 1 reports setup needed in an id_res response.
        if message.isOpenID1():
            return self._completeInvalid(message, endpoint, return_to)
        return SetupNeededResponse(endpoint, message.getArg(OPENID2_NS, 'user_setup_url'))

    def _complete_id_res(self, message, endpoint, return_to):
        if message.isOpenID1():
            user_setup_url = message.getArg(OPENID_NS, 'user_setup_url')
            if user_setup_url is not None:
                return SetupNeededResponse(endpoint, user_setup_url)

        handler = self.idres_handler_class(message, return_to, store=self.store, endpoint=endpoint,
                                           fetcher=self.fetcher, discover=self.discover)
        try:
            verified_endpoint = handler.verify()
        except ProtocolError as why:
            _LOGGER.warning('Verification of the id_res response failed: %s', why)
            return FailureResponse(endpoint, str(why), kind=why.kind)
        except DiscoveryFailure as why:
            _LOGGER.warning('Discovery during verification of the id_res response failed: %s', why)
            return FailureResponse(endpoint, str(why), kind=ErrorKind.DISCOVERY_FAILED)

        return SuccessResponse(verified_endpoint, message, ['openid.' + f for f in handler.signedList()])

    def _completeInvalid(self, message, endpoint, return_to):
        mode = message.getArg(OPENID_NS, 'mode', '<No mode set>')
        return FailureResponse(endpoint, 'Invalid openid.mode: %r' % (mode,), kind=ErrorKind.INVALID_MODE)


class AuthRequest(object):
    """Authentication request for a discovered endpoint.

    Extension arguments may be added before the request is turned into a
    redirect URL. Instances are created by L{GenericConsumer.begin}.

    @ivar endpoint: The endpoint the request is sent to
    @ivar assoc: Association used by the provider to sign the response, or C{None}
    @ivar return_to_args: Arguments appended to the return_to URL
    @type return_to_args: Dict[str, str]
    @ivar message: The request message without the per-call arguments
    """

    def __init__(self, endpoint, assoc):
        self.assoc = assoc
        self.endpoint = endpoint
        self.return_to_args = {}
        self.message = Message(endpoint.preferredNamespace())
        self._anonymous = False

    def setAnonymous(self, is_anonymous):
        """Set whether the identifier is left out of the request.

        Only useful when an extension carries the real request.

        @raises ValueError: when attempting to set an OpenID1 request
            as anonymous
        """
        if is_anonymous and self.message.isOpenID1():
            raise ValueError('OpenID 1 requests MUST include the identifier in the request')
        self._anonymous = is_anonymous

    def addExtensionArg(self, namespace, key, value):
        """Add an extension argument to the request.

        Arguments end up in the redirect URL, keep them short.

        @param namespace: Namespace URI of the extension
        @type namespace: str
        @type key: str
        @type value: str
        """
        self.message.setArg(namespace, key, value)

    def _getIdentifiers(self):
        """Return the pair of C{openid.identity} and C{openid.claimed_id} values."""
        # OP identifier endpoints are OpenID 2 only.
        if self.endpoint.isOPIdentifier():
            return IDENTIFIER_SELECT, IDENTIFIER_SELECT
        return self.endpoint.getLocalID(), self.endpoint.claimed_id

    def getMessage(self, realm, return_to=None, immediate=False):
        """Build the request message.

        @param realm: URL or URL pattern which identifies the site to the user
        @type realm: str

        @param return_to: Where the provider sends the user back to. Without
            it, the user does not return to the site.
        @type return_to: Optional[str]

        @param immediate: Ask for C{checkid_immediate}, the provider then
            answers without interacting with the user.
        @type immediate: bool

        @rtype: L{openid_rp.message.Message}
        @raises ValueError: when C{return_to} is required and missing
        """
        if return_to:
            return_to = oidutil.appendArgs(return_to, self.return_to_args)
        elif immediate:
            raise ValueError('"return_to" is mandatory when using "checkid_immediate"')
        elif self.message.isOpenID1():
            raise ValueError('"return_to" is mandatory for OpenID 1 requests')
        elif self.return_to_args:
            raise ValueError('extra "return_to" arguments were specified, but no return_to was specified')

        mode = 'checkid_immediate' if immediate else 'checkid_setup'
        message = self.message.copy()
        message.setArg(OPENID_NS, 'mode', mode)
        message.setArg(OPENID_NS, 'trust_root' if message.isOpenID1() else 'realm', realm)
        if return_to:
            message.setArg(OPENID_NS, 'return_to', return_to)

        if not self._anonymous:
            identity, claimed_id = self._getIdentifiers()
            message.setArg(OPENID_NS, 'identity', identity)
            if message.isOpenID2():
                message.setArg(OPENID2_NS, 'claimed_id', claimed_id)

        if self.assoc:
            message.setArg(OPENID_NS, 'assoc_handle', self.assoc.handle)
            _LOGGER.info("Generated %s request to %s with association %s", mode, self.endpoint.server_url,
                         self.assoc.handle)
        else:
            _LOGGER.info("Generated %s request to %s using stateless mode.", mode, self.endpoint.server_url)
        return message

    def redirectURL(self, realm, return_to=None, immediate=False):
        """Return the provider's URL with the request encoded in the query.

        @see: L{getMessage}
        @rtype: str
        """
        return self.getMessage(realm, return_to, immediate).toURL(self.endpoint.server_url)


SUCCESS = 'success'
FAILURE = 'failure'
CANCEL = 'cancel'
SETUP_NEEDED = 'setup_needed'


class Response(object):
    """Base of the results of L{GenericConsumer.complete}.

    @ivar endpoint: The endpoint of the transaction, if known
    @ivar identity_url: The claimed identifier of the endpoint, if known
    @cvar status: One of C{SUCCESS}, C{FAILURE}, C{CANCEL} and C{SETUP_NEEDED}
    """
    status = None

    def __init__(self, endpoint):
        self.endpoint = endpoint
        self.identity_url = None if endpoint is None else endpoint.claimed_id

    def getDisplayIdentifier(self):
        """Return the identifier to show to the user, the claimed identifier without fragment.

        @rtype: Optional[str]
        """
        if self.endpoint is None:
            return None
        return self.endpoint.getDisplayIdentifier()


class SuccessResponse(Response):
    """The provider asserted the identifier and the assertion was verified.

    @ivar message: The response message
    @type message: L{openid_rp.message.Message}

    @ivar signed_fields: The verified signed fields, with the C{openid.} prefix
    @type signed_fields: List[str]
    """

    status = SUCCESS

    def __init__(self, endpoint, message, signed_fields=None):
        super(SuccessResponse, self).__init__(endpoint)
        self.message = message
        self.signed_fields = signed_fields if signed_fields is not None else []

    def isOpenID1(self):
        return self.message.isOpenID1()

    def isSigned(self, ns_uri, ns_key):
        """Return whether the field is signed, whatever alias its namespace has."""
        return self.message.getKey(ns_uri, ns_key) in self.signed_fields

    def getSigned(self, ns_uri, ns_key, default=None):
        """Return the field if it is signed, C{default} otherwise."""
        if not self.isSigned(ns_uri, ns_key):
            return default
        return self.message.getArg(ns_uri, ns_key, default)

    def getSignedNS(self, ns_uri):
        """Return all fields of the namespace, or C{None} if any of them is not signed.

        @rtype: Optional[Dict[str, str]]
        """
        msg_args = self.message.getArgs(ns_uri)
        unsigned = [key for key in msg_args if not self.isSigned(ns_uri, key)]
        if unsigned:
            _LOGGER.info("SuccessResponse.getSignedNS: (%s, %s) not signed.", ns_uri, unsigned[0])
            return None
        return msg_args

    def getReturnTo(self):
        """Return the signed C{openid.return_to}, or C{None}.

        @rtype: Optional[str]
        """
        return self.getSigned(OPENID_NS, 'return_to')

    def _state(self):
        return (self.status, self.endpoint, self.identity_url, self.message, self.signed_fields)

    def __eq__(self, other):
        return type(self) == type(other) and self._state() == other._state()

    def __ne__(self, other):
        return not (self == other)

    __hash__ = None

    def __repr__(self):
        return '<%s.%s id=%r signed=%r>' % (type(self).__module__, type(self).__name__, self.identity_url,
                                            self.signed_fields)


class FailureResponse(Response):
    """The response was an error or it failed verification.

    @ivar message: Description of the failure, if any
    @type message: Optional[str]

    @ivar contact: C{openid.contact} of a provider error
    @ivar reference: C{openid.reference} of a provider error

    @ivar kind: The check which failed
    @type kind: L{ErrorKind}
    """

    status = FAILURE

    def __init__(self, endpoint, message=None, contact=None, reference=None, kind=None):
        super(FailureResponse, self).__init__(endpoint)
        self.message = message
        self.contact = contact
        self.reference = reference
        self.kind = kind

    def __repr__(self):
        return "<%s.%s id=%r kind=%s message=%r>" % (type(self).__module__, type(self).__name__,
                                                     self.identity_url, self.kind, self.message)


class CancelResponse(Response):
    """The user cancelled the authentication at the provider."""

    status = CANCEL


class SetupNeededResponse(Response):
    """An immediate request can not be completed without the user interacting with the provider.

    @ivar setup_url: Where to send the user to finish the authentication,
        C{None} if the provider did not supply one.
    @type setup_url: Optional[str]
    """

    status = SETUP_NEEDED

    def __init__(self, endpoint, setup_url=None):
        super(SetupNeededResponse, self).__init__(endpoint)
        self.setup_url = setup_url


def verify(message, return_to, store, endpoint=None, fetcher=None, discover=None):
    """Check a response sent to the return_to URL.

    @type message: L{openid_rp.message.Message}

    @param return_to: The URL the response arrived at
    @type return_to: str

    @param store: Associations and used nonces, or C{None}
    @type store: L{openid_rp.store.interface.OpenIDStore}

    @param endpoint: The endpoint discovered when the request was made,
        if known

    @rtype: L{Response}
    """
    consumer = GenericConsumer(store, fetcher=fetcher, discover=discover)
    return consumer.complete(message, endpoint, return_to)

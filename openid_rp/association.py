"""
This module contains code for dealing with associations between
consumers and servers. Associations contain a shared secret that is
used to sign C{openid.mode=id_res} messages.

Users of the library should not usually need to interact directly with
associations. The L{store<openid_rp.store>} and
L{consumer<openid_rp.consumer.consumer>} objects will create and manage
the associations. The consumer makes use of a C{L{SessionNegotiator}}
when managing associations, which enables users to express a preference
for what kind of associations should be allowed, and what kind of
exchange should be done to establish the association.
"""
import time

from cryptography.hazmat.primitives import hashes

from openid_rp import cryptutil, kvform, oidutil
from openid_rp.message import OPENID_NS

__all__ = [
    'SessionNegotiator',
    'Association',
    'getSecretSize',
    'getSessionTypes',
]


all_association_types = (
    'HMAC-SHA256',
    'HMAC-SHA1',
)

default_association_order = (
    ('HMAC-SHA256', 'DH-SHA256'),
    ('HMAC-SHA256', 'no-encryption'),
    ('HMAC-SHA1', 'DH-SHA1'),
    ('HMAC-SHA1', 'no-encryption'),
)

only_encrypted_association_order = (
    ('HMAC-SHA256', 'DH-SHA256'),
    ('HMAC-SHA1', 'DH-SHA1'),
)

_assoc_to_session = {
    'HMAC-SHA256': ('DH-SHA256', 'no-encryption'),
    'HMAC-SHA1': ('DH-SHA1', 'no-encryption'),
}


def getSessionTypes(assoc_type):
    """Return the allowed session types for a given association type

    @raises ValueError: if the association type is unknown
    """
    try:
        return _assoc_to_session[assoc_type]
    except KeyError:
        raise ValueError('Unknown association type: %r' % (assoc_type,))


def checkSessionType(assoc_type, session_type):
    """Check to make sure that this pair of assoc type and session
    type are allowed"""
    if session_type not in getSessionTypes(assoc_type):
        raise ValueError(
            'Session type %r not valid for assocation type %r'
            % (session_type, assoc_type))


class SessionNegotiator(object):
    """A session negotiator controls the allowed and preferred
    association types and association session types.

    Negotiators are immutable. Build one for your policy and hand it to
    the consumer; C{L{withAllowedType}} returns a new negotiator.

    When a consumer makes an association request, it calls
    C{L{getAllowedType}} to get the preferred association type and
    association session type. If the server answers that the requested
    pair is not supported and suggests another one, the consumer calls
    C{L{isAllowed}} to determine if it should try again with the given
    combination.

    @ivar allowed_types: The association/session types that are allowed.
        The order of the pairs determines preference.
    @type allowed_types: Tuple[Tuple[str, str], ...]
    """

    def __init__(self, allowed_types):
        allowed_types = tuple((a, s) for a, s in allowed_types)
        for assoc_type, session_type in allowed_types:
            checkSessionType(assoc_type, session_type)
        self._allowed_types = allowed_types

    @property
    def allowed_types(self):
        return self._allowed_types

    @classmethod
    def default(cls):
        """Allow every association type defined by OpenID 2.0,
        preferring HMAC-SHA256."""
        return cls(default_association_order)

    @classmethod
    def onlyEncrypted(cls):
        """Allow only association types which are established through a
        Diffie-Hellman exchange."""
        return cls(only_encrypted_association_order)

    def withAllowedType(self, assoc_type, session_type=None):
        """Return a negotiator which also allows this pair. Without a
        session type, all session types legal for the association type
        are added."""
        if session_type is None:
            added = tuple((assoc_type, s) for s in getSessionTypes(assoc_type))
        else:
            checkSessionType(assoc_type, session_type)
            added = ((assoc_type, session_type),)
        return self.__class__(self._allowed_types + added)

    def isAllowed(self, assoc_type, session_type):
        """Is this combination of association type and session type allowed?"""
        return (assoc_type, session_type) in self._allowed_types

    def getAllowedType(self):
        """Get a pair of assocation type and session type that are
        supported"""
        try:
            return self._allowed_types[0]
        except IndexError:
            return (None, None)

    def __eq__(self, other):
        return type(self) == type(other) and self._allowed_types == other._allowed_types

    def __ne__(self, other):
        return not (self == other)

    def __hash__(self):
        return hash(self._allowed_types)

    def __repr__(self):
        return '<%s %r>' % (self.__class__.__name__, self._allowed_types)


_HMAC_ALGORITHMS = {
    'HMAC-SHA1': hashes.SHA1(),
    'HMAC-SHA256': hashes.SHA256(),
}


def getSecretSize(assoc_type):
    """Return the size of the shared secret, which equals the digest size of the HMAC hash.

    @rtype: int
    @raises ValueError: if the association type is unknown
    """
    try:
        return _HMAC_ALGORITHMS[assoc_type].digest_size
    except KeyError:
        raise ValueError('Unsupported association type: %r' % (assoc_type,))


class Association(object):
    """A shared secret established between this relying party and a provider.

    Associations are created by the consumer and kept in an
    L{OpenIDStore<openid_rp.store.interface.OpenIDStore>}. A store has to
    persist C{handle}, C{secret}, C{issued}, C{lifetime} and C{assoc_type},
    or the text returned by L{serialize}.

    @ivar handle: Handle assigned by the provider
    @type handle: str

    @ivar secret: The MAC key
    @type secret: bytes

    @ivar issued: Unix timestamp of the issue
    @type issued: int

    @ivar lifetime: Seconds since C{issued} the association may be used for
    @type lifetime: int

    @ivar assoc_type: C{'HMAC-SHA1'} or C{'HMAC-SHA256'}
    @type assoc_type: str
    """

    # Field order of the serialized form
    assoc_keys = ('version', 'handle', 'secret', 'issued', 'lifetime', 'assoc_type')
    serialization_version = '2'

    @classmethod
    def fromExpiresIn(cls, expires_in, handle, secret, assoc_type):
        """Create an association issued now, which expires in C{expires_in} seconds.

        Stores should use the main constructor, which preserves C{issued}.
        """
        return cls(handle, secret, int(time.time()), expires_in, assoc_type)

    def __init__(self, handle, secret, issued, lifetime, assoc_type):
        """
        @raises ValueError: if the association type is not supported, the
            secret does not have the size the type requires or the lifetime
            is negative.
        @raises TypeError: if the secret is not bytes.
        """
        if assoc_type not in all_association_types:
            raise ValueError('%r is not a supported association type' % (assoc_type,))
        if not isinstance(secret, bytes):
            raise TypeError('Association secret must be bytes, got %r' % (type(secret),))
        if len(secret) != getSecretSize(assoc_type):
            raise ValueError('Wrong size secret (%s bytes) for association type %s' % (len(secret), assoc_type))
        if lifetime < 0:
            raise ValueError('Association lifetime can not be negative: %r' % (lifetime,))

        self.handle = handle
        self.secret = secret
        self.issued = issued
        self.lifetime = lifetime
        self.assoc_type = assoc_type

    def getExpiresIn(self, now=None):
        """Return the number of seconds the association remains valid, C{0} once it expired.

        @rtype: int
        """
        if now is None:
            now = int(time.time())
        return max(0, self.issued + self.lifetime - now)

    expiresIn = property(getExpiresIn)

    def _fields(self):
        return (self.handle, self.secret, int(self.issued), self.lifetime, self.assoc_type)

    def __eq__(self, other):
        return type(self) == type(other) and self._fields() == other._fields()

    def __ne__(self, other):
        return not (self == other)

    __hash__ = None

    def serialize(self):
        """Convert an association to KV form, readable by L{deserialize}.

        @rtype: str
        """
        values = (self.serialization_version, self.handle, oidutil.toBase64(self.secret),
                  str(int(self.issued)), str(int(self.lifetime)), self.assoc_type)
        return kvform.seqToKV(list(zip(self.assoc_keys, values)), strict=True)

    @classmethod
    def deserialize(cls, assoc_s):
        """Parse an association serialized by L{serialize}.

        @type assoc_s: str
        @raises ValueError: if the data is not a serialized association
        """
        pairs = kvform.kvToSeq(assoc_s, strict=True)
        keys = tuple(key for key, _ in pairs)
        if keys != cls.assoc_keys:
            raise ValueError('Unexpected key values: %r' % (keys,))

        fields = dict(pairs)
        if fields['version'] != cls.serialization_version:
            raise ValueError('Unknown version: %r' % (fields['version'],))
        return cls(fields['handle'], oidutil.fromBase64(fields['secret']), int(fields['issued']),
                   int(fields['lifetime']), fields['assoc_type'])

    def sign(self, pairs):
        """Compute the HMAC of the pairs, encoded in KV form in the given order.

        @type pairs: Iterable[Tuple[str, str]]
        @rtype: bytes
        """
        kv = kvform.seqToKV(pairs)
        return cryptutil.hmac(self.secret, kv.encode('utf-8'), _HMAC_ALGORITHMS[self.assoc_type])

    def getMessageSignature(self, message):
        """Return the base64 encoded signature of the fields listed in C{openid.signed}.

        @rtype: str
        @raises ValueError: If there is no signed list.
        """
        return oidutil.toBase64(self.sign(self._makePairs(message)))

    def signMessage(self, message):
        """Return a copy of the message with C{assoc_handle}, C{signed} and C{sig} set.

        Every OpenID field of the message is signed.

        @rtype: L{openid_rp.message.Message}
        @raises ValueError: if the message is already signed or carries
            another association handle
        """
        if message.hasKey(OPENID_NS, 'sig') or message.hasKey(OPENID_NS, 'signed'):
            raise ValueError('Message already has signed list or signature')
        if message.getArg(OPENID_NS, 'assoc_handle') not in (None, self.handle):
            raise ValueError("Message has a different association handle")

        signed_message = message.copy()
        signed_message.setArg(OPENID_NS, 'assoc_handle', self.handle)
        signed_list = sorted(signed_message.allOpenIDKeys() + ['signed'])
        signed_message.setArg(OPENID_NS, 'signed', ','.join(signed_list))
        signed_message.setArg(OPENID_NS, 'sig', self.getMessageSignature(signed_message))
        return signed_message

    def checkMessageSignature(self, message):
        """Return whether the signature in the message matches a freshly computed one.

        The comparison runs in constant time.

        @rtype: bool
        @raises ValueError: if the message has no signature or no signed list.
        """
        message_sig = message.getArg(OPENID_NS, 'sig')
        if not message_sig:
            raise ValueError("%s has no sig." % (message,))
        calculated_sig = self.getMessageSignature(message)
        return cryptutil.const_eq(calculated_sig.encode('utf-8'), message_sig.encode('utf-8'))

    def _makePairs(self, message):
        signed = message.getArg(OPENID_NS, 'signed')
        if not signed:
            raise ValueError('Message has no signed list: %s' % (message,))

        data = message.toPostArgs()
        # A signed field missing from the message signs as empty.
        return [(field, data.get('openid.' + field, '')) for field in signed.split(',')]

    def __repr__(self):
        return "<%s.%s %s %s>" % (type(self).__module__, type(self).__name__, self.assoc_type, self.handle)

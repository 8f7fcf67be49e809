"""Namespaced OpenID message arguments.

A C{L{Message}} keeps every argument under a C{(namespace, key)} pair.
The OpenID namespace of the message itself is addressed with
C{L{OPENID_NS}}, arguments outside of the C{openid.} prefix with
C{L{BARE_NS}} and extension arguments with the URI of their namespace.
"""
import copy
import itertools
from urllib.parse import urlencode

from openid_rp import kvform, oidutil

__all__ = ['Message', 'NamespaceMap', 'KeyNotFound', 'no_default',
           'OPENID_NS', 'BARE_NS', 'OPENID1_NS', 'OPENID11_NS', 'OPENID2_NS',
           'IDENTIFIER_SELECT']

# The OpenID 1.X namespace URIs
OPENID1_NS = 'http://openid.net/signon/1.0'
OPENID11_NS = 'http://openid.net/signon/1.1'

OPENID1_NAMESPACES = (OPENID1_NS, OPENID11_NS)

# The OpenID 2.0 namespace URI
OPENID2_NS = 'http://specs.openid.net/auth/2.0'

IDENTIFIER_SELECT = 'http://specs.openid.net/auth/2.0/identifier_select'

# The namespace consisting of pairs with keys that are prefixed with
# "openid."  but not in another namespace.
NULL_NAMESPACE = oidutil.Symbol('Null namespace')

# The null namespace, when it is an allowed OpenID namespace
OPENID_NS = oidutil.Symbol('OpenID namespace')

# The top-level namespace, excluding all pairs with keys that start
# with "openid."
BARE_NS = oidutil.Symbol('Bare namespace')

# Sentinel for Message.getArg and Message.getAliasedArg
no_default = object()


class UndefinedOpenIDNamespace(ValueError):
    """Raised if the generic OpenID namespace is accessed when there
    is no OpenID namespace set for this message."""


class InvalidOpenIDNamespace(ValueError):
    """Raised if openid.ns is not a recognized value."""

    def __str__(self):
        s = "Invalid OpenID Namespace"
        if self.args:
            s += " %r" % (self.args[0],)
        return s


class KeyNotFound(KeyError):
    """Raised when a required argument is requested with C{no_default}
    and the message does not contain it."""


class Message(object):
    """
    In the implementation of this object, None represents the global
    namespace as well as a namespace with no key.

    @ivar args: the values of this message keyed by
        C{(namespace URI, key)}, in insertion order.

    @ivar namespaces: the namespace URI to alias mapping
    @type namespaces: L{NamespaceMap}
    """

    allowed_openid_namespaces = [OPENID1_NS, OPENID11_NS, OPENID2_NS]

    def __init__(self, openid_namespace=None):
        """Create an empty Message"""
        self.args = {}
        self.namespaces = NamespaceMap()
        if openid_namespace is None:
            self._openid_ns_uri = None
        else:
            implicit = openid_namespace in OPENID1_NAMESPACES
            self.setOpenIDNamespace(openid_namespace, implicit)

    @classmethod
    def fromPostArgs(cls, args):
        """Create a Message from query or form arguments.

        @type args: Dict[str, str]
        @raises TypeError: if a value is a list
        """
        if any(isinstance(value, list) for value in args.values()):
            raise TypeError("query dict must have one value for each key, not lists of values.  Query is %r"
                            % (args,))

        message = cls()
        openid_args = {}
        for key, value in args.items():
            if key.startswith('openid.'):
                openid_args[key[len('openid.'):]] = value
            else:
                message.args[(BARE_NS, key)] = value
        message._fromOpenIDArgs(openid_args)
        return message

    @classmethod
    def fromOpenIDArgs(cls, openid_args):
        """Create a Message from arguments without the C{openid.} prefix, as in KV form."""
        message = cls()
        message._fromOpenIDArgs(openid_args)
        return message

    def _fromOpenIDArgs(self, openid_args):
        # Namespace declarations first, the other arguments depend on them.
        for key, value in openid_args.items():
            if key == 'ns':
                self.setOpenIDNamespace(value, False)
            elif key.startswith('ns.'):
                self.namespaces.addAlias(value, key[len('ns.'):])

        # Messages without openid.ns are OpenID 1
        if self.getOpenIDNamespace() is None:
            self.setOpenIDNamespace(OPENID1_NS, True)

        for key, value in openid_args.items():
            if key == 'ns' or key.startswith('ns.'):
                continue
            alias, dot, ns_key = key.partition('.')
            ns_uri = self.namespaces.getNamespaceURI(alias) if dot else None
            if ns_uri is None:
                # Undeclared aliases stay part of the key in the OpenID namespace.
                ns_uri, ns_key = self.getOpenIDNamespace(), key
            self.setArg(ns_uri, ns_key, value)

    @classmethod
    def fromKVForm(cls, kvform_string):
        """Create a Message from a KV form string, the body of a direct response."""
        return cls.fromOpenIDArgs(kvform.kvToDict(kvform_string))

    def setOpenIDNamespace(self, openid_ns_uri, implicit):
        """Set the OpenID namespace URI used in this message.

        @param implicit: Whether the namespace is only implied, in which
            case C{openid.ns} is not written out.

        @raises InvalidOpenIDNamespace: if the namespace is not in
            L{Message.allowed_openid_namespaces}
        """
        if openid_ns_uri not in self.allowed_openid_namespaces:
            raise InvalidOpenIDNamespace(openid_ns_uri)

        self.namespaces.addAlias(openid_ns_uri, NULL_NAMESPACE, implicit)
        self._openid_ns_uri = openid_ns_uri

    def getOpenIDNamespace(self):
        return self._openid_ns_uri

    def isOpenID1(self):
        return self.getOpenIDNamespace() in OPENID1_NAMESPACES

    def isOpenID2(self):
        return self.getOpenIDNamespace() == OPENID2_NS

    def copy(self):
        return copy.deepcopy(self)

    def _iterOpenIDItems(self):
        """Iterate over the C{openid.} arguments of this message, namespace
        declarations first, yielding keys without the C{openid.} prefix.
        """
        for ns_uri, alias in self.namespaces.items():
            if self.namespaces.isImplicit(ns_uri):
                continue
            if alias == NULL_NAMESPACE:
                yield 'ns', ns_uri
            else:
                yield 'ns.' + alias, ns_uri

        for (ns_uri, ns_key), value in self.args.items():
            if ns_uri == BARE_NS:
                continue
            alias = self.namespaces.getAlias(ns_uri)
            if alias == NULL_NAMESPACE:
                yield ns_key, value
            else:
                yield '%s.%s' % (alias, ns_key), value

    def allOpenIDKeys(self):
        """Return the keys of all C{openid.} arguments, including the
        namespace declarations, without the C{openid.} prefix.

        @rtype: List[str]
        """
        return [key for key, _ in self._iterOpenIDItems()]

    def toPostArgs(self):
        """Return all arguments with openid. in front of namespaced arguments.
        """
        args = {}
        for key, value in self._iterOpenIDItems():
            args['openid.' + key] = value

        for ns_key, value in self.getArgs(BARE_NS).items():
            args[ns_key] = value

        return args

    def toArgs(self):
        """Return all namespaced arguments, failing if any
        non-namespaced arguments exist."""
        if self.getArgs(BARE_NS):
            raise ValueError(
                'This message can only be encoded as a POST, because it '
                'contains arguments that are not prefixed with "openid."')
        return dict(self._iterOpenIDItems())

    def toURL(self, base_url):
        """Generate a GET URL with the parameters in this message
        attached as query parameters."""
        return oidutil.appendArgs(base_url, self.toPostArgs())

    def toKVForm(self):
        """Generate a KVForm string that contains the parameters in
        this message. This will fail if the message contains arguments
        outside of the 'openid.' prefix.
        """
        return kvform.dictToKV(self.toArgs())

    def toURLEncoded(self):
        """Generate an x-www-urlencoded string"""
        return urlencode(sorted(self.toPostArgs().items()))

    def _fixNS(self, namespace):
        """Convert an input value into the internally used values of
        this object

        @param namespace: The string or constant to convert
        @type namespace: str or BARE_NS or OPENID_NS
        """
        if namespace == OPENID_NS:
            if self._openid_ns_uri is None:
                raise UndefinedOpenIDNamespace('OpenID namespace not set')
            else:
                namespace = self._openid_ns_uri
        elif namespace != BARE_NS and not isinstance(namespace, str):
            raise TypeError("Namespace must be BARE_NS, OPENID_NS or a string. got %r" % (namespace,))

        return namespace

    def hasKey(self, namespace, ns_key):
        namespace = self._fixNS(namespace)
        return (namespace, ns_key) in self.args

    def getKey(self, namespace, ns_key):
        """Get the key for a particular namespaced argument"""
        namespace = self._fixNS(namespace)
        if namespace == BARE_NS:
            return ns_key

        ns_alias = self.namespaces.getAlias(namespace)

        # No alias is defined, so no key can exist
        if ns_alias is None:
            return None

        if ns_alias == NULL_NAMESPACE:
            tail = ns_key
        else:
            tail = '%s.%s' % (ns_alias, ns_key)

        return 'openid.' + tail

    def getArg(self, namespace, key, default=None):
        """Get a value for a namespaced key.

        @param default: The value returned if the key is missing. If it is
            C{L{no_default}}, L{KeyNotFound} is raised instead.

        @raises KeyNotFound: if the key is missing and C{default} is
            C{L{no_default}}
        """
        namespace = self._fixNS(namespace)
        try:
            return self.args[(namespace, key)]
        except KeyError:
            if default is no_default:
                raise KeyNotFound('%r not found in namespace %r' % (key, namespace))
            return default

    def getArgs(self, namespace):
        """Get the arguments that are defined for this namespace URI

        @returns: mapping from namespaced keys to values
        @rtype: dict
        """
        namespace = self._fixNS(namespace)
        return dict((ns_key, value) for ((pair_ns, ns_key), value) in self.args.items() if pair_ns == namespace)

    def getAliasedArg(self, aliased_key, default=None):
        """Get a value by its key as it appears after C{openid.}, e.g.
        C{mode}, C{ns.pape} or C{pape.auth_time}.

        @raises KeyNotFound: if the key is missing and C{default} is
            C{L{no_default}}
        """
        if aliased_key == 'ns':
            return self.getOpenIDNamespace()

        if aliased_key.startswith('ns.'):
            uri = self.namespaces.getNamespaceURI(aliased_key[3:])
            if uri is None:
                if default is no_default:
                    raise KeyNotFound('Namespace %r is not declared' % (aliased_key[3:],))
                return default
            return uri

        try:
            alias, key = aliased_key.split('.', 1)
        except ValueError:
            ns = None
        else:
            ns = self.namespaces.getNamespaceURI(alias)

        if ns is None:
            key = aliased_key
            ns = self.getOpenIDNamespace()

        return self.getArg(ns, key, default)

    def updateArgs(self, namespace, updates):
        """Set multiple key/value pairs in one call

        @param updates: The values to set
        @type updates: Dict[str, str]
        """
        namespace = self._fixNS(namespace)
        for k, v in updates.items():
            self.setArg(namespace, k, v)

    def setArg(self, namespace, key, value):
        """Set a single argument in this namespace"""
        assert key is not None
        assert value is not None
        namespace = self._fixNS(namespace)
        self.args[(namespace, key)] = value
        if namespace != BARE_NS:
            self.namespaces.add(namespace)

    def delArg(self, namespace, key):
        namespace = self._fixNS(namespace)
        del self.args[(namespace, key)]

    def __eq__(self, other):
        if not isinstance(other, Message):
            return NotImplemented
        return self.toPostArgs() == other.toPostArgs()

    def __ne__(self, other):
        return not (self == other)

    def __repr__(self):
        return "<%s.%s %r>" % (self.__class__.__module__,
                               self.__class__.__name__,
                               self.toPostArgs())


class NamespaceMap(object):
    """Bijective map between namespace URIs and their aliases.

    @ivar implicit_namespaces: URIs which are mapped but not declared
        with C{openid.ns.*} arguments
    """

    def __init__(self):
        self.alias_to_namespace = {}
        self.namespace_to_alias = {}
        self.implicit_namespaces = set()

    def getAlias(self, namespace_uri):
        return self.namespace_to_alias.get(namespace_uri)

    def getNamespaceURI(self, alias):
        return self.alias_to_namespace.get(alias)

    def items(self):
        """Return the C{(namespace_uri, alias)} pairs."""
        return self.namespace_to_alias.items()

    def addAlias(self, namespace_uri, desired_alias, implicit=False):
        """Map the namespace URI to the alias.

        @raises KeyError: if either of them is already mapped to something else
        """
        assert desired_alias == NULL_NAMESPACE or isinstance(desired_alias, str), repr(desired_alias)
        mapped_uri = self.alias_to_namespace.get(desired_alias, namespace_uri)
        mapped_alias = self.namespace_to_alias.get(namespace_uri, desired_alias)
        if mapped_uri != namespace_uri or mapped_alias != desired_alias:
            raise KeyError('Cannot map %r to alias %r, the alias maps to %r and the URI to %r'
                           % (namespace_uri, desired_alias, mapped_uri, mapped_alias))

        self.alias_to_namespace[desired_alias] = namespace_uri
        self.namespace_to_alias[namespace_uri] = desired_alias
        if implicit:
            self.implicit_namespaces.add(namespace_uri)
        return desired_alias

    def add(self, namespace_uri):
        """Map the namespace URI to its alias, generating C{extN} aliases for new URIs.

        @rtype: str
        """
        if namespace_uri in self:
            return self.namespace_to_alias[namespace_uri]
        for i in itertools.count():
            alias = 'ext%d' % i
            if alias not in self.alias_to_namespace:
                return self.addAlias(namespace_uri, alias)

    def __contains__(self, namespace_uri):
        return namespace_uri in self.namespace_to_alias

    def isImplicit(self, namespace_uri):
        return namespace_uri in self.implicit_namespaces

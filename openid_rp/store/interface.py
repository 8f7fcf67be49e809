"""
This module contains the definition of the C{L{OpenIDStore}}
interface.
"""
import abc


class OpenIDStore(abc.ABC):
    """
    This is the interface for the store objects the OpenID library
    uses. It provides all of the persistence mechanisms that the
    relying party needs: associations keyed by server URL and handle,
    and the record of used nonces.

    Backends implement every abstract method; C{L{cleanup}} is provided.

    @sort: storeAssociation, getAssociation, removeAssociation,
        useNonce, cleanupNonces, cleanupAssociations, cleanup
    """

    @abc.abstractmethod
    def storeAssociation(self, server_url, association):
        """
        This method puts a C{L{Association
        <openid_rp.association.Association>}} object into storage,
        retrievable by server URL and handle. Storing the same
        association twice is not an error.

        @param server_url: The URL of the identity server that this
            association is with. Don't assume there are any limitations
            on the character set of the input string.
        @type server_url: str

        @param association: The association to store.
        @type association: L{Association<openid_rp.association.Association>}

        @rtype: NoneType
        """

    @abc.abstractmethod
    def getAssociation(self, server_url, handle=None):
        """
        This method returns an C{L{Association
        <openid_rp.association.Association>}} object from storage that
        matches the server URL and, if specified, handle. It returns
        C{None} if no such association is found or if the matching
        association is expired.

        If no handle is specified, the store returns the association
        for the server URL with the latest C{issued} time.

        This method is allowed (and encouraged) to garbage collect
        expired associations when found. This method must not return
        expired associations.

        @param server_url: The URL of the identity server to get the
            association for.
        @type server_url: str

        @param handle: This optional parameter is the handle of the
            specific association to get.
        @type handle: Optional[str]

        @rtype: Optional[L{Association<openid_rp.association.Association>}]
        """

    @abc.abstractmethod
    def removeAssociation(self, server_url, handle):
        """
        This method removes the matching association if it's found,
        and returns whether the association was removed or not.

        @param server_url: The URL of the identity server the
            association to remove belongs to.
        @type server_url: str

        @param handle: This is the handle of the association to
            remove.
        @type handle: str

        @return: Returns whether or not the given association existed.
        @rtype: bool
        """

    @abc.abstractmethod
    def useNonce(self, server_url, timestamp, salt):
        """Called when using a nonce.

        This method should return C{True} if the nonce has not been
        used before, and store it for a while to make sure nobody
        tries to use the same value again.  If the nonce has already
        been used or the timestamp is not current, return C{False}.

        You may use L{openid_rp.store.nonce.SKEW} for your timestamp
        window.

        @param server_url: The URL of the server from which the nonce
            originated. Empty for nonces the consumer made itself.
        @type server_url: str

        @param timestamp: The time that the nonce was created (to the
            nearest second), in seconds since January 1 1970 UTC.
        @type timestamp: int

        @param salt: A random string that makes two nonces from the
            same server issued during the same second unique.
        @type salt: str

        @return: Whether or not the nonce was valid.
        @rtype: bool
        """

    @abc.abstractmethod
    def cleanupNonces(self):
        """Remove expired nonces from the store.

        Discards any nonce from storage that is old enough that its
        timestamp would not pass L{useNonce}.

        This method is not called in the normal operation of the
        library.  It provides a way for store admins to keep
        their storage from filling up with expired data.

        @return: the number of nonces expired.
        @rtype: int
        """

    @abc.abstractmethod
    def cleanupAssociations(self):
        """Remove expired associations from the store.

        This method is not called in the normal operation of the
        library.  It provides a way for store admins to keep
        their storage from filling up with expired data.

        @return: the number of associations expired.
        @rtype: int
        """

    def cleanup(self):
        """Shortcut for C{L{cleanupNonces}()}, C{L{cleanupAssociations}()}.

        @return: tuple of the number of expired nonces and the number of
            expired associations
        @rtype: Tuple[int, int]
        """
        return self.cleanupNonces(), self.cleanupAssociations()

"""
This package implements the relying party side of OpenID in Python.

It verifies identity assertions sent back by OpenID providers, keeps the
shared association secrets and the used nonces in a store and talks to
the provider when a signature can not be checked locally.  For the
verification entry points, see the C{L{openid_rp.consumer.consumer}}
module.  For the storage backends, see C{L{openid_rp.store}}.
"""

__version__ = '1.0.0'

# Parse the version info
try:
    version_info = tuple(int(i) for i in __version__.split('.'))
except ValueError:
    version_info = (None, None, None)
else:
    if len(version_info) != 3:
        version_info = (None, None, None)

"""
This package contains the modules related to this library's use of
persistent storage.

@sort: interface, filestore, memstore, memcachestore, nonce
"""

__all__ = ['filestore', 'interface', 'memcachestore', 'memstore', 'nonce']

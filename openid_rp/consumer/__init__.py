"""
This package contains the portions of the library used only when
implementing an OpenID consumer (relying party).
"""

__all__ = ['consumer', 'discover', 'idres']

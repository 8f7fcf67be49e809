# -*- coding: utf-8 -*-
from setuptools import setup

# Import version from openid_rp library itself
VERSION = __import__('openid_rp').__version__
INSTALL_REQUIRES = [
    'cryptography',
    'lxml',
]
EXTRAS_REQUIRE = {
    'quality': ('flake8', 'isort'),
    'tests': ('testfixtures', 'responses', 'coverage'),
    # Optional dependency for fetchers
    'requests': ('requests', ),
    # Optional dependency for the memcached store
    'memcache': ('python-memcached', ),
}
LONG_DESCRIPTION = open('README.md').read() + '\n\n' + open('Changelog.md').read()
CLASSIFIERS = [
    'Development Status :: 5 - Production/Stable',
    'Environment :: Web Environment',
    'Intended Audience :: Developers',
    'License :: OSI Approved :: Apache Software License',
    'Operating System :: POSIX',
    'Programming Language :: Python',
    'Programming Language :: Python :: 3',
    'Programming Language :: Python :: 3 :: Only',
    'Topic :: Internet :: WWW/HTTP',
    'Topic :: Internet :: WWW/HTTP :: Dynamic Content :: CGI Tools/Libraries',
    'Topic :: Software Development :: Libraries :: Python Modules',
    'Topic :: System :: Systems Administration :: Authentication/Directory',
]


setup(
    name='python-openid-rp',
    version=VERSION,
    description='Python OpenID library - OpenID support for relying parties.',
    long_description=LONG_DESCRIPTION,
    long_description_content_type='text/markdown',
    packages=['openid_rp',
              'openid_rp.consumer',
              'openid_rp.store',
              'openid_rp.test',
              ],
    python_requires='>=3.7',
    install_requires=INSTALL_REQUIRES,
    extras_require=EXTRAS_REQUIRE,
    # license specified by classifier.
    classifiers=CLASSIFIERS,
)

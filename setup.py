#!/usr/bin/env python

import os
import sys

from setuptools import setup

parent_dir = os.path.dirname(os.path.abspath(__file__))

INSTALL_REQUIRES = []
INSTALL_REQUIRES.append('urllib3')  # This is a 3rd party connections lib
INSTALL_REQUIRES.append('cryptography')  # RSA-SHA1 signatures
assert sys.version_info >= (3, 7), "We only support Python 3.7+"

with open(os.path.join(parent_dir, 'README.rst')) as f:
    readme = f.read()

setup(name='oauthbox',
      version='1.0.0',
      description='Asynchronous OAuth 1.0a client for the Dropbox REST API',
      long_description=readme,
      packages=['oauthbox'],
      install_requires=INSTALL_REQUIRES,
      python_requires='>=3.7',
      extras_require={'test': ['mock', 'pytest']},
      test_suite='tests',
      )

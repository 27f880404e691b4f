from . import api, auth, client, credentials, oauth, request, rest, session
from .rest import SDK_VERSION

__version__ = SDK_VERSION

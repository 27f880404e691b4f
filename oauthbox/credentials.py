"""
oauthbox.credentials.CredentialStore holds one user's OAuth token material
(consumer key/secret, request key/secret, access key/secret, session handle)
and knows how to turn it into the OAuth parameters of a request.

Readers that sign requests take a :class:`Credentials` snapshot so they never
see a token whose key and secret come from different refreshes.
"""

import collections
import logging
import threading
import time
import uuid

from .oauth import Parameter, SignatureMethod, escape

logger = logging.getLogger(__name__)

CONSUMER_KEY = 'oauth_consumer_key'
CONSUMER_SECRET = 'oauth_consumer_secret'
REQUEST_TOKEN = 'oauth_request_token'
REQUEST_TOKEN_SECRET = 'oauth_request_token_secret'
ACCESS_TOKEN = 'oauth_token'
ACCESS_TOKEN_SECRET = 'oauth_token_secret'
SESSION_HANDLE = 'oauth_session_handle'
REFRESH_DATE = 'oauth_token_refresh_date'
RSA_PRIVATE_KEY = 'oauth_rsa_private_key'

# the fields that describe a linked user; consumer credentials belong to the app
PERSISTED_CREDENTIALS = (ACCESS_TOKEN, ACCESS_TOKEN_SECRET, SESSION_HANDLE, REFRESH_DATE)

TOKEN_CREDENTIALS = (REQUEST_TOKEN, REQUEST_TOKEN_SECRET) + PERSISTED_CREDENTIALS


class OAuthToken(object):
    """
    A class representing an OAuth token. Contains two fields: ``key`` and
    ``secret``.
    """
    def __init__(self, key, secret):
        self.key = key
        self.secret = secret

    def __eq__(self, other):
        return isinstance(other, OAuthToken) and (self.key, self.secret) == (other.key, other.secret)

    def __ne__(self, other):
        return not self == other

    def __repr__(self):
        return "OAuthToken(%r, ...)" % (self.key,)


class Credentials(collections.namedtuple('Credentials', [
        'consumer_key', 'consumer_secret', 'request_token', 'request_token_secret',
        'access_token', 'access_token_secret', 'session_handle', 'rsa_private_key',
        'store_class'], defaults=(None,))):
    """
    An immutable copy of a :class:`CredentialStore` taken under its lock.
    ``store_class`` is the class of that store; its nonce and timestamp
    generators are used for the OAuth parameters.
    """

    __slots__ = ()

    @property
    def token(self):
        if self.access_token:
            return OAuthToken(self.access_token, self.access_token_secret)
        if self.request_token:
            return OAuthToken(self.request_token, self.request_token_secret)
        return None

    @property
    def token_secret(self):
        if self.access_token:
            return self.access_token_secret
        return self.request_token_secret

    def token_secret_for(self, token_key):
        if token_key == self.access_token:
            return self.access_token_secret
        if token_key == self.request_token:
            return self.request_token_secret
        return None

    def signing_key(self, token=None):
        """``escape(consumer secret) & escape(token secret)``."""
        secret = token[1] if token is not None else self.token_secret
        return '%s&%s' % (escape(self.consumer_secret or ''), escape(secret or ''))

    def oauth_parameters(self, signature_method=SignatureMethod.HMAC_SHA1, token=None):
        """
        The OAuth protocol parameters for one request. A fresh nonce and
        timestamp are generated on every call.

        Parameters
            signature_method
              Advertised as ``oauth_signature_method``.
            token
              An explicit ``(key, secret)`` pair whose key becomes
              ``oauth_token``. Defaults to the access token, then the request
              token.
        """
        factory = self.store_class or CredentialStore
        params = [
            Parameter('oauth_consumer_key', self.consumer_key),
            Parameter('oauth_nonce', factory._generate_oauth_nonce()),
            Parameter('oauth_timestamp', str(factory._generate_oauth_timestamp())),
            Parameter('oauth_signature_method', signature_method),
            Parameter('oauth_version', factory._oauth_version()),
        ]
        if token is not None:
            params.append(Parameter('oauth_token', token[0]))
        else:
            current = self.token
            if current is not None:
                params.append(Parameter('oauth_token', current.key))
        return params


class CredentialStore(object):
    """
    The credential store of one user.

    Store operations never fail; callers check for presence (for example with
    :attr:`access_token`) before relying on a credential.
    """

    def __init__(self, credentials=None, base_url=None, authentication_url=None):
        """
        Parameters
            credentials
              A dictionary of credential names (the constants in this module)
              to values. It must contain at least ``CONSUMER_KEY`` and
              ``CONSUMER_SECRET`` to sign anything.
            base_url
              The URL relative API methods are resolved against. [optional]
            authentication_url
              The URL OAuth endpoints are resolved against. [optional]
        """
        self._lock = threading.RLock()
        self._credentials = dict(credentials or {})
        self.base_url = base_url
        self.authentication_url = authentication_url or base_url
        access_pair = (self._credentials.get(ACCESS_TOKEN), self._credentials.get(ACCESS_TOKEN_SECRET))
        if bool(access_pair[0]) != bool(access_pair[1]):
            raise ValueError("access token and access token secret must be given together")

    # ---------------
    # Named credentials
    # ---------------
    def credential(self, name):
        with self._lock:
            return self._credentials.get(name)

    def set_credential(self, name, value):
        with self._lock:
            if value is None:
                self._credentials.pop(name, None)
            else:
                self._credentials[name] = value

    def remove_credential(self, name):
        with self._lock:
            self._credentials.pop(name, None)

    # ---------------
    # Token material
    # ---------------
    @property
    def consumer_key(self):
        return self.credential(CONSUMER_KEY)

    @property
    def consumer_secret(self):
        return self.credential(CONSUMER_SECRET)

    @property
    def request_token(self):
        return self.credential(REQUEST_TOKEN)

    @property
    def request_token_secret(self):
        return self.credential(REQUEST_TOKEN_SECRET)

    @property
    def access_token(self):
        return self.credential(ACCESS_TOKEN)

    @property
    def access_token_secret(self):
        return self.credential(ACCESS_TOKEN_SECRET)

    @property
    def session_handle(self):
        return self.credential(SESSION_HANDLE)

    @session_handle.setter
    def session_handle(self, value):
        self.set_credential(SESSION_HANDLE, value)

    @property
    def refresh_date(self):
        return self.credential(REFRESH_DATE)

    @property
    def token_secret(self):
        return self.snapshot().token_secret

    @property
    def signing_key(self):
        return self.snapshot().signing_key()

    def set_request_token(self, request_token, request_token_secret):
        """Attach a request token. Passing ``None`` for both removes it."""
        self._set_pair(REQUEST_TOKEN, REQUEST_TOKEN_SECRET, request_token, request_token_secret)

    def set_access_token(self, access_token, access_token_secret):
        """Attach an access token. Passing ``None`` for both removes it."""
        self._set_pair(ACCESS_TOKEN, ACCESS_TOKEN_SECRET, access_token, access_token_secret)

    def _set_pair(self, key_name, secret_name, key, secret):
        if bool(key) != bool(secret):
            raise ValueError("%s and %s must be set together" % (key_name, secret_name))
        with self._lock:
            self.set_credential(key_name, key)
            self.set_credential(secret_name, secret)

    def record_refresh(self, when=None):
        self.set_credential(REFRESH_DATE, time.time() if when is None else when)

    def discard(self):
        """Remove every token; the consumer credentials survive."""
        with self._lock:
            for name in TOKEN_CREDENTIALS:
                self._credentials.pop(name, None)
        logger.debug("Discarded stored tokens")

    def is_linked(self):
        """Return whether the store has an access token attached."""
        return bool(self.access_token)

    def snapshot(self):
        with self._lock:
            c = self._credentials
            return Credentials(c.get(CONSUMER_KEY), c.get(CONSUMER_SECRET),
                               c.get(REQUEST_TOKEN), c.get(REQUEST_TOKEN_SECRET),
                               c.get(ACCESS_TOKEN), c.get(ACCESS_TOKEN_SECRET),
                               c.get(SESSION_HANDLE), c.get(RSA_PRIVATE_KEY), type(self))

    def dictionary(self):
        """The persistable part of the store, as a plain dictionary."""
        with self._lock:
            return dict((name, self._credentials[name])
                        for name in PERSISTED_CREDENTIALS if name in self._credentials)

    def update(self, credentials):
        """Merge a dictionary previously returned from :meth:`dictionary`."""
        with self._lock:
            if ACCESS_TOKEN in credentials or ACCESS_TOKEN_SECRET in credentials:
                self.set_access_token(credentials.get(ACCESS_TOKEN), credentials.get(ACCESS_TOKEN_SECRET))
            for name in (SESSION_HANDLE, REFRESH_DATE):
                if name in credentials:
                    self.set_credential(name, credentials[name])

    # ---------------
    # Parameter factory
    # ---------------
    def oauth_parameters(self, http_method, url, signature_method=SignatureMethod.HMAC_SHA1):
        """
        Produce the OAuth parameters for a request.

        ``http_method`` and ``url`` do not change the result; they are accepted
        so every request goes through the same factory call.

        Returns
            A list of :class:`oauthbox.oauth.Parameter` with ``oauth_consumer_key``,
            ``oauth_nonce``, ``oauth_timestamp``, ``oauth_signature_method``,
            ``oauth_version`` and, when a token exists, ``oauth_token``.
        """
        return self.snapshot().oauth_parameters(signature_method)

    @classmethod
    def _generate_oauth_timestamp(cls):
        return int(time.time())

    @classmethod
    def _generate_oauth_nonce(cls):
        return uuid.uuid4().hex

    @classmethod
    def _oauth_version(cls):
        return '1.0'

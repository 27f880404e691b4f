"""
oauthbox.api.OAuthAPI ties one :class:`oauthbox.credentials.CredentialStore`
to one :class:`oauthbox.auth.OAuthAuthenticationMethod` and turns API method
calls into signed :class:`oauthbox.request.AsyncRequest` objects.

A typical use::

    api = OAuthAPI({CONSUMER_KEY: 'key', CONSUMER_SECRET: 'secret'},
                   'https://api.example.com/1/')
    api.add_observer(on_notification)
    api.authenticate()
    ...
    api.perform_method('account/info', completion=on_account_info)
"""

import logging
import threading
from urllib.parse import urljoin, urlsplit

from . import auth
from .auth import AuthenticationState, OAuthAuthenticationMethod
from .credentials import CredentialStore
from .oauth import SignatureMethod, URLRequest
from .request import AsyncRequest, RequestQueue
from .rest import RESTClient, SignatureRejectedError

logger = logging.getLogger(__name__)


class OAuthAPI(object):

    def __init__(self, credentials, base_url, authentication_url=None,
                 signature_method=SignatureMethod.HMAC_SHA1, request_queue=None,
                 transport=None, delegate=None, configuration=None, autostart=False,
                 reauthenticate_on_rejection=True, use_authorization_header=True,
                 refresh_interval=auth.DEFAULT_REFRESH_INTERVAL):
        """
        Parameters
            credentials
              A :class:`oauthbox.credentials.CredentialStore`, or a dictionary
              to build one from.
            base_url
              Relative method names are resolved against this URL.
            authentication_url
              The OAuth endpoints are resolved against this URL. Defaults to
              ``base_url``.
            signature_method
              One of the :class:`oauthbox.oauth.SignatureMethod` constants.
            request_queue
              The :class:`oauthbox.request.RequestQueue` for handshake calls
              and :meth:`perform_method`. A private one is created if omitted.
            transport
              A :class:`oauthbox.rest.RESTClient`-like object, used for
              :meth:`data_for_method` and for a private queue.
            delegate
              An :class:`oauthbox.auth.AuthenticationDelegate`.
            configuration
              A dictionary that may override ``request_token_url``,
              ``authorize_url`` and ``access_token_url``.
            autostart
              Call :meth:`authenticate` immediately.
            reauthenticate_on_rejection
              Start a new handshake when the server rejects the access token.
            use_authorization_header
              Sign with an ``Authorization`` header (default) rather than the
              query string.
            refresh_interval
              Seconds between access-token refreshes; ``None`` or ``0``
              disables the timer. The server's ``oauth_expires_in`` wins.
        """
        if not isinstance(credentials, CredentialStore):
            credentials = CredentialStore(credentials, base_url, authentication_url)
        self.credentials = credentials
        self.base_url = base_url
        self.authentication_url = authentication_url or base_url
        self.signature_method = signature_method
        self.transport = transport if transport is not None else RESTClient
        self.request_queue = request_queue or RequestQueue(transport=self.transport)
        self.reauthenticate_on_rejection = reauthenticate_on_rejection
        self.use_authorization_header = use_authorization_header

        self._lock = threading.RLock()
        self._observers = []
        if credentials.access_token:
            self._authentication_state = AuthenticationState.AUTHENTICATED
        else:
            self._authentication_state = AuthenticationState.UNAUTHENTICATED

        configuration = configuration or {}
        self.authentication_method = OAuthAuthenticationMethod(
            self,
            configuration.get('request_token_url') or urljoin(self.authentication_url, 'oauth/request_token'),
            configuration.get('authorize_url') or urljoin(self.authentication_url, 'oauth/authorize'),
            configuration.get('access_token_url') or urljoin(self.authentication_url, 'oauth/access_token'),
            delegate=delegate, refresh_interval=refresh_interval, lock=self._lock)

        if autostart:
            self.authenticate()

    # ---------------
    # Authentication
    # ---------------
    @property
    def authentication_state(self):
        with self._lock:
            return self._authentication_state

    def _set_authentication_state(self, state):
        with self._lock:
            if state != self._authentication_state:
                logger.debug("Authentication state %s -> %s", self._authentication_state, state)
            self._authentication_state = state

    def authenticate(self):
        self.authentication_method.authenticate()

    def is_authenticated(self):
        return self.authentication_state == AuthenticationState.AUTHENTICATED

    def discard_credentials(self):
        """
        Forget every token and return to ``UNAUTHENTICATED``. Safe in any
        state; a handshake response that arrives afterwards has no effect.
        """
        self.authentication_method.reset()
        with self._lock:
            self.credentials.discard()
            self._authentication_state = AuthenticationState.UNAUTHENTICATED
        logger.info("Discarded OAuth credentials")

    def access_token_rejected(self, error):
        """
        The server refused our access token. The tokens are discarded and,
        unless disabled, one new handshake is started. Rejections that arrive
        while we are not authenticated are already being handled.
        """
        with self._lock:
            if self._authentication_state != AuthenticationState.AUTHENTICATED:
                return False
        self.authentication_method.reset()
        with self._lock:
            self.credentials.discard()
            self._authentication_state = AuthenticationState.UNAUTHENTICATED
        logger.warning("Access token rejected: %s", error)
        self._notify(auth.ACCESS_TOKEN_REJECTED, {'error': error})
        if self.reauthenticate_on_rejection:
            self.authenticate()
        return True

    # ---------------
    # Observers
    # ---------------
    def add_observer(self, observer):
        """``observer(name, info)`` is called for every notification."""
        with self._lock:
            self._observers.append(observer)

    def remove_observer(self, observer):
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def _notify(self, name, info):
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(name, info)
            except Exception:
                logger.exception("Observer %r failed handling %s", observer, name)

    # ---------------
    # Named credentials
    # ---------------
    def credential_named(self, name):
        return self.credentials.credential(name)

    def set_credential(self, name, value):
        with self._lock:
            self.credentials.set_credential(name, value)

    def remove_credential_named(self, name):
        with self._lock:
            self.credentials.remove_credential(name)

    # ---------------
    # Requests
    # ---------------
    def url_for_method(self, method):
        if urlsplit(method).scheme:
            return method
        return urljoin(self.base_url, method)

    def signed_request(self, http_method, url, parameters=None, token=None,
                       extra_oauth_parameters=None, headers=None):
        """Sign a request with one consistent snapshot of the credential store."""
        request = URLRequest(self.url_for_method(url), parameters, http_method)
        return request.signed(self.credentials.snapshot(), self.signature_method,
                              use_header=self.use_authorization_header, token=token,
                              extra_oauth_parameters=extra_oauth_parameters, headers=headers)

    def perform_request(self, http_method, method, parameters=None, completion=None,
                        queue=None, headers=None, **request_kwargs):
        """
        Sign and submit a request.

        Parameters
            http_method
              ``'GET'``, ``'POST'``, ``'PUT'``...
            method
              An absolute URL or a path relative to ``base_url``.
            parameters
              A dictionary or list of ``(name, value)`` request parameters.
            completion
              Called with the finished :class:`oauthbox.request.AsyncRequest`.
            queue
              The :class:`oauthbox.request.RequestQueue` to submit to. Defaults
              to this API's own queue.
            request_kwargs
              Passed on to :class:`oauthbox.request.AsyncRequest`.

        Returns
            The submitted :class:`oauthbox.request.AsyncRequest`.
        """
        signed = self.signed_request(http_method, method, parameters, headers=headers)
        request = AsyncRequest(signed, completion=self._completion(completion), **request_kwargs)
        return (queue or self.request_queue).submit(request)

    def perform_method(self, method, parameters=None, completion=None, **kwargs):
        return self.perform_request('GET', method, parameters, completion, **kwargs)

    def perform_post_method(self, method, parameters=None, completion=None, **kwargs):
        return self.perform_request('POST', method, parameters, completion, **kwargs)

    def _completion(self, completion):
        def deliver(request):
            if request.signature_rejected:
                self.access_token_rejected(request.error)
            if completion is not None:
                completion(request)
        return deliver

    def data_for_method(self, method, parameters=None):
        """
        Perform a signed GET on the calling thread and return the raw body.

        Raises
            The :mod:`oauthbox.rest` errors; a signature rejection is routed to
            :meth:`access_token_rejected` first.
        """
        signed = self.signed_request('GET', method, parameters)
        try:
            response = self.transport.request(signed.method, signed.url, body=signed.body,
                                              headers=signed.headers)
        except SignatureRejectedError as e:
            self.access_token_rejected(e)
            raise
        try:
            return response.read()
        finally:
            response.close()

"""
The three-legged OAuth 1.0a handshake.

:class:`OAuthAuthenticationMethod` obtains a request token, hands the
authorization URL to the host application, trades the authorized request token
for an access token and keeps that access token fresh with a timer. It drives
the :class:`oauthbox.credentials.CredentialStore` of the API it belongs to, but
only holds a weak reference to that API.
"""

import logging
import threading
import weakref
from urllib.parse import parse_qs, urlencode

from .request import AsyncRequest
from .rest import InvalidResponseError

logger = logging.getLogger(__name__)

# notification names, delivered to OAuthAPI observers as (name, info)
ACCESS_TOKEN_RECEIVED = 'access_token_received'
ACCESS_TOKEN_REJECTED = 'access_token_rejected'
ACCESS_TOKEN_REFRESHED = 'access_token_refreshed'
OAUTH_CREDENTIALS_READY = 'oauth_credentials_ready'
REQUEST_TOKEN_RECEIVED = 'request_token_received'
REQUEST_TOKEN_REJECTED = 'request_token_rejected'
ERROR_HAS_OCCURRED = 'error_has_occurred'

# seconds between access-token refreshes unless the server announces oauth_expires_in
DEFAULT_REFRESH_INTERVAL = 60 * 60


class AuthenticationState(object):
    UNAUTHENTICATED = 0
    AUTHENTICATING = 1
    AUTHENTICATED = 2


class HandshakeState(object):
    NO_TOKEN = 'no_token'
    REQUEST_TOKEN_OBTAINED = 'request_token_obtained'
    USER_AUTHORIZED = 'user_authorized'
    ACCESS_TOKEN_OBTAINED = 'access_token_obtained'


class AuthenticationDelegate(object):
    """
    Hooks for the host application. Override what you need; every method has
    a harmless default.
    """

    def callback_url_for_completed_user_authorization(self):
        """The URL the provider redirects to once the user approves, or ``None``."""
        return None

    def automatically_request_authentication_from_url(self, url, callback_url):
        """
        Send the user to ``url``. Return ``True`` if the application took care
        of it; ``False`` leaves it to the caller, who can read
        :meth:`OAuthAuthenticationMethod.authorization_url`.
        """
        return False

    def oauth_verifier_for_completed_user_authorization(self):
        return None

    def authentication_did_fail_with_error(self, error):
        pass


def parse_token_response(request):
    """
    Parse an ``application/x-www-form-urlencoded`` token response.

    Returns a dictionary of single values; raises the request's
    :class:`oauthbox.rest.InvalidResponseError` if ``oauth_token`` or
    ``oauth_token_secret`` is missing.
    """
    body = request.result_string or ''
    params = dict((k, v[0]) for k, v in parse_qs(body, keep_blank_values=False).items())
    if 'oauth_token' not in params:
        raise request.invalid_response("'oauth_token' not found in OAuth response.")
    if 'oauth_token_secret' not in params:
        raise request.invalid_response("'oauth_token_secret' not found in OAuth response.")
    return params


class OAuthAuthenticationMethod(object):

    def __init__(self, api, request_token_url, authorize_url, access_token_url,
                 delegate=None, refresh_interval=DEFAULT_REFRESH_INTERVAL, lock=None):
        """
        Parameters
            api
              The :class:`oauthbox.api.OAuthAPI` to authenticate. Only a weak
              reference is kept.
            request_token_url, authorize_url, access_token_url
              The three OAuth endpoints.
            delegate
              An :class:`AuthenticationDelegate`. [optional]
            refresh_interval
              Seconds between access-token refreshes. ``None`` or ``0``
              disables the timer until the server announces ``oauth_expires_in``.
            lock
              The lock shared with the API for credential and state changes.
        """
        self._api = weakref.ref(api)
        self.request_token_url = request_token_url
        self.authorize_url = authorize_url
        self.access_token_url = access_token_url
        self.delegate = delegate or AuthenticationDelegate()
        self._lock = lock or threading.RLock()
        self._refresh_interval = refresh_interval
        self._timer = None
        self._in_flight = None
        self._generation = 0

        self.oauth10a_mode_active = False
        self.refresh_pending = False
        self.user_id = None
        if api.credentials.access_token:
            self.state = HandshakeState.ACCESS_TOKEN_OBTAINED
        else:
            self.state = HandshakeState.NO_TOKEN

    @property
    def api(self):
        api = self._api()
        if api is None:
            raise ReferenceError("the OAuthAPI for this authentication method is gone")
        return api

    @property
    def in_flight(self):
        return self._in_flight is not None

    # ---------------
    # Handshake
    # ---------------
    def authenticate(self):
        """
        Start the handshake. Does nothing while a handshake is already running;
        reports the credentials as ready if an access token is stored.
        """
        with self._lock:
            api = self.api
            if api.authentication_state == AuthenticationState.AUTHENTICATING:
                logger.debug("authenticate() ignored; a handshake is already in progress")
                return
            if api.credentials.access_token:
                self.state = HandshakeState.ACCESS_TOKEN_OBTAINED
                api._set_authentication_state(AuthenticationState.AUTHENTICATED)
                self._schedule_refresh()
                api._notify(OAUTH_CREDENTIALS_READY, {})
                return

            logger.info("Requesting an OAuth request token")
            api._set_authentication_state(AuthenticationState.AUTHENTICATING)
            api.credentials.set_request_token(None, None)
            self.state = HandshakeState.NO_TOKEN
            extra = {}
            callback_url = self.delegate.callback_url_for_completed_user_authorization()
            if callback_url:
                extra['oauth_callback'] = callback_url
            signed = api.signed_request('POST', self.request_token_url,
                                        extra_oauth_parameters=extra)
            self._submit(signed, self._request_token_received)

    def _request_token_received(self, request):
        api = self.api
        if request.error is not None:
            logger.warning("Request token call failed: %s", request.error)
            self._fail(request.error, REQUEST_TOKEN_REJECTED)
            return
        try:
            params = parse_token_response(request)
        except InvalidResponseError as e:
            self._fail(e, REQUEST_TOKEN_REJECTED)
            return

        api.credentials.set_request_token(params['oauth_token'], params['oauth_token_secret'])
        self.oauth10a_mode_active = params.get('oauth_callback_confirmed') == 'true'
        self.state = HandshakeState.REQUEST_TOKEN_OBTAINED
        logger.info("Received request token; waiting for user authorization")
        api._notify(REQUEST_TOKEN_RECEIVED, {'oauth_token': params['oauth_token']})

        callback_url = self.delegate.callback_url_for_completed_user_authorization()
        url = self.authorization_url(callback_url)
        if not self.delegate.automatically_request_authentication_from_url(url, callback_url):
            logger.info("Authorization URL: %s", url)

    def authorization_url(self, callback_url=None):
        """The URL the user must visit to approve the current request token."""
        params = {'oauth_token': self.api.credentials.request_token}
        if callback_url:
            params['oauth_callback'] = callback_url
        separator = '&' if '?' in self.authorize_url else '?'
        return self.authorize_url + separator + urlencode(params)

    def user_authorized(self, verifier=None):
        """
        Called by the host once the user approved the request token. Trades
        it for an access token.

        Returns ``False`` if there is no request token waiting for approval.
        """
        with self._lock:
            if self.state != HandshakeState.REQUEST_TOKEN_OBTAINED:
                logger.warning("user_authorized() called without a pending request token")
                return False
            api = self.api
            self.state = HandshakeState.USER_AUTHORIZED
            extra = {}
            if verifier is None and self.oauth10a_mode_active:
                verifier = self.delegate.oauth_verifier_for_completed_user_authorization()
            if verifier:
                extra['oauth_verifier'] = verifier
            signed = api.signed_request('POST', self.access_token_url,
                                        extra_oauth_parameters=extra)
            self._submit(signed, self._access_token_received)
            return True

    def _access_token_received(self, request):
        api = self.api
        generation = self._generation
        if request.error is not None:
            logger.warning("Access token call failed: %s", request.error)
            self._fail(request.error, ERROR_HAS_OCCURRED)
            return
        try:
            params = parse_token_response(request)
        except InvalidResponseError as e:
            self._fail(e, ERROR_HAS_OCCURRED)
            return

        self._store_access_token(params)
        api.credentials.set_request_token(None, None)
        self.user_id = params.get('uid')
        self.state = HandshakeState.ACCESS_TOKEN_OBTAINED
        api._set_authentication_state(AuthenticationState.AUTHENTICATED)
        logger.info("Received access token")
        self._schedule_refresh()
        api._notify(ACCESS_TOKEN_RECEIVED, {'oauth_token': params['oauth_token'],
                                            'uid': self.user_id})
        # an observer may have discarded the credentials it was handed
        if generation == self._generation:
            api._notify(OAUTH_CREDENTIALS_READY, {})

    def _store_access_token(self, params):
        store = self.api.credentials
        store.set_access_token(params['oauth_token'], params['oauth_token_secret'])
        if params.get('oauth_session_handle'):
            store.session_handle = params['oauth_session_handle']
        store.record_refresh()
        expires_in = params.get('oauth_expires_in')
        if expires_in and expires_in.isdigit() and int(expires_in) > 0:
            self._refresh_interval = int(expires_in)

    def _fail(self, error, notification):
        api = self.api
        api.credentials.set_request_token(None, None)
        self.state = HandshakeState.NO_TOKEN
        api._set_authentication_state(AuthenticationState.UNAUTHENTICATED)
        api._notify(notification, {'error': error})
        self.delegate.authentication_did_fail_with_error(error)

    # ---------------
    # Refresh
    # ---------------
    def set_token_refresh_interval(self, interval):
        """(Re)arm the refresh timer; ``None`` or ``0`` turns it off."""
        with self._lock:
            self._refresh_interval = interval or None
            self._schedule_refresh()

    @property
    def token_refresh_interval(self):
        return self._refresh_interval

    def start_refresh_timer(self):
        """Arm the refresh timer for an access token that is already stored."""
        with self._lock:
            self._schedule_refresh()

    def _schedule_refresh(self):
        # caller holds self._lock
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._refresh_interval and self.state == HandshakeState.ACCESS_TOKEN_OBTAINED:
            self._timer = threading.Timer(self._refresh_interval, self._refresh_timer_fired)
            self._timer.daemon = True
            self._timer.start()

    def _refresh_timer_fired(self):
        try:
            self.refresh_access_token()
        except ReferenceError:
            pass

    def refresh_access_token(self):
        """
        Exchange the current access token (and session handle) for a new one.
        Returns ``False`` when there is nothing to refresh or a refresh is
        already running.
        """
        with self._lock:
            if self.state != HandshakeState.ACCESS_TOKEN_OBTAINED or self.refresh_pending:
                return False
            api = self.api
            self.refresh_pending = True
            extra = {}
            if api.credentials.session_handle:
                extra['oauth_session_handle'] = api.credentials.session_handle
            signed = api.signed_request('POST', self.access_token_url,
                                        extra_oauth_parameters=extra)
            logger.debug("Refreshing access token")
            self._submit(signed, self._access_token_refreshed)
            return True

    def _access_token_refreshed(self, request):
        api = self.api
        self.refresh_pending = False
        if request.error is not None:
            if request.signature_rejected or getattr(request.error, 'status', None) == 401:
                logger.warning("Access token refresh rejected; discarding tokens")
                api.access_token_rejected(request.error)
            else:
                logger.warning("Access token refresh failed: %s", request.error)
                api._notify(ERROR_HAS_OCCURRED, {'error': request.error})
                self._schedule_refresh()
            return
        try:
            params = parse_token_response(request)
        except InvalidResponseError as e:
            api._notify(ERROR_HAS_OCCURRED, {'error': e})
            self._schedule_refresh()
            return

        self._store_access_token(params)
        self._schedule_refresh()
        api._notify(ACCESS_TOKEN_REFRESHED, {'oauth_token': params['oauth_token']})

    # ---------------
    # Plumbing
    # ---------------
    def _submit(self, signed, handler):
        # caller holds self._lock
        generation = self._generation

        def completion(request):
            with self._lock:
                if generation != self._generation:
                    logger.debug("Ignoring response from a discarded handshake")
                    return
                self._in_flight = None
                handler(request)

        request = AsyncRequest(signed, completion=completion)
        self._in_flight = request
        self.api.request_queue.submit(request)

    def reset(self):
        """
        Stop the timer and forget any handshake in flight; a response that
        arrives later is ignored.
        """
        with self._lock:
            self._generation += 1
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            request, self._in_flight = self._in_flight, None
            self.state = HandshakeState.NO_TOKEN
            self.refresh_pending = False
            self.oauth10a_mode_active = False
        if request is not None:
            api = self._api()
            if api is not None:
                api.request_queue.cancel(request)
            else:
                request.cancel()

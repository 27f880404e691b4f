"""
oauthbox.session.Session is responsible for holding OAuth authentication
info (app key/secret and one credential store per linked user). It knows how
to build API URLs and hands out one :class:`oauthbox.api.OAuthAPI` per user.

A Session object must be passed to an :class:`oauthbox.client.RestClient`
object upon initialization.

Credentials are never written to disk by this module; give the session a
:class:`CredentialsDelegate` to load, save and remove them.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from urllib.parse import quote, urlencode

from . import auth, credentials as creds
from .api import OAuthAPI
from .credentials import CredentialStore
from .oauth import SignatureMethod
from .request import RequestQueue
from .rest import RESTClient

logger = logging.getLogger(__name__)

UNKNOWN_USER_ID = 'unknown'


class CredentialsDelegate(object):
    """Persistence hook for linked users. Subclass and override all three."""

    def load_credentials(self):
        """Return a dictionary of user id to the dictionary saved for it."""
        return {}

    def save_credentials(self, user_id, credentials):
        pass

    def remove_credentials(self, user_id):
        pass


class SessionDelegate(object):

    def session_did_receive_authorization_failure(self, session, user_id):
        pass


class BaseSession(object):
    API_VERSION = 1

    API_HOST = "api.dropbox.com"
    WEB_HOST = "www.dropbox.com"
    API_CONTENT_HOST = "api-content.dropbox.com"

    ROOT_DROPBOX = "dropbox"
    ROOT_APP_FOLDER = "sandbox"

    def __init__(self, consumer_key, consumer_secret, root=ROOT_DROPBOX, locale=None):
        """Initialize a Session object.

        Args:

            - ``root``: Either 'dropbox' (the default) or 'sandbox' for app
                folder access.
            - ``locale``: A locale string ('en', 'pt_PT', etc.) [optional]
                The locale setting will be used to translate any user-facing error
                messages that the server generates.
        """
        assert root in [self.ROOT_DROPBOX, self.ROOT_APP_FOLDER], \
            "expected root of 'dropbox' or 'sandbox'"
        self.consumer_creds = creds.OAuthToken(consumer_key, consumer_secret)
        self.root = root
        self.locale = locale

    def build_path(self, target, params=None):
        """Build the path component for an API URL.

        This method urlencodes the parameters, adds them
        to the end of the target url, and puts a marker for the API
        version in front.

        Args:
            - ``target``: A target url (e.g. '/files') to build upon.
            - ``params``: A dictionary of parameters (name to value). [optional]

        Returns:
            - The path and parameters components of an API URL.
        """
        target_path = quote(target)

        params = params or {}
        params = params.copy()

        if self.locale:
            params['locale'] = self.locale

        if params:
            return "/%s%s?%s" % (self.API_VERSION, target_path, urlencode(params))
        else:
            return "/%s%s" % (self.API_VERSION, target_path)

    def build_url(self, host, target, params=None):
        """Build an API URL.

        This method adds scheme and hostname to the path
        returned from build_path.

        Args:
            - ``target``: A target url (e.g. '/files') to build upon.
            - ``params``: A dictionary of parameters (name to value). [optional]

        Returns:
            - The full API URL.
        """
        return "https://%s%s" % (host, self.build_path(target, params))


class Session(BaseSession):

    _shared_session = None

    def __init__(self, consumer_key, consumer_secret, root=BaseSession.ROOT_DROPBOX,
                 locale=None, credentials_delegate=None, delegate=None, transport=None,
                 callback_executor=None, signature_method=SignatureMethod.HMAC_SHA1,
                 max_concurrent_requests=8, refresh_interval=auth.DEFAULT_REFRESH_INTERVAL):
        """
        Parameters
            credentials_delegate
              A :class:`CredentialsDelegate`; saved users are loaded from it now.
            delegate
              A :class:`SessionDelegate` told about authorization failures.
            transport
              A :class:`oauthbox.rest.RESTClient`-like object.
            callback_executor
              The single-threaded executor every callback runs on. Shared by
              all APIs and clients of this session.
            max_concurrent_requests
              Cap for the queue the handshake calls run on.
            refresh_interval
              Seconds between access-token refreshes for every linked user,
              unless the server announced its own ``oauth_expires_in`` while
              linking. ``None`` disables refreshing.
        """
        super(Session, self).__init__(consumer_key, consumer_secret, root, locale)
        self.credentials_delegate = credentials_delegate or CredentialsDelegate()
        self.delegate = delegate or SessionDelegate()
        self.transport = transport if transport is not None else RESTClient
        self.signature_method = signature_method
        self.refresh_interval = refresh_interval
        self._owns_callback_executor = callback_executor is None
        self.callback_executor = callback_executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix='oauthbox-callbacks')
        self.request_queue = RequestQueue(max_concurrent_requests, self.transport,
                                          self.callback_executor)

        self._lock = threading.RLock()
        self._credential_stores = {}
        self._refresh_intervals = {}
        self._apis = {}
        self.anonymous_store = self._new_store()

        for user_id, saved in (self.credentials_delegate.load_credentials() or {}).items():
            store = self._new_store()
            store.update(saved)
            if store.is_linked():
                self._credential_stores[user_id] = store
        if self._credential_stores:
            logger.info("Loaded credentials for %d user(s)", len(self._credential_stores))

    @classmethod
    def shared_session(cls):
        return cls._shared_session

    @classmethod
    def set_shared_session(cls, session):
        cls._shared_session = session

    def _new_store(self):
        return CredentialStore({creds.CONSUMER_KEY: self.consumer_creds.key,
                                creds.CONSUMER_SECRET: self.consumer_creds.secret},
                               base_url=self.build_url(self.API_HOST, '/'),
                               authentication_url=self.build_url(self.API_HOST, '/'))

    def close(self):
        """Stop every refresh timer and handshake and release the worker threads."""
        with self._lock:
            apis = list(self._apis.values())
        for api in apis:
            api.authentication_method.reset()
        self.request_queue.close()
        if self._owns_callback_executor:
            self.callback_executor.shutdown(wait=False)

    # ---------------
    # Users
    # ---------------
    @property
    def user_ids(self):
        with self._lock:
            return list(self._credential_stores)

    def is_linked(self):
        """Return whether any user has an access token attached."""
        with self._lock:
            return bool(self._credential_stores)

    def credential_store_for_user_id(self, user_id):
        """The store of ``user_id``; ``None`` gives the anonymous store."""
        with self._lock:
            if user_id is None:
                return self.anonymous_store
            return self._credential_stores.get(user_id)

    def api_for_user_id(self, user_id):
        """
        The :class:`oauthbox.api.OAuthAPI` bound to the store of ``user_id``;
        ``None`` gives the one bound to the anonymous store.

        The API of a linked user keeps its access token fresh on a timer.
        """
        with self._lock:
            api = self._apis.get(user_id)
            if api is not None:
                return api
            store = self.credential_store_for_user_id(user_id)
            if store is None:
                raise KeyError("user %r is not linked" % (user_id,))
            api = OAuthAPI(store, store.base_url, store.authentication_url,
                           signature_method=self.signature_method,
                           request_queue=self.request_queue, transport=self.transport,
                           configuration=self._oauth_configuration(),
                           refresh_interval=self._refresh_intervals.get(user_id,
                                                                        self.refresh_interval))
            api.add_observer(self._observer_for(api, user_id))
            self._apis[user_id] = api
        if user_id is not None:
            api.authentication_method.start_refresh_timer()
        return api

    def _oauth_configuration(self):
        return {
            'request_token_url': self.build_url(self.API_HOST, '/oauth/request_token'),
            'authorize_url': self.build_url(self.WEB_HOST, '/oauth/authorize'),
            'access_token_url': self.build_url(self.API_HOST, '/oauth/access_token'),
        }

    def _observer_for(self, api, user_id):
        def observer(name, info):
            if name == auth.ACCESS_TOKEN_RECEIVED and user_id is None:
                self._link_anonymous(api, info.get('uid'))
            elif name == auth.ACCESS_TOKEN_RECEIVED:
                # a new handshake after a rejection links the user again
                with self._lock:
                    self._credential_stores[user_id] = api.credentials
                logger.info("Relinked user %s", user_id)
                self._save(user_id)
            elif name == auth.ACCESS_TOKEN_REFRESHED:
                self._save(user_id)
            elif name == auth.ACCESS_TOKEN_REJECTED:
                self._access_token_rejected(user_id)
        return observer

    def _access_token_rejected(self, user_id):
        if user_id is not None:
            with self._lock:
                store = self._credential_stores.pop(user_id, None)
            if store is not None:
                logger.warning("Access token of user %s was rejected; unlinking", user_id)
                self.credentials_delegate.remove_credentials(user_id)
        self.delegate.session_did_receive_authorization_failure(self, user_id)

    def link(self, delegate=None):
        """
        Start the OAuth handshake for a new user on the anonymous store.
        Returns the :class:`oauthbox.api.OAuthAPI` driving it; call its
        ``authentication_method.user_authorized()`` once the user approved.
        """
        api = self.api_for_user_id(None)
        if delegate is not None:
            api.authentication_method.delegate = delegate
        api.authenticate()
        return api

    def _link_anonymous(self, api, user_id):
        store = api.credentials
        user_id = str(user_id) if user_id is not None else UNKNOWN_USER_ID
        self.update_access_token(store.access_token, store.access_token_secret, user_id,
                                 session_handle=store.session_handle,
                                 refresh_date=store.refresh_date,
                                 refresh_interval=api.authentication_method.token_refresh_interval)
        # the anonymous store is ready for the next link
        api.discard_credentials()

    def update_access_token(self, token, secret, user_id, session_handle=None,
                            refresh_date=None, refresh_interval=None):
        """
        Attach an access token to ``user_id``, creating the user if needed.

        ``refresh_date`` is when the token was issued (now if omitted);
        ``refresh_interval`` overrides the session's refresh interval for
        this user.
        """
        with self._lock:
            store = self._credential_stores.get(user_id)
            api = self._apis.get(user_id)
            if store is None:
                # an API whose token was rejected keeps its store
                store = api.credentials if api is not None else self._new_store()
                self._credential_stores[user_id] = store
            store.set_access_token(token, secret)
            if session_handle:
                store.session_handle = session_handle
            store.record_refresh(refresh_date)
            if refresh_interval:
                self._refresh_intervals[user_id] = refresh_interval
        if api is not None:
            # drop any handshake in flight and pick up the new token
            method = api.authentication_method
            method.reset()
            if refresh_interval:
                method.set_token_refresh_interval(refresh_interval)
            api._set_authentication_state(auth.AuthenticationState.UNAUTHENTICATED)
            api.authenticate()
        else:
            self.api_for_user_id(user_id)
        logger.info("Linked user %s", user_id)
        self._save(user_id)

    def _save(self, user_id):
        store = self.credential_store_for_user_id(user_id)
        if store is not None and user_id is not None:
            self.credentials_delegate.save_credentials(user_id, store.dictionary())

    def unlink_user_id(self, user_id):
        with self._lock:
            store = self._credential_stores.pop(user_id, None)
            api = self._apis.pop(user_id, None)
            self._refresh_intervals.pop(user_id, None)
        if api is not None:
            api.discard_credentials()
        elif store is not None:
            store.discard()
        if store is not None:
            logger.info("Unlinked user %s", user_id)
            self.credentials_delegate.remove_credentials(user_id)

    def unlink_all(self):
        for user_id in self.user_ids:
            self.unlink_user_id(user_id)

import gc
import threading
import unittest

import mock

from oauthbox import auth
from oauthbox.api import OAuthAPI
from oauthbox.auth import AuthenticationDelegate, AuthenticationState, HandshakeState
from oauthbox.credentials import (ACCESS_TOKEN, ACCESS_TOKEN_SECRET, CONSUMER_KEY,
                                  CONSUMER_SECRET, SESSION_HANDLE)
from oauthbox.oauth import SignatureMethod, build_signature, signature_base_string
from oauthbox.rest import ErrorResponse, InvalidResponseError

from .helpers import WAIT, FakeTransport, parse_authorization_header, respond

API_BASE = 'https://api.example.com/1/'
REQUEST_TOKEN_PATH = '/1/oauth/request_token'
ACCESS_TOKEN_PATH = '/1/oauth/access_token'


def _delegate(callback_url=None, verifier=None):
    delegate = mock.Mock(spec=AuthenticationDelegate)
    delegate.callback_url_for_completed_user_authorization.return_value = callback_url
    delegate.automatically_request_authentication_from_url.return_value = True
    delegate.oauth_verifier_for_completed_user_authorization.return_value = verifier
    return delegate


class HandshakeTestCase(unittest.TestCase):
    def setUp(self):
        self.transport = FakeTransport()
        self.transport.route(REQUEST_TOKEN_PATH, respond(b'oauth_token=rt&oauth_token_secret=rs'))
        self.transport.route(ACCESS_TOKEN_PATH,
                             respond(b'oauth_token=at&oauth_token_secret=as&uid=42'))
        self.notes = []
        self.apis = []

    def tearDown(self):
        if self.transport.gate is not None:
            self.transport.gate.set()
        for api in self.apis:
            api.authentication_method.reset()
            api.request_queue.close()

    def make_api(self, access_token=None, **kwargs):
        d = {CONSUMER_KEY: 'ck', CONSUMER_SECRET: 'cs'}
        if access_token:
            d[ACCESS_TOKEN], d[ACCESS_TOKEN_SECRET] = access_token
        api = OAuthAPI(d, API_BASE, transport=self.transport, **kwargs)
        api.add_observer(lambda name, info: self.notes.append((name, info)))
        self.apis.append(api)
        return api

    def wait(self, api):
        self.assertTrue(api.request_queue.wait_until_all_requests_are_completed(WAIT))

    def names(self):
        return [name for name, _ in self.notes]

    def header(self, path, index=0):
        return self.transport.calls_to(path)[index].headers['Authorization']


class TestHandshake(HandshakeTestCase):
    def test_full_handshake(self):
        delegate = _delegate()
        api = self.make_api(delegate=delegate)
        method = api.authentication_method

        api.authenticate()
        self.assertEqual(api.authentication_state, AuthenticationState.AUTHENTICATING)
        self.wait(api)

        self.assertEqual(method.state, HandshakeState.REQUEST_TOKEN_OBTAINED)
        self.assertEqual(api.credentials.request_token, 'rt')
        self.assertNotIn('oauth_token="', self.header(REQUEST_TOKEN_PATH))
        delegate.automatically_request_authentication_from_url.assert_called_once_with(
            API_BASE + 'oauth/authorize?oauth_token=rt', None)

        self.assertTrue(method.user_authorized())
        self.wait(api)

        self.assertEqual(api.authentication_state, AuthenticationState.AUTHENTICATED)
        self.assertTrue(api.is_authenticated())
        self.assertEqual(method.state, HandshakeState.ACCESS_TOKEN_OBTAINED)
        self.assertEqual(api.credentials.access_token, 'at')
        self.assertEqual(api.credentials.access_token_secret, 'as')
        self.assertIsNone(api.credentials.request_token)
        self.assertEqual(api.credentials.signing_key, 'cs&as')
        self.assertEqual(method.user_id, '42')
        self.assertEqual(self.names(), [auth.REQUEST_TOKEN_RECEIVED,
                                        auth.ACCESS_TOKEN_RECEIVED,
                                        auth.OAUTH_CREDENTIALS_READY])

    def test_access_token_call_is_signed_with_request_token(self):
        api = self.make_api(delegate=_delegate())
        api.authenticate()
        self.wait(api)
        api.authentication_method.user_authorized()
        self.wait(api)

        params = parse_authorization_header(self.header(ACCESS_TOKEN_PATH))
        values = dict(params)
        self.assertEqual(values['oauth_token'], 'rt')
        base = signature_base_string('POST', API_BASE + 'oauth/access_token', params)
        self.assertEqual(build_signature(SignatureMethod.HMAC_SHA1, base, 'cs&rs'),
                         values['oauth_signature'])

    def test_callback_and_verifier(self):
        self.transport.route(REQUEST_TOKEN_PATH, respond(
            b'oauth_token=rt&oauth_token_secret=rs&oauth_callback_confirmed=true'))
        delegate = _delegate(callback_url='app://done', verifier='v1')
        api = self.make_api(delegate=delegate)

        api.authenticate()
        self.wait(api)
        self.assertIn('oauth_callback="app%3A%2F%2Fdone"', self.header(REQUEST_TOKEN_PATH))
        self.assertTrue(api.authentication_method.oauth10a_mode_active)
        url, callback = delegate.automatically_request_authentication_from_url.call_args[0]
        self.assertEqual(callback, 'app://done')
        self.assertIn('oauth_callback=app%3A%2F%2Fdone', url)

        api.authentication_method.user_authorized()
        self.wait(api)
        self.assertIn('oauth_verifier="v1"', self.header(ACCESS_TOKEN_PATH))

    def test_explicit_verifier(self):
        api = self.make_api(delegate=_delegate())
        api.authenticate()
        self.wait(api)
        api.authentication_method.user_authorized('v2')
        self.wait(api)
        self.assertIn('oauth_verifier="v2"', self.header(ACCESS_TOKEN_PATH))

    def test_request_token_failure(self):
        self.transport.route(REQUEST_TOKEN_PATH, respond({'error': 'down'}, status=500))
        delegate = _delegate()
        api = self.make_api(delegate=delegate)

        api.authenticate()
        self.wait(api)

        self.assertEqual(api.authentication_state, AuthenticationState.UNAUTHENTICATED)
        self.assertEqual(self.names(), [auth.REQUEST_TOKEN_REJECTED])
        error = delegate.authentication_did_fail_with_error.call_args[0][0]
        self.assertIsInstance(error, ErrorResponse)
        self.assertEqual(error.status, 500)

    def test_malformed_request_token_response(self):
        self.transport.route(REQUEST_TOKEN_PATH, respond(b'oauth_token=rt'))
        api = self.make_api(delegate=_delegate())

        api.authenticate()
        self.wait(api)

        self.assertEqual(api.authentication_state, AuthenticationState.UNAUTHENTICATED)
        name, info = self.notes[0]
        self.assertEqual(name, auth.REQUEST_TOKEN_REJECTED)
        self.assertIsInstance(info['error'], InvalidResponseError)
        self.assertIsNone(api.credentials.request_token)

    def test_access_token_failure(self):
        self.transport.route(ACCESS_TOKEN_PATH, respond({'error': 'nope'}, status=400))
        api = self.make_api(delegate=_delegate())
        api.authenticate()
        self.wait(api)
        api.authentication_method.user_authorized()
        self.wait(api)

        self.assertFalse(api.is_authenticated())
        self.assertIn(auth.ERROR_HAS_OCCURRED, self.names())
        self.assertEqual(api.authentication_method.state, HandshakeState.NO_TOKEN)

    def test_authenticate_ignored_while_in_progress(self):
        gate = self.transport.gate = threading.Event()
        api = self.make_api(delegate=_delegate())

        api.authenticate()
        api.authenticate()
        gate.set()
        self.wait(api)

        self.assertEqual(len(self.transport.calls_to(REQUEST_TOKEN_PATH)), 1)

    def test_user_authorized_without_request_token(self):
        api = self.make_api(delegate=_delegate())
        self.assertFalse(api.authentication_method.user_authorized())
        self.assertEqual(self.transport.calls, [])

    def test_stored_access_token(self):
        api = self.make_api(access_token=('at', 'as'))
        self.assertTrue(api.is_authenticated())

        api.authenticate()

        self.assertEqual(self.names(), [auth.OAUTH_CREDENTIALS_READY])
        self.assertEqual(self.transport.calls, [])

    def test_authorization_url(self):
        api = self.make_api()
        api.credentials.set_request_token('rt', 'rs')
        self.assertEqual(api.authentication_method.authorization_url('x://y'),
                         API_BASE + 'oauth/authorize?oauth_token=rt&oauth_callback=x%3A%2F%2Fy')

    def test_configured_endpoints(self):
        api = self.make_api(configuration={
            'request_token_url': 'https://auth.example.com/rt',
            'authorize_url': 'https://www.example.com/authorize',
            'access_token_url': 'https://auth.example.com/at'})
        method = api.authentication_method
        self.assertEqual(method.request_token_url, 'https://auth.example.com/rt')
        self.assertEqual(method.authorize_url, 'https://www.example.com/authorize')
        self.assertEqual(method.access_token_url, 'https://auth.example.com/at')


class TestDiscard(HandshakeTestCase):
    def test_discard_when_authenticated(self):
        api = self.make_api(access_token=('at', 'as'))
        api.discard_credentials()

        self.assertFalse(api.is_authenticated())
        self.assertIsNone(api.credentials.access_token)
        self.assertEqual(api.credentials.consumer_key, 'ck')
        self.assertEqual(api.authentication_method.state, HandshakeState.NO_TOKEN)

    def test_discard_mid_handshake(self):
        gate = self.transport.gate = threading.Event()
        api = self.make_api(delegate=_delegate())

        api.authenticate()
        self.assertTrue(self.transport.entered.wait(WAIT))
        api.discard_credentials()
        gate.set()
        self.wait(api)

        self.assertEqual(api.authentication_state, AuthenticationState.UNAUTHENTICATED)
        self.assertFalse(api.authentication_method.in_flight)
        self.assertIsNone(api.credentials.request_token)
        self.assertNotIn(auth.REQUEST_TOKEN_RECEIVED, self.names())

    def test_weak_reference_to_api(self):
        api = OAuthAPI({CONSUMER_KEY: 'ck', CONSUMER_SECRET: 'cs'}, API_BASE,
                       transport=self.transport)
        queue = api.request_queue
        method = api.authentication_method
        del api
        gc.collect()

        self.assertRaises(ReferenceError, getattr, method, 'api')
        method._refresh_timer_fired()
        queue.close()


class TestRefresh(HandshakeTestCase):
    def setUp(self):
        super(TestRefresh, self).setUp()
        self.transport.route(ACCESS_TOKEN_PATH, respond(
            b'oauth_token=at2&oauth_token_secret=as2&oauth_expires_in=3600'))

    def test_refresh(self):
        api = self.make_api(access_token=('at', 'as'))
        api.credentials.session_handle = 'h'
        method = api.authentication_method

        with mock.patch('oauthbox.auth.threading.Timer') as timer:
            self.assertTrue(method.refresh_access_token())
            self.wait(api)
            timer.assert_called_with(3600, method._refresh_timer_fired)

        header = self.header(ACCESS_TOKEN_PATH)
        self.assertIn('oauth_token="at"', header)
        self.assertIn('oauth_session_handle="h"', header)
        self.assertEqual(api.credentials.access_token, 'at2')
        self.assertEqual(api.credentials.signing_key, 'cs&as2')
        self.assertIsNotNone(api.credentials.refresh_date)
        self.assertEqual(method.token_refresh_interval, 3600)
        self.assertEqual(self.names(), [auth.ACCESS_TOKEN_REFRESHED])
        self.assertTrue(api.is_authenticated())

    def test_single_refresh_at_a_time(self):
        gate = self.transport.gate = threading.Event()
        api = self.make_api(access_token=('at', 'as'))
        method = api.authentication_method

        with mock.patch('oauthbox.auth.threading.Timer'):
            self.assertTrue(method.refresh_access_token())
            self.assertFalse(method.refresh_access_token())
            gate.set()
            self.wait(api)

        self.assertEqual(len(self.transport.calls_to(ACCESS_TOKEN_PATH)), 1)

    def test_refresh_without_token(self):
        api = self.make_api()
        self.assertFalse(api.authentication_method.refresh_access_token())

    def test_refresh_rejected(self):
        self.transport.route(ACCESS_TOKEN_PATH, respond({'error': 'Token expired'}, status=401))
        api = self.make_api(access_token=('at', 'as'), reauthenticate_on_rejection=False)

        api.authentication_method.refresh_access_token()
        self.wait(api)

        self.assertFalse(api.is_authenticated())
        self.assertIsNone(api.credentials.access_token)
        self.assertEqual(self.names(), [auth.ACCESS_TOKEN_REJECTED])

    def test_refresh_failure_reschedules(self):
        self.transport.route(ACCESS_TOKEN_PATH, respond({'error': 'busy'}, status=503))
        api = self.make_api(access_token=('at', 'as'), refresh_interval=60)

        with mock.patch('oauthbox.auth.threading.Timer') as timer:
            api.authentication_method.refresh_access_token()
            self.wait(api)
            timer.assert_called_with(60, api.authentication_method._refresh_timer_fired)

        self.assertTrue(api.is_authenticated())
        self.assertEqual(api.credentials.access_token, 'at')
        self.assertEqual(self.names(), [auth.ERROR_HAS_OCCURRED])

    def test_timer(self):
        api = self.make_api(access_token=('at', 'as'))
        method = api.authentication_method

        with mock.patch('oauthbox.auth.threading.Timer') as timer:
            method.set_token_refresh_interval(60)
            timer.assert_called_once_with(60, method._refresh_timer_fired)
            timer.return_value.start.assert_called_once_with()

            method.set_token_refresh_interval(None)
            timer.return_value.cancel.assert_called_once_with()
            self.assertEqual(timer.call_count, 1)


if __name__ == '__main__':
    unittest.main()

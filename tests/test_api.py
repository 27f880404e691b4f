import unittest

from oauthbox import auth
from oauthbox.auth import AuthenticationState
from oauthbox.rest import ErrorResponse, SignatureRejectedError

from .helpers import WAIT, Recorder, query, respond
from .test_auth import API_BASE, REQUEST_TOKEN_PATH, HandshakeTestCase, _delegate

REJECTED = respond({'error': 'Invalid signature.'}, status=401)


class TestPerformMethod(HandshakeTestCase):
    def test_signed_with_access_token(self):
        self.transport.route('/1/account/info', respond({'uid': 42}))
        api = self.make_api(access_token=('at', 'as'))
        done = Recorder()

        request = api.perform_method('account/info', {'locale': 'en'}, completion=done)

        self.assertTrue(done.wait())
        self.assertEqual(done.calls, [(request,)])
        self.assertEqual(request.result_json, {'uid': 42})
        call = self.transport.calls[0]
        self.assertEqual(call.url, API_BASE + 'account/info?locale=en')
        self.assertIn('oauth_token="at"', call.headers['Authorization'])

    def test_post_method(self):
        self.transport.route('/1/fileops/delete', respond({'path': '/a'}))
        api = self.make_api(access_token=('at', 'as'))
        done = Recorder()

        api.perform_post_method('fileops/delete', {'path': '/a'}, completion=done)

        self.assertTrue(done.wait())
        call = self.transport.calls[0]
        self.assertEqual(call.method, 'POST')
        self.assertEqual(call.body, b'path=%2Fa')

    def test_query_string_signing(self):
        self.transport.route('/1/account/info', respond({}))
        api = self.make_api(access_token=('at', 'as'), use_authorization_header=False)
        api.perform_method('account/info')
        self.wait(api)

        call = self.transport.calls[0]
        self.assertNotIn('Authorization', call.headers)
        self.assertIn('oauth_signature', query(call.url))

    def test_url_for_method(self):
        api = self.make_api()
        self.assertEqual(api.url_for_method('metadata/dropbox'), API_BASE + 'metadata/dropbox')
        self.assertEqual(api.url_for_method('https://other.example.com/x'),
                         'https://other.example.com/x')

    def test_named_credentials(self):
        api = self.make_api()
        api.set_credential('custom', 'v')
        self.assertEqual(api.credential_named('custom'), 'v')
        api.remove_credential_named('custom')
        self.assertIsNone(api.credential_named('custom'))

    def test_failing_observer(self):
        api = self.make_api(access_token=('at', 'as'))

        def broken(name, info):
            raise RuntimeError("broken")

        api.remove_observer(api._observers[0])
        api.add_observer(broken)
        api.add_observer(lambda name, info: self.notes.append((name, info)))

        api.authenticate()

        self.assertEqual(self.names(), [auth.OAUTH_CREDENTIALS_READY])


class TestRejection(HandshakeTestCase):
    def test_rejection_starts_one_handshake(self):
        self.transport.route('/1/account/info', REJECTED)
        api = self.make_api(access_token=('at', 'as'), delegate=_delegate())
        done = Recorder(expected=3)

        for _ in range(3):
            api.perform_method('account/info', completion=done)

        self.assertTrue(done.wait())
        self.wait(api)
        for (request,) in done.calls:
            self.assertIsInstance(request.error, SignatureRejectedError)
        self.assertEqual(len(self.transport.calls_to(REQUEST_TOKEN_PATH)), 1)
        self.assertEqual(self.names().count(auth.ACCESS_TOKEN_REJECTED), 1)
        self.assertIsNone(api.credentials.access_token)
        self.assertEqual(api.authentication_state, AuthenticationState.AUTHENTICATING)
        self.assertEqual(api.credentials.request_token, 'rt')

    def test_rejection_without_reauthentication(self):
        self.transport.route('/1/account/info', REJECTED)
        api = self.make_api(access_token=('at', 'as'), reauthenticate_on_rejection=False)
        done = Recorder()

        api.perform_method('account/info', completion=done)

        self.assertTrue(done.wait())
        self.wait(api)
        self.assertEqual(api.authentication_state, AuthenticationState.UNAUTHENTICATED)
        self.assertEqual(self.transport.calls_to(REQUEST_TOKEN_PATH), [])

    def test_other_errors_keep_tokens(self):
        self.transport.route('/1/account/info', respond({'error': 'Forbidden'}, status=403))
        api = self.make_api(access_token=('at', 'as'))
        done = Recorder()

        api.perform_method('account/info', completion=done)

        self.assertTrue(done.wait())
        (request,) = done.calls[0]
        self.assertIsInstance(request.error, ErrorResponse)
        self.assertFalse(request.signature_rejected)
        self.assertTrue(api.is_authenticated())


class TestDataForMethod(HandshakeTestCase):
    def test_returns_body(self):
        self.transport.route('/1/files/dropbox/a.txt', respond(b'contents'))
        api = self.make_api(access_token=('at', 'as'))
        self.assertEqual(api.data_for_method('files/dropbox/a.txt'), b'contents')

    def test_rejection_raises(self):
        self.transport.route('/1/files/dropbox/a.txt', REJECTED)
        api = self.make_api(access_token=('at', 'as'), reauthenticate_on_rejection=False)

        self.assertRaises(SignatureRejectedError, api.data_for_method, 'files/dropbox/a.txt')
        self.assertFalse(api.is_authenticated())
        self.assertEqual(self.names(), [auth.ACCESS_TOKEN_REJECTED])


if __name__ == '__main__':
    unittest.main()

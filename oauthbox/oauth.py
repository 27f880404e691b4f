"""
OAuth 1.0a request signing.

A :class:`URLRequest` collects the request-specific parameters of a call. Its
:meth:`URLRequest.signed` method combines them with the OAuth parameters of a
:class:`oauthbox.credentials.Credentials` snapshot, computes the signature and
returns an immutable :class:`SignedRequest` ready to hand to the transport.

Signature base strings are pure functions of (method, url, parameters); the
only sources of variation are the nonce and timestamp, which come in as
ordinary parameters.
"""

import base64
import collections
import hashlib
import hmac
from urllib.parse import parse_qsl, quote, unquote, urlsplit, urlunsplit

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding


class SignatureMethod(object):
    PLAINTEXT = 'PLAINTEXT'
    HMAC_SHA1 = 'HMAC-SHA1'
    RSA_SHA1 = 'RSA-SHA1'

    ALL = (PLAINTEXT, HMAC_SHA1, RSA_SHA1)


Parameter = collections.namedtuple('Parameter', ['name', 'value'])

SignedRequest = collections.namedtuple(
    'SignedRequest', ['method', 'target_url', 'url', 'headers', 'body', 'parameters', 'signature'])


def escape(value):
    """Percent-encode ``value`` with the RFC 3986 unreserved set left alone."""
    if value is None:
        value = ''
    if not isinstance(value, (str, bytes)):
        value = str(value)
    return quote(value, safe='~')


def unescape(value):
    return unquote(value)


def _encoded(param):
    return (escape(param.name), escape(param.value))


def sort_parameters(parameters):
    """Orders parameters by encoded name, then encoded value. Duplicates are kept."""
    return sorted(parameters, key=_encoded)


def normalize_parameters(parameters):
    return '&'.join('%s=%s' % _encoded(p) for p in sort_parameters(parameters))


def parameters_from_query(query):
    return [Parameter(k, v) for k, v in parse_qsl(query, keep_blank_values=True)]


def parameters_from_dict(params):
    if not params:
        return []
    if isinstance(params, dict):
        params = sorted(params.items())
    result = []
    for item in params:
        if isinstance(item, Parameter):
            result.append(item)
        else:
            name, value = item
            if isinstance(value, bool):
                value = 'true' if value else 'false'
            result.append(Parameter(name, str(value)))
    return result


def _split(url):
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        raise ValueError("not an absolute URL: %r" % (url,))
    return parts


def normalize_url(url):
    """The base string URI: scheme, host and path only."""
    parts = _split(url)
    scheme = parts.scheme.lower()
    host = parts.hostname or ''
    port = parts.port
    if port and not ((scheme == 'http' and port == 80) or (scheme == 'https' and port == 443)):
        host = '%s:%d' % (host, port)
    return urlunsplit((scheme, host, parts.path or '/', '', ''))


def signature_base_string(method, url, parameters):
    """
    Build the OAuth signature base string.

    Parameters already present in the query string of ``url`` are signed too;
    ``oauth_signature`` itself never is.
    """
    all_params = parameters_from_query(_split(url).query)
    all_params.extend(p for p in parameters if p.name != 'oauth_signature')
    return '&'.join([method.upper(),
                     escape(normalize_url(url)),
                     escape(normalize_parameters(all_params))])


def _load_private_key(key):
    if isinstance(key, str):
        key = key.encode('utf8')
    if isinstance(key, bytes):
        return serialization.load_pem_private_key(key, password=None)
    return key


def build_signature(signature_method, base_string, key):
    """
    Compute a signature.

    ``key`` is the signing key string for PLAINTEXT and HMAC-SHA1, and a PEM
    encoded (or already loaded) RSA private key for RSA-SHA1.
    """
    if signature_method == SignatureMethod.PLAINTEXT:
        return key
    if signature_method == SignatureMethod.HMAC_SHA1:
        digest = hmac.new(key.encode('utf8'), base_string.encode('utf8'), hashlib.sha1).digest()
        return base64.b64encode(digest).decode('ascii')
    if signature_method == SignatureMethod.RSA_SHA1:
        private_key = _load_private_key(key)
        signature = private_key.sign(base_string.encode('utf8'), padding.PKCS1v15(), hashes.SHA1())
        return base64.b64encode(signature).decode('ascii')
    raise ValueError("unknown signature method %r" % (signature_method,))


def authorization_header(parameters, realm=None):
    oauth_params = sorted((p for p in parameters if p.name.startswith('oauth_')), key=_encoded)
    pairs = ['%s="%s"' % _encoded(p) for p in oauth_params]
    if realm is not None:
        pairs.insert(0, 'realm="%s"' % realm)
    return 'OAuth ' + ', '.join(pairs)


def _with_query(url, parameters):
    parts = _split(url)
    query = '&'.join('%s=%s' % _encoded(p) for p in parameters)
    if parts.query and query:
        query = parts.query + '&' + query
    elif parts.query:
        query = parts.query
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


class URLRequest(object):
    """
    An unsigned request: a target URL, an HTTP method and the parameters
    specific to the call. Sign it with :meth:`signed` every time the
    parameters change; a :class:`SignedRequest` is never modified.
    """

    def __init__(self, url, parameters=None, http_method='GET'):
        _split(url)
        self.url = url
        self.http_method = http_method.upper()
        self.parameters = parameters_from_dict(parameters)

    def add_parameters(self, parameters):
        self.parameters.extend(parameters_from_dict(parameters))

    def signed(self, credentials, signature_method=SignatureMethod.HMAC_SHA1,
               use_header=True, token=None, extra_oauth_parameters=None, headers=None):
        """
        Sign this request with one credential snapshot.

        Parameters
            credentials
              A :class:`oauthbox.credentials.Credentials` snapshot.
            signature_method
              One of the :class:`SignatureMethod` constants.
            use_header
              Put the OAuth parameters in an ``Authorization`` header (the
              default) rather than the query string or form body.
            token
              An explicit ``(key, secret)`` token pair to sign with instead of
              the snapshot's own.
            extra_oauth_parameters
              Additional ``oauth_*`` parameters such as ``oauth_verifier``.

        Returns
            A :class:`SignedRequest`.
        """
        oauth_params = credentials.oauth_parameters(signature_method, token=token)
        oauth_params.extend(parameters_from_dict(extra_oauth_parameters))

        base_string = signature_base_string(self.http_method, self.url,
                                            self.parameters + oauth_params)
        if signature_method == SignatureMethod.RSA_SHA1:
            key = credentials.rsa_private_key
        else:
            key = credentials.signing_key(token=token)
        signature = build_signature(signature_method, base_string, key)
        oauth_params.append(Parameter('oauth_signature', signature))

        headers = dict(headers or {})
        body = None
        if use_header:
            headers['Authorization'] = authorization_header(oauth_params)
            payload = list(self.parameters)
        else:
            payload = self.parameters + oauth_params

        if self.http_method == 'POST':
            url = self.url
            if payload:
                body = '&'.join('%s=%s' % _encoded(p) for p in payload).encode('ascii')
                headers['Content-Type'] = 'application/x-www-form-urlencoded'
        else:
            url = _with_query(self.url, payload)

        return SignedRequest(self.http_method, self.url, url, headers, body,
                             tuple(self.parameters + oauth_params), signature)


def verify_signature(signed_request, credentials, public_key=None):
    """
    Recompute the signature of ``signed_request`` and compare it with the one
    it carries. RSA-SHA1 requests are checked against ``public_key`` (PEM or
    loaded), falling back to the public half of the snapshot's private key.
    """
    params = [p for p in signed_request.parameters if p.name != 'oauth_signature']
    method = dict((p.name, p.value) for p in params).get('oauth_signature_method')
    token = None
    token_key = dict((p.name, p.value) for p in params).get('oauth_token')
    if token_key is not None:
        token = (token_key, credentials.token_secret_for(token_key))

    base_string = signature_base_string(signed_request.method, signed_request.target_url, params)

    if method == SignatureMethod.RSA_SHA1:
        if public_key is None:
            public_key = _load_private_key(credentials.rsa_private_key).public_key()
        elif isinstance(public_key, (str, bytes)):
            if isinstance(public_key, str):
                public_key = public_key.encode('utf8')
            public_key = serialization.load_pem_public_key(public_key)
        try:
            public_key.verify(base64.b64decode(signed_request.signature),
                              base_string.encode('utf8'), padding.PKCS1v15(), hashes.SHA1())
        except InvalidSignature:
            return False
        return True

    expected = build_signature(method, base_string, credentials.signing_key(token=token))
    return hmac.compare_digest(expected, signed_request.signature)

"""
A simple REST request abstraction layer that is used by the
``oauthbox.request`` and ``oauthbox.api`` modules. You shouldn't need to use this.
"""

import io
import json
import logging
import re
import socket
from urllib.parse import parse_qs

import urllib3

SDK_VERSION = "1.0.0"

logger = logging.getLogger(__name__)


class RESTResponse(io.IOBase):
    """
    Responses to requests can come in the form of ``RESTResponse``. These are
    thin wrappers around the socket file descriptor.
    :meth:`read()`, :meth:`close()` and :meth:`abort()` are implemented.
    It is important to call :meth:`close()` to return the connection
    back to the connection pool to be reused.
    """

    def __init__(self, resp):
        # arg: A urllib3.HTTPResponse object
        self.urllib3_response = resp
        self.status = resp.status
        self.version = resp.version
        self.reason = resp.reason
        self.is_closed = False

    def __del__(self):
        # Attempt to close when ref-count goes to zero.
        self.close()

    def __exit__(self, typ, value, traceback):
        # Allow this to be used in "with" blocks.
        self.close()

    # -----------------
    # Important methods
    # -----------------
    def read(self, amt=None):
        """
        Read data off the underlying socket.

        Parameters
            amt
              Amount of data to read. Defaults to ``None``, indicating to read
              everything.

        Returns
              Data off the socket. If ``amt`` is not ``None``, at most ``amt`` bytes are returned.
              An empty string when the socket has no data.

        Raises
            ``ValueError``
              If the ``RESTResponse`` has already been closed.
        """
        if self.is_closed:
            raise ValueError('Response already closed')
        return self.urllib3_response.read(amt)

    BLOCKSIZE = 4 * 1024 * 1024 # 4MB at a time just because

    def close(self):
        """Closes the underlying socket."""

        # Double closing is harmless
        if self.is_closed:
            return

        # Read any remaining data off the socket before releasing the
        # connection. Buffer it just in case it's huge
        while self.read(RESTResponse.BLOCKSIZE):
            pass

        # Mark as closed and release the connection (exactly once)
        self.is_closed = True
        self.urllib3_response.release_conn()

    def abort(self):
        """Drops the connection without draining it. Used for cancellation."""
        if self.is_closed:
            return
        self.is_closed = True
        self.urllib3_response.close()

    @property
    def closed(self):
        return self.is_closed

    def getheaders(self):
        """Returns a dictionary of the response headers."""
        return dict(self.urllib3_response.headers)

    def getheader(self, name, default=None):
        """Returns a given response header."""
        return self.urllib3_response.headers.get(name, default)


def json_loadb(data):
    if isinstance(data, bytes):
        data = data.decode('utf8')
    return json.loads(data)


class RESTClientObject(object):
    def __init__(self, max_reusable_connections=8, mock_urlopen=None):
        """
        Parameters
            max_reusable_connections
                max connections to keep alive in the pool
            mock_urlopen
                an optional alternate urlopen function for testing

        This class uses ``urllib3`` to maintain a pool of connections. We attempt
        to grab an existing idle connection from the pool, otherwise we spin
        up a new connection. Once a connection is closed, it is reinserted
        into the pool (unless the pool is full).

        Certificates are validated against the system trust store and
        hostname verification is provided by urllib3.
        """
        self.mock_urlopen = mock_urlopen
        self.pool_manager = urllib3.PoolManager(
            num_pools=4, # only a handful of hosts
            maxsize=max_reusable_connections,
            block=False,
            timeout=60.0,
            cert_reqs='CERT_REQUIRED',
        )

    def request(self, method, url, body=None, headers=None):
        """Performs a REST request. See :meth:`RESTClient.request()` for detailed description."""

        headers = dict(headers or {})
        headers['User-Agent'] = 'OAuthBoxPythonSDK/' + SDK_VERSION

        # Reject any headers containing newlines; the error from the server isn't pretty.
        for key, value in headers.items():
            if isinstance(value, str) and '\n' in value:
                raise ValueError("headers should not contain newlines (%s: %s)" %
                                 (key, value))

        logger.debug("%s %s", method, url.split('?', 1)[0])
        try:
            # Grab a connection from the pool to make the request.
            # We return it to the pool when caller close() the response
            urlopen = self.mock_urlopen if self.mock_urlopen else self.pool_manager.urlopen
            r = urlopen(
                method=method,
                url=url,
                body=body,
                headers=headers,
                preload_content=False
            )
            r = RESTResponse(r) # wrap up the urllib3 response before proceeding
        except socket.error as e:
            raise RESTSocketError(url, e)
        except urllib3.exceptions.SSLError as e:
            raise RESTSocketError(url, "SSL certificate error: %s" % e)
        except urllib3.exceptions.HTTPError as e:
            raise RESTSocketError(url, e)

        if not 200 <= r.status < 300:
            raise error_for_response(r, r.read())

        return r


class RESTClient(object):
    """
    A class with all static methods to perform signed REST requests that is
    used internally by the request queue. It provides just enough gear to make
    requests and stream their responses.
    """

    IMPL = RESTClientObject()

    @classmethod
    def request(cls, *n, **kw):
        """Perform a REST request.

        Parameters
            method
              An HTTP method (e.g. ``'GET'`` or ``'POST'``).
            url
              The URL to make a request to.
            body
              The body of the request. Typically, this value will be bytes.
              It may also be a file-like object.
            headers
              A dictionary of headers to send with the request.

        Returns
              A :class:`RESTResponse`. Read it incrementally and ``close()`` it
              to return the connection to the pool.

        Raises
            :class:`ErrorResponse`
              The returned HTTP status is not 2xx.
            :class:`SignatureRejectedError`
              The server refused the OAuth credentials of the request.
            :class:`RESTSocketError`
              A ``socket.error`` was raised while contacting the server.
        """
        return cls.IMPL.request(*n, **kw)


class RESTSocketError(socket.error):
    """A light wrapper for ``socket.error`` that adds some more information."""

    def __init__(self, host, e):
        msg = "Error connecting to \"%s\": %s" % (host, str(e))
        socket.error.__init__(self, msg)
        self.user_info = {}


class ErrorResponse(Exception):
    """
    Raised by :meth:`RESTClient.request()` for requests that
    return a non-2xx HTTP response.

    Most errors that the server returns will have an error field that is unpacked and
    placed on the ErrorResponse exception. In some situations, a user_error field
    will also come back. Messages under user_error are worth showing to an end-user
    of your app, while other errors are likely only useful for you as the developer.

    ``user_info`` is filled in by the async layer with the context of the call
    that failed (for example the target path).
    """

    def __init__(self, http_resp, body):
        """
        Parameters
            http_resp
                      The :class:`RESTResponse` which errored
            body
                      Body of the :class:`RESTResponse`.
                      The reason we can't simply call ``http_resp.read()`` to
                      get the body, is that ``read()`` is not idempotent.
                      Since it can't be called more than once,
                      we have to pass the string body in separately
        """
        self.status = http_resp.status
        self.reason = http_resp.reason
        self.body = body
        self.headers = http_resp.getheaders()
        self.user_info = {}
        http_resp.close() # won't need this connection anymore

        try:
            self.body = json_loadb(self.body)
        except ValueError:
            self.error_msg = None
            self.user_error_msg = None
        else:
            if isinstance(self.body, dict):
                self.error_msg = self.body.get('error')
                self.user_error_msg = self.body.get('user_error')
            else:
                self.error_msg = None
                self.user_error_msg = None

    def __str__(self):
        if self.user_error_msg and self.user_error_msg != self.error_msg:
            # one is translated and the other is English
            msg = "%r (%r)" % (self.user_error_msg, self.error_msg)
        elif self.error_msg:
            msg = repr(self.error_msg)
        elif not self.body:
            msg = repr(self.reason)
        else:
            msg = "Error parsing response body or headers: " +\
                  "Body - %.100r Headers - %r" % (self.body, self.headers)

        return "[%d] %s" % (self.status, msg)


class SignatureRejectedError(ErrorResponse):
    """The server refused the OAuth signature or token of the request."""


class InvalidResponseError(ErrorResponse):
    """
    The server answered with a 2xx status but the body was not JSON, or not
    JSON of the shape the call expects.
    """


_OAUTH_ERROR_PATTERN = re.compile(r'oauth|token|signature|nonce|timestamp|consumer', re.I)

def is_oauth_error(status, headers, body):
    """Whether a 401/403 response is about the OAuth credentials of the request."""
    if status not in (401, 403):
        return False
    for name, value in (headers or {}).items():
        if name.lower() == 'www-authenticate' and value.lower().startswith('oauth'):
            return True
    if isinstance(body, bytes):
        body = body.decode('utf8', 'replace')
    if isinstance(body, str):
        if 'oauth_problem' in parse_qs(body):
            return True
        try:
            body = json.loads(body)
        except ValueError:
            return False
    if isinstance(body, dict):
        if 'oauth_problem' in body:
            return True
        message = body.get('error')
        return isinstance(message, str) and bool(_OAUTH_ERROR_PATTERN.search(message))
    return False


def error_for_response(r, body):
    """Builds the most specific :class:`ErrorResponse` for a failed response."""
    if is_oauth_error(r.status, r.getheaders(), body):
        logger.warning("Server rejected OAuth credentials (HTTP %d)", r.status)
        return SignatureRejectedError(r, body)
    return ErrorResponse(r, body)


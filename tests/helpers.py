import io
import json
import threading
from collections import namedtuple
from urllib.parse import parse_qsl, urlsplit

from oauthbox.oauth import Parameter, unescape
from oauthbox.rest import error_for_response

Call = namedtuple('Call', ['method', 'url', 'headers', 'body'])

WAIT = 5


class FakeResponse(object):
    """Stands in for :class:`oauthbox.rest.RESTResponse`."""

    def __init__(self, body=b'', status=200, headers=None, reason='OK'):
        if isinstance(body, (dict, list)):
            body = json.dumps(body).encode('utf8')
        self.status = status
        self.reason = reason
        self.headers = dict(headers or {})
        self._body = io.BytesIO(body)
        self.is_closed = False
        self.aborted = False

    def read(self, amt=None):
        return self._body.read(amt)

    def close(self):
        self.is_closed = True

    def abort(self):
        self.aborted = True
        self.is_closed = True

    def getheaders(self):
        return dict(self.headers)

    def getheader(self, name, default=None):
        for k, v in self.headers.items():
            if k.lower() == name.lower():
                return v
        return default


def respond(body=b'', status=200, headers=None):
    """A route handler answering every call with a fresh :class:`FakeResponse`."""
    def handler(call):
        return FakeResponse(body, status, headers)
    return handler


class FakeTransport(object):
    """
    Routes requests by URL path. Set ``gate`` to a ``threading.Event`` to hold
    every request inside the transport until it is set.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []
        self.gate = None
        self.entered = threading.Event()
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def route(self, path, handler):
        self.routes[path] = handler

    def calls_to(self, path):
        with self._lock:
            return [c for c in self.calls if urlsplit(c.url).path == path]

    def request(self, method, url, body=None, headers=None):
        if hasattr(body, 'read'):
            body = body.read()
        call = Call(method, url, dict(headers or {}), body)
        with self._lock:
            self.calls.append(call)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.entered.set()
        try:
            if self.gate is not None:
                self.gate.wait(WAIT)
            handler = self.routes.get(urlsplit(url).path)
            if handler is None:
                r = FakeResponse({'error': 'not found'}, 404, reason='Not Found')
            else:
                r = handler(call)
        finally:
            with self._lock:
                self.in_flight -= 1
        if not 200 <= r.status < 300:
            raise error_for_response(r, r.read())
        return r


def form(body):
    if isinstance(body, bytes):
        body = body.decode('ascii')
    return dict(parse_qsl(body or ''))


def query(url):
    return dict(parse_qsl(urlsplit(url).query))


class Recorder(object):
    """A callable that records its calls and can be waited on."""

    def __init__(self, expected=1):
        self.calls = []
        self.threads = []
        self._expected = expected
        self._done = threading.Event()
        self._lock = threading.Lock()

    def __call__(self, *args):
        with self._lock:
            self.calls.append(args)
            self.threads.append(threading.current_thread().ident)
            if len(self.calls) >= self._expected:
                self._done.set()

    def wait(self, timeout=WAIT):
        return self._done.wait(timeout)


def parse_authorization_header(header):
    """The OAuth parameters of an ``Authorization`` header; ``realm`` is dropped."""
    assert header.startswith('OAuth '), "not an OAuth Authorization header"
    params = []
    for pair in header[len('OAuth '):].split(','):
        name, _, value = pair.strip().partition('=')
        if name == 'realm':
            continue
        params.append(Parameter(unescape(name), unescape(value.strip('"'))))
    return params

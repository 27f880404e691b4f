"""
Asynchronous signed requests.

An :class:`AsyncRequest` downloads a URL either into a file you give it the
name of, or into memory. A :class:`RequestQueue` runs requests on a bounded
pool of worker threads and delivers every callback on one callback thread, so
callers never need their own locking around UI updates.

Cancelling a request guarantees that none of its callbacks start after
:meth:`AsyncRequest.cancel` returns ``True``.
"""

import collections
import io
import json
import logging
import os
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor

import urllib3

from .rest import (ErrorResponse, InvalidResponseError, RESTClient, RESTSocketError,
                   SignatureRejectedError, json_loadb)

logger = logging.getLogger(__name__)


class ProgressReader(io.RawIOBase):
    """A readable file wrapper that reports the fraction of bytes read so far."""

    def __init__(self, f, length, callback):
        self._f = f
        self._length = length
        self._read = 0
        self._callback = callback

    def readable(self):
        return True

    def read(self, amt=-1):
        data = self._f.read(amt)
        if data:
            self._read += len(data)
            if self._length:
                self._callback(min(1.0, float(self._read) / self._length))
        return data

    def __len__(self):
        return self._length


class AsyncRequest(object):
    """
    One cancellable unit of signed network I/O.

    The completion callback receives the request itself; ``request.error`` is
    ``None`` on success. Progress callbacks receive ``(request, fraction)``.
    """

    PENDING = 'pending'
    EXECUTING = 'executing'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'

    TERMINAL_STATES = (COMPLETED, FAILED, CANCELLED)

    BLOCKSIZE = 64 * 1024

    def __init__(self, signed_request, completion=None, result_filename=None,
                 source_filename=None, user_info=None, key=None,
                 upload_progress=None, download_progress=None):
        """
        Parameters
            signed_request
              A :class:`oauthbox.oauth.SignedRequest`.
            completion
              Called exactly once with this request unless it is cancelled.
            result_filename
              Write the response body to this path instead of memory.
            source_filename
              Upload the contents of this file as the request body.
            user_info
              A dictionary copied onto any error (for example the path).
            key
              A hashable used by :meth:`RequestQueue.cancel_requests_for_key`.
            upload_progress, download_progress
              Optional progress callbacks.
        """
        self.request = signed_request
        self.completion = completion
        self.result_filename = result_filename
        self.source_filename = source_filename
        self.user_info = dict(user_info or {})
        self.key = key
        self.upload_progress_callback = upload_progress
        self.download_progress_callback = download_progress

        self.status_code = None
        self.response_headers = {}
        self.result_data = None
        self.error = None
        self.upload_progress = 0.0
        self.download_progress = 0.0

        self._state = self.PENDING
        self._lock = threading.RLock()
        self._response = None
        self._json = None

    def __repr__(self):
        return "<AsyncRequest %s %s (%s)>" % (self.request.method,
                                              self.request.target_url, self._state)

    # ---------------
    # State
    # ---------------
    @property
    def state(self):
        return self._state

    @property
    def cancelled(self):
        return self._state == self.CANCELLED

    def cancel(self):
        """
        Cancel the request. No callback starts after this returns ``True``;
        ``False`` means the request had already finished (or been cancelled).
        """
        with self._lock:
            if self._state in self.TERMINAL_STATES:
                return False
            self._state = self.CANCELLED
            response = self._response
        logger.debug("Cancelled %r", self)
        if response is not None:
            try:
                response.abort()
            except Exception:
                # the worker may be reading from it at the same time
                logger.debug("Abort of in-flight response failed", exc_info=True)
        return True

    def _start(self):
        with self._lock:
            if self._state != self.PENDING:
                return False
            self._state = self.EXECUTING
            return True

    # ---------------
    # Worker side
    # ---------------
    def execute(self, transport, post):
        """
        Perform the I/O on the calling (worker) thread.

        ``post(fn, *args)`` schedules progress notifications on the callback
        context. Every exception from the transport ends up in ``self.error``.
        """
        if self.cancelled:
            return
        source = None
        try:
            body = self.request.body
            headers = dict(self.request.headers)
            if self.source_filename is not None:
                length = os.path.getsize(self.source_filename)
                source = open(self.source_filename, 'rb')
                body = ProgressReader(source, length,
                                      lambda fraction: post(self._report_upload, fraction))
                headers['Content-Length'] = str(length)
            response = transport.request(self.request.method, self.request.url,
                                         body=body, headers=headers)
            with self._lock:
                if self.cancelled:
                    response.abort()
                    return
                self._response = response
            self.status_code = response.status
            self.response_headers = response.getheaders()
            self._read_body(response, post)
        except (ErrorResponse, RESTSocketError) as e:
            e.user_info.update(self.user_info)
            self.error = e
            self.status_code = getattr(e, 'status', None)
        except (IOError, OSError, ValueError, urllib3.exceptions.HTTPError) as e:
            if not self.cancelled:
                logger.warning("%r failed: %s", self, e)
                error = RESTSocketError(self.request.target_url, e)
                error.user_info.update(self.user_info)
                self.error = error
        finally:
            if source is not None:
                source.close()
            self._response = None

    def _read_body(self, response, post):
        total = response.getheader('Content-Length')
        total = int(total) if total and total.isdigit() else None
        received = 0
        sink = None
        temp_path = None
        try:
            if self.result_filename is not None:
                directory = os.path.dirname(os.path.abspath(self.result_filename))
                fd, temp_path = tempfile.mkstemp(dir=directory, suffix='.part')
                sink = os.fdopen(fd, 'wb')
            else:
                sink = io.BytesIO()
            while True:
                if self.cancelled:
                    return
                chunk = response.read(self.BLOCKSIZE)
                if not chunk:
                    break
                sink.write(chunk)
                received += len(chunk)
                if total:
                    post(self._report_download, min(1.0, float(received) / total))
            if self.result_filename is None:
                self.result_data = sink.getvalue()
            else:
                sink.close()
                os.replace(temp_path, self.result_filename)
                temp_path = None
            response.close()
        finally:
            if sink is not None and not sink.closed:
                sink.close()
            if temp_path is not None and os.path.exists(temp_path):
                os.remove(temp_path)

    # ---------------
    # Callback side
    # ---------------
    def _report_upload(self, fraction):
        with self._lock:
            if self._state != self.EXECUTING:
                return
            self.upload_progress = fraction
            if self.upload_progress_callback is not None:
                self._invoke(self.upload_progress_callback, self, fraction)

    def _report_download(self, fraction):
        with self._lock:
            if self._state != self.EXECUTING:
                return
            self.download_progress = fraction
            if self.download_progress_callback is not None:
                self._invoke(self.download_progress_callback, self, fraction)

    def _deliver(self):
        with self._lock:
            if self._state != self.EXECUTING:
                return False
            self._state = self.FAILED if self.error is not None else self.COMPLETED
            if self.completion is not None:
                self._invoke(self.completion, self)
            return True

    def _invoke(self, fn, *args):
        try:
            fn(*args)
        except Exception:
            logger.exception("Callback for %r raised", self)

    # ---------------
    # Results
    # ---------------
    @property
    def result_string(self):
        if self.result_data is None:
            return None
        return self.result_data.decode('utf8', 'replace')

    @property
    def result_json(self):
        """The body parsed as JSON, or ``None`` when it is not JSON."""
        if self._json is None and self.result_data is not None:
            try:
                self._json = json_loadb(self.result_data)
            except ValueError:
                return None
        return self._json

    @property
    def x_dropbox_metadata(self):
        for header, value in self.response_headers.items():
            if header.lower() == 'x-dropbox-metadata':
                try:
                    return json.loads(value)
                except ValueError:
                    return None
        return None

    def parse_response_as_type(self, cls):
        """
        Return the JSON body if it is an instance of ``cls``. Otherwise set
        ``self.error`` to an :class:`oauthbox.rest.InvalidResponseError` and
        return ``None``.
        """
        if self.error is not None:
            return None
        result = self.result_json
        if not isinstance(result, cls):
            self.error = self.invalid_response("expected a JSON %s" % cls.__name__)
            return None
        return result

    def invalid_response(self, reason):
        error = InvalidResponseError(_ResponseStub(self, reason), self.result_data)
        error.user_info.update(self.user_info)
        return error

    @property
    def signature_rejected(self):
        return isinstance(self.error, SignatureRejectedError)


class _ResponseStub(object):
    # stands in for the already-closed RESTResponse when building errors late
    def __init__(self, request, reason):
        self.status = request.status_code
        self.reason = reason
        self._headers = request.response_headers

    def getheaders(self):
        return self._headers

    def close(self):
        pass


class RequestQueue(object):
    """
    Runs :class:`AsyncRequest` objects with at most ``max_concurrent_requests``
    executing at once. Waiting requests start in submission order.
    """

    def __init__(self, max_concurrent_requests=8, transport=None, callback_executor=None):
        """
        Parameters
            max_concurrent_requests
              The number of requests allowed to execute at the same time.
            transport
              A :class:`oauthbox.rest.RESTClient`-like object. [optional]
            callback_executor
              A ``concurrent.futures.Executor`` whose single thread every
              callback runs on. A private one is created when omitted.
        """
        if max_concurrent_requests < 1:
            raise ValueError("max_concurrent_requests must be at least 1")
        self.transport = transport if transport is not None else RESTClient
        self._owns_callback_executor = callback_executor is None
        self.callback_executor = callback_executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix='oauthbox-callbacks')
        self._max = max_concurrent_requests
        self._executor = self._new_executor()
        self._cond = threading.Condition()
        self._pending = collections.deque()
        self._tracked = set()
        self._executing = 0

    def _new_executor(self):
        return ThreadPoolExecutor(max_workers=self._max, thread_name_prefix='oauthbox-io')

    @property
    def max_concurrent_requests(self):
        return self._max

    @max_concurrent_requests.setter
    def max_concurrent_requests(self, value):
        if value < 1:
            raise ValueError("max_concurrent_requests must be at least 1")
        with self._cond:
            if value == self._max:
                return
            old, self._max = self._executor, value
            self._executor = self._new_executor()
            self._dispatch()
        # running workers finish on the old pool
        old.shutdown(wait=False)

    @property
    def executing_count(self):
        with self._cond:
            return self._executing

    @property
    def requests(self):
        with self._cond:
            return list(self._tracked)

    @property
    def active(self):
        with self._cond:
            return bool(self._tracked)

    def submit(self, request):
        with self._cond:
            self._tracked.add(request)
            self._pending.append(request)
            self._dispatch()
        return request

    def _dispatch(self):
        # caller holds self._cond
        while self._pending and self._executing < self._max:
            request = self._pending.popleft()
            if not request._start():
                self._tracked.discard(request)
                continue
            self._executing += 1
            self._executor.submit(self._run, request)
        if not self._tracked:
            self._cond.notify_all()

    def _post(self, fn, *args):
        self.callback_executor.submit(fn, *args)

    def _run(self, request):
        try:
            request.execute(self.transport, self._post)
            if not request.cancelled:
                # the slot stays taken until delivery so EXECUTING never exceeds the cap
                self.callback_executor.submit(request._deliver).result()
        except Exception:
            logger.exception("Unexpected failure running %r", request)
        finally:
            with self._cond:
                self._executing -= 1
                self._tracked.discard(request)
                self._dispatch()
                self._cond.notify_all()

    def cancel(self, request):
        cancelled = request.cancel()
        with self._cond:
            self._forget(request)
        return cancelled

    def _forget(self, request):
        # caller holds self._cond
        try:
            self._pending.remove(request)
        except ValueError:
            pass
        # an executing request keeps its slot until the worker notices
        self._tracked.discard(request)
        if not self._tracked:
            self._cond.notify_all()

    def cancel_all_requests(self):
        """Cancel every waiting and executing request without any callback."""
        with self._cond:
            requests = list(self._tracked)
        for request in requests:
            self.cancel(request)
        return len(requests)

    def cancel_requests_for_key(self, key):
        """Cancel only the tracked requests whose ``key`` equals ``key``."""
        with self._cond:
            requests = [r for r in self._tracked if r.key == key]
        for request in requests:
            self.cancel(request)
        return len(requests)

    def wait_until_all_requests_are_completed(self, timeout=None):
        """
        Block until no request is tracked. Must not be called from a callback;
        the callback thread is needed to finish the requests being waited on.
        """
        with self._cond:
            return self._cond.wait_for(lambda: not self._tracked, timeout)

    def close(self):
        self.cancel_all_requests()
        self._executor.shutdown(wait=False)
        if self._owns_callback_executor:
            self.callback_executor.shutdown(wait=False)

import logging
import posixpath
import re

from .metadata import AccountInfo, DeltaEntry, Metadata
from .request import RequestQueue
from .rest import ErrorResponse

logger = logging.getLogger(__name__)


def format_path(path):
    """Normalize path for use with the Dropbox API.

    This function turns multiple adjacent slashes into single
    slashes, then ensures that there's a leading slash but
    not a trailing slash.
    """
    if not path:
        return path

    path = re.sub(r'/+', '/', path)

    if path == '/':
        return ""
    else:
        return '/' + path.strip('/')


class RestClient(object):
    """
    This class lets you make Dropbox API calls asynchronously. The session
    must have a linked user first (see :meth:`oauthbox.session.Session.link`).

    Every call takes a ``completion`` callable that receives an error (or
    ``None``) followed by the call's results. It runs on the session's
    callback thread, exactly once, unless the call is cancelled first.

    A signature-rejected error means the access token is no longer valid; the
    session starts a new handshake and the caller still gets the error.
    """

    def __init__(self, session, user_id=None, max_concurrent_requests=8):
        """Construct a ``RestClient`` instance.

        Parameters
          session
            A linked :class:`oauthbox.session.Session`.
          user_id
            Which linked user to act for. Defaults to the first linked user.
          max_concurrent_requests
            How many requests may be on the network at once.
        """
        assert session.is_linked(), "Session must be linked before creating a RestClient"
        if user_id is None:
            user_id = session.user_ids[0]
        self.session = session
        self.user_id = user_id
        self.api = session.api_for_user_id(user_id)
        self.queue = RequestQueue(max_concurrent_requests, session.transport,
                                  session.callback_executor)

    # ---------------
    # Queue
    # ---------------
    @property
    def max_concurrent_requests(self):
        return self.queue.max_concurrent_requests

    @max_concurrent_requests.setter
    def max_concurrent_requests(self, value):
        self.queue.max_concurrent_requests = value

    @property
    def active(self):
        return self.queue.active

    def cancel_all_requests(self):
        """Cancels all outstanding requests. No callback for those requests will be sent."""
        return self.queue.cancel_all_requests()

    def cancel_file_load(self, path):
        return self.queue.cancel_requests_for_key(('load', format_path(path)))

    def cancel_thumbnail_load(self, path, size):
        return self.queue.cancel_requests_for_key(('thumbnail', format_path(path), size))

    def cancel_file_upload(self, path):
        return self.queue.cancel_requests_for_key(('upload', format_path(path)))

    def wait_until_all_requests_are_completed(self, timeout=None):
        return self.queue.wait_until_all_requests_are_completed(timeout)

    # ---------------
    # Plumbing
    # ---------------
    def _root_path(self, prefix, path):
        return "/%s/%s%s" % (prefix, self.session.root, format_path(path))

    def _perform(self, http_method, target, params, completion, content_server=False, **kwargs):
        if content_server:
            host = self.session.API_CONTENT_HOST
        else:
            host = self.session.API_HOST
        url = self.session.build_url(host, target)
        return self.api.perform_request(http_method, url, params, completion,
                                        queue=self.queue, **kwargs)

    @staticmethod
    def _parse(request, json_type, factory=None):
        # returns (error, value); shape problems become InvalidResponseError
        result = request.parse_response_as_type(json_type)
        if request.error is not None:
            return request.error, None
        if factory is None:
            return None, result
        try:
            return None, factory(result)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Unexpected response shape from %r: %s", request, e)
            request.error = request.invalid_response(str(e))
            return request.error, None

    # ---------------
    # Metadata
    # ---------------
    def load_metadata(self, path, completion, hash=None, rev=None):
        """
        Load metadata for the file or folder at ``path``.

        ``completion(error, changed, metadata)``: when ``hash`` matches the
        folder on the server, ``changed`` is ``False`` and ``metadata`` is
        ``None``.
        """
        params = {'list': 'true'}
        if hash is not None:
            params['hash'] = hash
        if rev is not None:
            params['rev'] = rev

        def done(request):
            if isinstance(request.error, ErrorResponse) and request.error.status == 304:
                completion(None, False, None)
                return
            error, metadata = self._parse(request, dict, Metadata)
            completion(error, error is None, metadata)

        return self._perform('GET', self._root_path('metadata', path), params, done,
                             user_info={'path': path})

    def load_delta(self, cursor, completion):
        """``completion(error, entries, reset, cursor, has_more)``."""
        params = {}
        if cursor is not None:
            params['cursor'] = cursor

        def done(request):
            error, result = self._parse(request, dict)
            if error is None:
                try:
                    entries = [DeltaEntry(e) for e in result['entries']]
                except (ValueError, KeyError, TypeError) as e:
                    error = request.error = request.invalid_response(str(e))
            if error is not None:
                completion(error, None, False, None, False)
            else:
                completion(None, entries, bool(result.get('reset')),
                           result.get('cursor'), bool(result.get('has_more')))

        return self._perform('POST', '/delta', params, done, user_info={'cursor': cursor})

    def load_revisions_for_file(self, path, completion, limit=10):
        """``completion(error, revisions)`` with a list of :class:`Metadata`."""
        def done(request):
            error, revisions = self._parse(request, list,
                                           lambda items: [Metadata(i) for i in items])
            completion(error, revisions)

        return self._perform('GET', self._root_path('revisions', path),
                             {'rev_limit': limit}, done, user_info={'path': path})

    def search_path(self, path, keyword, completion):
        """``completion(error, results)`` with a list of :class:`Metadata`."""
        def done(request):
            error, results = self._parse(request, list,
                                         lambda items: [Metadata(i) for i in items])
            completion(error, results)

        return self._perform('GET', self._root_path('search', path), {'query': keyword},
                             done, user_info={'path': path, 'keyword': keyword})

    def load_account_info(self, completion):
        def done(request):
            error, info = self._parse(request, dict, AccountInfo)
            completion(error, info)

        return self._perform('GET', '/account/info', None, done)

    # ---------------
    # File contents
    # ---------------
    def load_file(self, path, into_path, completion, rev=None, progress=None):
        """
        Download ``path`` into the local file ``into_path``.

        ``completion(error, content_type, metadata)``; ``progress(fraction)``
        is optional.
        """
        params = {}
        if rev is not None:
            params['rev'] = rev

        def done(request):
            if request.error is not None:
                completion(request.error, None, None)
                return
            metadata = request.x_dropbox_metadata
            content_type = None
            for header, value in request.response_headers.items():
                if header.lower() == 'content-type':
                    content_type = value
            completion(None, content_type, Metadata(metadata) if metadata else None)

        return self._perform('GET', self._root_path('files', path), params, done,
                             content_server=True, result_filename=into_path,
                             key=('load', format_path(path)),
                             user_info={'path': path, 'destination_path': into_path},
                             download_progress=_progress(progress))

    def load_thumbnail(self, path, size, into_path, completion):
        """``completion(error, into_path, metadata)``."""
        def done(request):
            if request.error is not None:
                completion(request.error, None, None)
                return
            metadata = request.x_dropbox_metadata
            completion(None, into_path, Metadata(metadata) if metadata else None)

        return self._perform('GET', self._root_path('thumbnails', path),
                             {'size': size, 'format': 'JPEG'}, done, content_server=True,
                             result_filename=into_path,
                             key=('thumbnail', format_path(path), size),
                             user_info={'path': path, 'size': size,
                                        'destination_path': into_path})

    def upload_file(self, filename, to_path, parent_rev, from_path, completion, progress=None):
        """
        Upload the local file ``from_path`` as ``filename`` inside ``to_path``.
        Pass the rev you last saw as ``parent_rev`` when changing an existing
        file, ``None`` for a new one.

        ``completion(error, metadata)``; ``progress(fraction)`` is optional.
        """
        dest_path = posixpath.join(format_path(to_path) or '/', filename)
        params = {'overwrite': 'false'}
        if parent_rev is not None:
            params['parent_rev'] = parent_rev

        def done(request):
            error, metadata = self._parse(request, dict, Metadata)
            completion(error, metadata)

        return self._perform('PUT', self._root_path('files_put', dest_path), params, done,
                             content_server=True, source_filename=from_path,
                             key=('upload', format_path(dest_path)),
                             user_info={'path': dest_path, 'source_path': from_path},
                             upload_progress=_progress(progress))

    def restore_file(self, path, rev, completion):
        def done(request):
            error, metadata = self._parse(request, dict, Metadata)
            completion(error, metadata)

        return self._perform('POST', self._root_path('restore', path), {'rev': rev}, done,
                             user_info={'path': path, 'rev': rev})

    # ---------------
    # File operations
    # ---------------
    def create_folder(self, path, completion):
        """``completion(error, metadata)`` of the new folder."""
        def done(request):
            error, metadata = self._parse(request, dict, Metadata)
            completion(error, metadata)

        params = {'root': self.session.root, 'path': format_path(path)}
        return self._perform('POST', '/fileops/create_folder', params, done,
                             user_info={'path': path})

    def delete_path(self, path, completion):
        """``completion(error)``."""
        def done(request):
            error, _ = self._parse(request, dict)
            completion(error)

        params = {'root': self.session.root, 'path': format_path(path)}
        return self._perform('POST', '/fileops/delete', params, done, user_info={'path': path})

    def copy_from(self, from_path, to_path, completion):
        """``completion(error, metadata)`` of the new copy."""
        def done(request):
            error, metadata = self._parse(request, dict, Metadata)
            completion(error, metadata)

        params = {'root': self.session.root,
                  'from_path': format_path(from_path),
                  'to_path': format_path(to_path)}
        return self._perform('POST', '/fileops/copy', params, done,
                             user_info={'from_path': from_path, 'to_path': to_path})

    def move_from(self, from_path, to_path, completion):
        """``completion(error, metadata)`` of the item at its new location."""
        def done(request):
            error, metadata = self._parse(request, dict, Metadata)
            completion(error, metadata)

        params = {'root': self.session.root,
                  'from_path': format_path(from_path),
                  'to_path': format_path(to_path)}
        return self._perform('POST', '/fileops/move', params, done,
                             user_info={'from_path': from_path, 'to_path': to_path})

    def create_copy_ref(self, path, completion):
        """``completion(error, copy_ref)``; the ref can be used by any account."""
        def done(request):
            error, copy_ref = self._parse(request, dict, lambda r: r['copy_ref'])
            completion(error, copy_ref)

        return self._perform('GET', self._root_path('copy_ref', path), None, done,
                             user_info={'path': path})

    def copy_from_ref(self, copy_ref, to_path, completion):
        def done(request):
            error, metadata = self._parse(request, dict, Metadata)
            completion(error, metadata)

        params = {'root': self.session.root,
                  'from_copy_ref': copy_ref,
                  'to_path': format_path(to_path)}
        return self._perform('POST', '/fileops/copy', params, done,
                             user_info={'copy_ref': copy_ref, 'to_path': to_path})

    # ---------------
    # Links
    # ---------------
    def load_sharable_link(self, path, completion):
        def done(request):
            error, link = self._parse(request, dict, lambda r: r['url'])
            completion(error, link)

        return self._perform('POST', self._root_path('shares', path), None, done,
                             user_info={'path': path})

    def load_streamable_url(self, path, completion):
        def done(request):
            error, url = self._parse(request, dict, lambda r: r['url'])
            completion(error, url)

        return self._perform('POST', self._root_path('media', path), None, done,
                             user_info={'path': path})


def _progress(callback):
    if callback is None:
        return None
    return lambda request, fraction: callback(fraction)

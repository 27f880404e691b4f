"""
Value objects built from the JSON the API returns.
"""

import posixpath
from email.utils import parsedate_to_datetime


class Metadata(object):
    """
    Metadata of a file or folder. ``contents`` is only filled in for folder
    listings.

    A typical dictionary looks like::

        {
            'bytes': 77,
            'icon': 'page_white_text',
            'is_dir': False,
            'mime_type': 'text/plain',
            'modified': 'Wed, 20 Jul 2011 22:04:50 +0000',
            'path': '/magnum-opus.txt',
            'rev': '362e2029684fe',
            'revision': 221922,
            'root': 'dropbox',
            'size': '77 bytes',
            'thumb_exists': False
        }
    """

    def __init__(self, d):
        if not isinstance(d, dict) or 'path' not in d:
            raise ValueError("metadata must be a dictionary with a 'path'")
        self._dict = d
        self.thumbnail_exists = bool(d.get('thumb_exists', False))
        self.total_bytes = int(d.get('bytes', 0))
        self.last_modified_date = _parse_date(d.get('modified'))
        self.client_mtime = _parse_date(d.get('client_mtime'))
        self.path = d['path']
        self.is_directory = bool(d.get('is_dir', False))
        self.hash = d.get('hash')
        self.human_readable_size = d.get('size')
        self.root = d.get('root')
        self.icon = d.get('icon')
        self.revision = d.get('revision')
        self.rev = d.get('rev')
        self.is_deleted = bool(d.get('is_deleted', False))
        self.mime_type = d.get('mime_type')
        if 'contents' in d:
            self.contents = [Metadata(c) for c in d['contents']]
        else:
            self.contents = None

    def __repr__(self):
        return "Metadata(%r)" % (self.path,)

    def __eq__(self, other):
        return isinstance(other, Metadata) and self._dict == other._dict

    def __ne__(self, other):
        return not self == other

    @property
    def filename(self):
        return posixpath.basename(self.path)

    def dictionary(self):
        return dict(self._dict)

    def metadata_for_filename(self, filename):
        """Find a direct child by name, case-insensitively."""
        for child in self.contents or ():
            if child.filename.lower() == filename.lower():
                return child
        return None


class Quota(object):
    def __init__(self, d):
        self.normal_consumed_bytes = int(d.get('normal', 0))
        self.shared_consumed_bytes = int(d.get('shared', 0))
        self.total_bytes = int(d.get('quota', 0))

    @property
    def total_consumed_bytes(self):
        return self.normal_consumed_bytes + self.shared_consumed_bytes


class AccountInfo(object):
    def __init__(self, d):
        if not isinstance(d, dict) or 'uid' not in d:
            raise ValueError("account info must be a dictionary with a 'uid'")
        self.country = d.get('country')
        self.display_name = d.get('display_name')
        self.referral_link = d.get('referral_link')
        self.user_id = str(d['uid'])
        self.quota = Quota(d.get('quota_info') or {})


class DeltaEntry(object):
    """
    One row of a delta response. ``metadata`` is ``None`` when there is no
    longer anything at ``lowercase_path``.
    """

    def __init__(self, entry):
        if not isinstance(entry, list) or len(entry) != 2:
            raise ValueError("delta entries are [path, metadata] pairs")
        self.lowercase_path = entry[0]
        self.metadata = Metadata(entry[1]) if entry[1] is not None else None


def _parse_date(value):
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None

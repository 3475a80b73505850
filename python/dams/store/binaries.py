"""
A store for the binary content of FileSets.

Content is organized by FileSet and *relation*--the role the content plays for the FileSet (e.g.
"original_file", "extracted_text", "thumbnail").  Each relation holds an ordered list of immutable
versions; adding content never overwrites an earlier version, and reverting to an earlier
revision creates a new version with the old content.  The layout on disk is::

    ROOT/FILESETID/RELATION/versions.json
    ROOT/FILESETID/RELATION/versionN/FILENAME
"""
import os, shutil, hashlib, mimetypes, logging
from pathlib import Path
from collections import OrderedDict
from collections.abc import Mapping
from typing import List, Union
from logging import Logger

import filelock

from .base import ObjectNotFound, PersistenceError, time_in_utc
from ..utils import read_json, write_json
from ..utils.logging import blab

VERSIONS_FILE = "versions.json"
DEF_MIME_TYPE = "application/octet-stream"

def _safe(name: str) -> str:
    return name.replace(':', '_').replace('/', '_')

def checksum_of(filepath, bufsize=2**20) -> str:
    """
    return the SHA-256 checksum of the file with the given path as a hex string
    """
    sha = hashlib.sha256()
    with open(filepath, 'rb') as fd:
        buf = fd.read(bufsize)
        while buf:
            sha.update(buf)
            buf = fd.read(bufsize)
    return sha.hexdigest()

class BinaryStore(object):
    """
    a versioned, file-based store for FileSet content
    """

    def __init__(self, rootdir: Union[str, Path], log: Logger = None):
        self._root = Path(rootdir)
        if not self._root.is_dir():
            raise PersistenceError("BinaryStore: %s: does not exist as a directory" % str(rootdir))
        if not log:
            log = logging.getLogger("dams.store.binaries")
        self.log = log

    def _reldir(self, file_set_id: str, relation: str) -> Path:
        return self._root / _safe(file_set_id) / _safe(relation)

    def versions(self, file_set_id: str, relation: str) -> List[Mapping]:
        """
        return the descriptions of the versions stored for a FileSet relation, oldest first
        """
        vfile = self._reldir(file_set_id, relation) / VERSIONS_FILE
        if not vfile.is_file():
            return []
        return read_json(str(vfile))

    def current_version(self, file_set_id: str, relation: str) -> Mapping:
        """
        return the description of the latest version of a FileSet relation or None if no content
        has been stored
        """
        vers = self.versions(file_set_id, relation)
        return vers[-1] if vers else None

    def get_version(self, file_set_id: str, relation: str, version_id: str) -> Mapping:
        """
        return the description of the version with the given identifier
        :raise ObjectNotFound:  if no such version exists
        """
        for ver in self.versions(file_set_id, relation):
            if ver['id'] == version_id:
                return ver
        raise ObjectNotFound(version_id, "%s/%s: version not found: %s" %
                             (file_set_id, relation, version_id))

    def content_path(self, file_set_id: str, relation: str, version_id: str = None) -> Path:
        """
        return the path to the content for a given version (or the latest version, if not specified)
        :raise ObjectNotFound:  if the requested content does not exist
        """
        if version_id:
            ver = self.get_version(file_set_id, relation, version_id)
        else:
            ver = self.current_version(file_set_id, relation)
            if not ver:
                raise ObjectNotFound(file_set_id, "%s: no content stored for %s" % (file_set_id, relation))
        return self._reldir(file_set_id, relation) / ver['id'] / ver['label']

    def add_version(self, file_set_id: str, relation: str, srcpath: Union[str, Path],
                    label: str = None, mime_type: str = None, user: str = None, **extra) -> Mapping:
        """
        copy the content of a file into a new version of a FileSet relation.

        :param str file_set_id:  the identifier of the FileSet that owns the content
        :param str    relation:  the relation the content is stored under
        :param str     srcpath:  the path to the file whose content should be stored
        :param str       label:  the filename to store the content under (default: the source's name)
        :param str   mime_type:  the content's MIME type (default: guessed from the label)
        :param str        user:  the identifier of the user adding the content
        :param extra:            other properties to record in the version description
        :return:  a description of the new version
        """
        srcpath = Path(srcpath)
        if not srcpath.is_file():
            raise PersistenceError("%s: source content file not found: %s" % (file_set_id, str(srcpath)),
                                   file_set_id)
        if not label:
            label = srcpath.name
        if not mime_type:
            mime_type = mimetypes.guess_type(label)[0] or DEF_MIME_TYPE

        reldir = self._reldir(file_set_id, relation)
        os.makedirs(reldir, exist_ok=True)
        with filelock.FileLock(str(reldir / ".lock")):
            vers = self.versions(file_set_id, relation)
            ver = OrderedDict([
                ("id", "version%d" % (len(vers) + 1)),
                ("label", os.path.basename(label)),
                ("mime_type", mime_type),
                ("size", srcpath.stat().st_size),
                ("checksum", checksum_of(srcpath)),
                ("created", time_in_utc())
            ])
            if user:
                ver['user'] = user
            ver.update((k, v) for k, v in extra.items() if v is not None)

            verdir = reldir / ver['id']
            os.makedirs(verdir, exist_ok=True)
            try:
                shutil.copyfile(srcpath, verdir / ver['label'])
            except OSError as ex:
                shutil.rmtree(verdir, ignore_errors=True)
                raise PersistenceError("%s: failed to copy content into store: %s" % (file_set_id, str(ex)),
                                       file_set_id, cause=ex)
            vers.append(ver)
            write_json(vers, str(reldir / VERSIONS_FILE))

        blab(self.log, "%s/%s: stored %s", file_set_id, relation, ver['id'])
        return ver

    def restore_version(self, file_set_id: str, relation: str, version_id: str,
                        user: str = None) -> Mapping:
        """
        make the content of an earlier version the current content by adding it as a new version
        :return:  a description of the new version
        :raise ObjectNotFound:  if the requested version does not exist
        """
        ver = self.get_version(file_set_id, relation, version_id)
        srcpath = self._reldir(file_set_id, relation) / ver['id'] / ver['label']
        return self.add_version(file_set_id, relation, srcpath, ver['label'], ver.get('mime_type'), user,
                                restored_from=version_id)

    def purge(self, file_set_id: str) -> bool:
        """
        remove all content stored for a FileSet
        :return:  True if there was content to remove
        """
        fsdir = self._root / _safe(file_set_id)
        if not fsdir.exists():
            return False
        shutil.rmtree(fsdir)
        self.log.debug("%s: purged stored content", file_set_id)
        return True

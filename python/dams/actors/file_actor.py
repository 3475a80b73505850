"""
The actor that moves content into and between the versions stored for one relation of a FileSet.
"""
import os, tempfile, logging
from collections.abc import Mapping
from typing import Tuple
from logging import Logger

import requests

from .. import DAMSException
from ..store import (FileSet, ContentDescriptor, UploadedFile, ObjectNotFound, PersistenceError,
                     time_in_utc)
from ..utils.prov import Agent

class RemoteContentError(DAMSException):
    """
    an exception indicating that content could not be retrieved from a remote URL
    """
    def __init__(self, url, message=None, status=None, cause=None):
        if not message:
            message = "Failed to retrieve content from " + url
            if status:
                message += " (status=%s)" % status
        super(RemoteContentError, self).__init__(message, cause)
        self.url = url
        self.status = status

class FileActor(object):
    """
    an actor for ingesting content into a single relation (e.g. "original_file") of a FileSet and 
    for reverting that relation to an earlier revision.  Each change creates a new version in the 
    :py:class:`~dams.store.binaries.BinaryStore`, updates the FileSet's ``files`` map, and saves 
    the FileSet.
    """

    def __init__(self, file_set: FileSet, relation: str, user: Agent, services, log: Logger = None):
        self.file_set = file_set
        self.relation = relation
        self.user = user
        self.services = services
        if not log:
            log = logging.getLogger("dams.actors.file_actor")
        self.log = log

    def ingest_file(self, descriptor: ContentDescriptor) -> Mapping:
        """
        store the content described by the given descriptor as a new version of this actor's 
        relation.
        :return:  the description of the new version
        :raise ObjectNotFound:    if the descriptor's UploadedFile no longer exists
        :raise PersistenceError:  if the content is not available or could not be stored
        :raise RemoteContentError: if remote content could not be retrieved
        """
        srcpath, label, mimetype, tmpfile = self._resolve_source(descriptor)
        try:
            version = self.services.binaries.add_version(self.file_set.id, self.relation, srcpath, label,
                                                         mimetype, self.user.actor)
        finally:
            if tmpfile:
                os.unlink(tmpfile)

        self._record_version(version)
        return version

    def revert_to(self, revision_id: str) -> bool:
        """
        make the content of an earlier revision the current content of this actor's relation
        :return:  False if the revision does not exist, True otherwise
        """
        try:
            version = self.services.binaries.restore_version(self.file_set.id, self.relation, revision_id,
                                                             self.user.actor)
        except ObjectNotFound as ex:
            self.log.warning("%s: unable to revert %s: %s", self.file_set.id, self.relation, str(ex))
            return False

        self._record_version(version)
        return True

    def _record_version(self, version: Mapping):
        if self.file_set.persisted:
            self.services.store.reload(self.file_set)
        self.file_set.files[self.relation] = version['id']
        self.file_set.date_modified = time_in_utc()
        self.services.store.save(self.file_set)
        self.log.debug("%s: %s now at %s", self.file_set.id, self.relation, version['id'])

    def _resolve_source(self, descriptor: ContentDescriptor) -> Tuple[str, str, str, str]:
        # returns (path, label, mime type, temporary file to remove)
        label = descriptor.original_name
        mimetype = descriptor.mime_type
        if not descriptor.uploaded_file_id:
            if not os.path.isfile(descriptor.path):
                raise PersistenceError("%s: content file not found: %s" % (self.file_set.id, descriptor.path),
                                       self.file_set.id)
            return (descriptor.path, label or self.file_set.label, mimetype, None)

        upload = self.services.store.find(descriptor.uploaded_file_id, UploadedFile)
        label = label or upload.filename or self.file_set.label
        mimetype = mimetype or upload.mime_type
        if upload.path and os.path.isfile(upload.path):
            return (upload.path, label, mimetype, None)
        if upload.file_url:
            tmpfile = self._fetch(upload.file_url)
            return (tmpfile, label, mimetype, tmpfile)
        raise PersistenceError("%s: cached upload content is missing: %s" % (upload.id, upload.path),
                               upload.id)

    def _fetch(self, url: str) -> str:
        self.log.info("Retrieving content from %s", url)
        fd, tmpfile = tempfile.mkstemp(prefix="dams-import-")
        try:
            with os.fdopen(fd, 'wb') as out:
                with requests.get(url, stream=True, timeout=60) as resp:
                    if resp.status_code != 200:
                        raise RemoteContentError(url, status=resp.status_code)
                    for chunk in resp.iter_content(chunk_size=2**16):
                        out.write(chunk)
        except requests.RequestException as ex:
            os.unlink(tmpfile)
            raise RemoteContentError(url, "Failed to retrieve content from %s: %s" % (url, str(ex)),
                                     cause=ex)
        except Exception:
            os.unlink(tmpfile)
            raise
        return tmpfile

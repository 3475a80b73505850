"""
Normalization of the various forms that a file to be ingested can take into a persisted 
:py:class:`~dams.store.base.ContentDescriptor` that a deferred task can find again by its 
identifier.

A file payload is one of three variants:

:py:class:`CachedUpload`
     a file uploaded by a user and recorded as an :py:class:`~dams.store.base.UploadedFile`
:py:class:`RawFile`
     a file on the local filesystem (or an open temporary file)
:py:class:`NamedDecorator`
     a local file that should be known by a different, original name

Callers may pass any of these directly or convert a plain value with :py:func:`as_payload`.
"""
import os, logging
from pathlib import Path
from urllib.parse import urlparse, unquote
from typing import Union
from logging import Logger

from ..store import UploadedFile, ContentDescriptor, FileSet, ResourceStore, PersistenceError
from ..utils.prov import Agent

class Payload(object):
    """
    the base for the file payload variants.  ``path`` is the local path to the content, if there 
    is one.
    """
    @property
    def path(self) -> str:
        return None

class CachedUpload(Payload):
    """
    a payload wrapping an UploadedFile
    """
    def __init__(self, upload: UploadedFile):
        self.upload = upload

    @property
    def path(self) -> str:
        return self.upload.path

    @property
    def uploader_filename(self) -> str:
        """
        the name the file was uploaded under, or, for a remote upload, the last part of its URL
        """
        if self.upload.filename:
            return self.upload.filename
        if self.upload.file_url:
            return _basename_of_url(self.upload.file_url)
        return None

class RawFile(Payload):
    """
    a payload wrapping a local file path
    """
    def __init__(self, path: Union[str, Path]):
        self._path = str(path)

    @property
    def path(self) -> str:
        return self._path

class NamedDecorator(RawFile):
    """
    a payload wrapping a local file that has a separate original name
    """
    def __init__(self, path: Union[str, Path], original_name: str):
        super(NamedDecorator, self).__init__(path)
        self.original_name = original_name

def _basename_of_url(url: str) -> str:
    return os.path.basename(unquote(urlparse(url).path)) or None

def as_payload(file) -> Payload:
    """
    convert the given file representation into a payload variant.  The following are accepted:
    a Payload (returned as is), an UploadedFile, a path (str or Path), or an open file object 
    (like that returned by :py:func:`tempfile.NamedTemporaryFile`) with a ``name`` attribute.
    :raise TypeError:  if the input is not a recognized file representation
    """
    if isinstance(file, Payload):
        return file
    if isinstance(file, UploadedFile):
        return CachedUpload(file)
    if isinstance(file, (str, Path)):
        return RawFile(file)
    if isinstance(getattr(file, 'name', None), str):
        return RawFile(file.name)
    raise TypeError("Not a recognized file payload: " + repr(file))

def label_for(payload: Payload, import_url: str = None) -> str:
    """
    determine the display label for a file payload.  In order of preference, this is the name 
    given by the uploader, the payload's original name, the last part of the URL the content is 
    being imported from, and the name of the payload's local file.
    """
    if isinstance(payload, CachedUpload) and payload.uploader_filename:
        return payload.uploader_filename
    if isinstance(payload, NamedDecorator) and payload.original_name:
        return payload.original_name
    if import_url:
        name = _basename_of_url(import_url)
        if name:
            return name
    if payload.path:
        return os.path.basename(payload.path)
    return None

def create_descriptor(store: ResourceStore, file_set: FileSet, payload: Payload, relation: str,
                      user: Agent, log: Logger = None) -> ContentDescriptor:
    """
    create and persist a descriptor for ingesting a payload into a FileSet.  An UploadedFile that 
    has not been saved yet is saved first.
    :raise PersistenceError:  if either the upload or the descriptor could not be saved
    """
    if not log:
        log = logging.getLogger("dams.actors.content")

    data = { "relation": relation, "file_set_id": file_set.id, "user": user.to_dict(True) }
    if isinstance(payload, CachedUpload):
        if not payload.upload.id:
            store.save(payload.upload)
        data['uploaded_file_id'] = payload.upload.id
        if payload.upload.mime_type:
            data['mime_type'] = payload.upload.mime_type
    else:
        data['path'] = payload.path
        if isinstance(payload, NamedDecorator):
            data['original_name'] = payload.original_name

    descriptor = ContentDescriptor(data)
    try:
        store.save(descriptor)
    except PersistenceError as ex:
        log.error("%s: unable to save content descriptor: %s", file_set.id, str(ex))
        raise
    return descriptor

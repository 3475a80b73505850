"""
The abstract interface for persisting the DAMS resources, along with the resource model itself.

The model is made up of the following resource types, each kept in its own collection:

  *  :py:class:`Work` -- the aggregate root representing a deposited intellectual object.  It holds
     an ordered list of member FileSet identifiers along with references to the members that serve
     as its representative and its thumbnail.
  *  :py:class:`FileSet` -- a child entity wrapping one logical file (and its revisions).
  *  :py:class:`UploadedFile` -- a file uploaded by a user and cached locally (or a reference to
     a remote file) awaiting ingestion into a FileSet.
  *  :py:class:`ContentDescriptor` -- a durable record of a pending content-ingestion request that
     can be handed to a job running in a different process.

Each resource is a thin wrapper around a JSON-encodable dictionary.  A :py:class:`ResourceStore`
saves, finds, reloads, and deletes resources; subclasses implement a handful of collection-level
primitives for a particular backend.
"""
import logging, threading
from abc import ABC, abstractmethod
from copy import deepcopy
from collections.abc import Mapping, MutableMapping
from datetime import datetime, timezone
from typing import Iterator, List, Union
from logging import Logger

from .. import DAMSException
from ..utils.prov import Agent

WORKS       = "works"
FILE_SETS   = "file_sets"
UPLOADS     = "uploaded_files"
DESCRIPTORS = "job_io_wrappers"

DEF_ID_SHOULDER = "dams0"

# visibility values
VISIBILITY_OPEN          = "open"
VISIBILITY_AUTHENTICATED = "authenticated"
VISIBILITY_RESTRICTED    = "restricted"
VISIBILITY_EMBARGO       = "embargo"
VISIBILITY_LEASE         = "lease"
VISIBILITIES = (VISIBILITY_OPEN, VISIBILITY_AUTHENTICATED, VISIBILITY_RESTRICTED,
                VISIBILITY_EMBARGO, VISIBILITY_LEASE)

PUBLIC_GROUP     = "public"
REGISTERED_GROUP = "registered"

__all__ = [ "Resource", "AccessControlled", "Work", "FileSet", "UploadedFile", "ContentDescriptor",
            "ResourceStore", "StoreException", "PersistenceError", "InvalidResource", "ObjectNotFound",
            "WORKS", "FILE_SETS", "UPLOADS", "DESCRIPTORS", "time_in_utc" ]

def time_in_utc() -> str:
    """
    return the current time in UTC as an ISO-8601 formatted string
    """
    return datetime.now(timezone.utc).isoformat()


class Resource(object):
    """
    the base class for all persistable resources.  The resource's content is held as a dictionary
    available via :py:meth:`to_dict`; properties provide typed access to its parts.
    """
    collection = None
    _lists = ()

    def __init__(self, data: Mapping = None, **props):
        if data is None:
            data = {}
        data = deepcopy(dict(data))
        data.update(props)
        self._data = self._initialize(data)
        self._persisted = False

    def _initialize(self, data: MutableMapping) -> MutableMapping:
        for prop in self._lists:
            if data.get(prop) is None:
                data[prop] = []
            elif isinstance(data[prop], (str, tuple)):
                data[prop] = [data[prop]] if isinstance(data[prop], str) else list(data[prop])
        return data

    @property
    def id(self) -> str:
        """
        the unique identifier for the resource or None if one has not been assigned yet
        """
        return self._data.get('id')

    @id.setter
    def id(self, val):
        self._data['id'] = val

    @property
    def persisted(self) -> bool:
        """
        True if this instance was saved to or loaded from a store
        """
        return self._persisted

    @property
    def created(self) -> str:
        return self._data.get('created')

    @property
    def modified(self) -> str:
        return self._data.get('modified')

    def _get(self, prop, defval=None):
        return self._data.get(prop, defval)

    def _set(self, prop, val):
        if val is None:
            self._data.pop(prop, None)
        else:
            self._data[prop] = val

    def validate(self, errs: List[str] = None) -> List[str]:
        """
        validate this resource, returning a list of error messages (empty if the resource is valid).
        """
        if errs is None:
            errs = []
        for prop in self._lists:
            if not isinstance(self._data.get(prop), list):
                errs.append("%s: not a list" % prop)
        return errs

    def is_valid(self) -> bool:
        return not self.validate()

    def to_dict(self) -> MutableMapping:
        return deepcopy(self._data)

    def _replace_data(self, data: Mapping):
        self._data = self._initialize(deepcopy(dict(data)))
        self._persisted = True

    def __eq__(self, other):
        return type(self) is type(other) and self.id is not None and self.id == other.id

    def __hash__(self):
        return hash((type(self).__name__, self.id))

    def __repr__(self):
        return "%s(%s)" % (type(self).__name__, self.id or "new")


class AccessControlled(Resource):
    """
    a resource carrying a depositor, access grants, and a visibility setting.  Visibility is
    realized as grants to the virtual "public" and "registered" groups.
    """
    _lists = ("read_users", "edit_users", "read_groups", "edit_groups")

    @property
    def depositor(self) -> str:
        return self._get('depositor')

    @depositor.setter
    def depositor(self, val):
        self._set('depositor', val)

    def apply_depositor_metadata(self, user: Union[Agent, str]):
        """
        record the given user as the depositor and give them edit access
        """
        key = user.actor if isinstance(user, Agent) else user
        self.depositor = key
        if key not in self._data['edit_users']:
            self._data['edit_users'].append(key)

    @property
    def read_users(self) -> List[str]:
        return self._data['read_users']

    @property
    def edit_users(self) -> List[str]:
        return self._data['edit_users']

    @property
    def read_groups(self) -> List[str]:
        return self._data['read_groups']

    @property
    def edit_groups(self) -> List[str]:
        return self._data['edit_groups']

    @property
    def visibility(self) -> str:
        """
        the access visibility of this resource, one of "open", "authenticated", "restricted",
        "embargo", or "lease"; None if it has not been set
        """
        return self._get('visibility')

    @visibility.setter
    def visibility(self, val):
        if val is not None and val not in VISIBILITIES:
            raise ValueError("Unrecognized visibility value: " + str(val))
        self._set('visibility', val)
        self._apply_visibility_groups(self.effective_visibility)

    @property
    def effective_visibility(self) -> str:
        """
        the visibility currently in force; for an embargo or lease, this is the visibility that
        applies while it is active
        """
        vis = self.visibility
        if vis == VISIBILITY_EMBARGO and self.embargo:
            return self.embargo.get('visibility_during_embargo', VISIBILITY_RESTRICTED)
        if vis == VISIBILITY_LEASE and self.lease:
            return self.lease.get('visibility_during_lease', VISIBILITY_OPEN)
        return vis

    def _apply_visibility_groups(self, vis):
        groups = [g for g in self._data['read_groups'] if g not in (PUBLIC_GROUP, REGISTERED_GROUP)]
        if vis == VISIBILITY_OPEN:
            groups.append(PUBLIC_GROUP)
        elif vis == VISIBILITY_AUTHENTICATED:
            groups.append(REGISTERED_GROUP)
        self._data['read_groups'] = groups

    @property
    def embargo(self) -> Mapping:
        """
        the embargo settings (``embargo_release_date``, ``visibility_during_embargo``, and
        ``visibility_after_embargo``) or None if no embargo is in place
        """
        return self._get('embargo')

    @embargo.setter
    def embargo(self, val: Mapping):
        self._set('embargo', deepcopy(dict(val)) if val else None)

    @property
    def lease(self) -> Mapping:
        """
        the lease settings (``lease_expiration_date``, ``visibility_during_lease``, and
        ``visibility_after_lease``) or None if no lease is in place
        """
        return self._get('lease')

    @lease.setter
    def lease(self, val: Mapping):
        self._set('lease', deepcopy(dict(val)) if val else None)

    def validate(self, errs: List[str] = None) -> List[str]:
        errs = super(AccessControlled, self).validate(errs)
        if self.visibility is not None and self.visibility not in VISIBILITIES:
            errs.append("visibility: unrecognized value: " + str(self.visibility))
        if self.visibility == VISIBILITY_EMBARGO and not self.embargo:
            errs.append("visibility: embargo requested without embargo settings")
        if self.visibility == VISIBILITY_LEASE and not self.lease:
            errs.append("visibility: lease requested without lease settings")
        return errs


class Work(AccessControlled):
    """
    a deposited intellectual object aggregating an ordered list of FileSets
    """
    collection = WORKS
    _lists = AccessControlled._lists + ("title", "member_ids")

    @property
    def title(self) -> List[str]:
        return self._data['title']

    @title.setter
    def title(self, val: List[str]):
        self._data['title'] = list(val or [])

    @property
    def member_ids(self) -> List[str]:
        """
        the ordered list of identifiers of this work's member FileSets
        """
        return self._data['member_ids']

    @member_ids.setter
    def member_ids(self, val: List[str]):
        self._data['member_ids'] = list(val or [])

    @property
    def representative_id(self) -> str:
        return self._get('representative_id')

    @representative_id.setter
    def representative_id(self, val: str):
        self._set('representative_id', val)

    @property
    def thumbnail_id(self) -> str:
        return self._get('thumbnail_id')

    @thumbnail_id.setter
    def thumbnail_id(self, val: str):
        self._set('thumbnail_id', val)

    def validate(self, errs: List[str] = None) -> List[str]:
        errs = super(Work, self).validate(errs)
        if not self.title or not any(t.strip() for t in self.title):
            errs.append("title: a work requires a title")
        for prop in "representative_id thumbnail_id".split():
            if self._get(prop) and self._get(prop) not in self.member_ids:
                errs.append("%s: %s is not a member" % (prop, self._get(prop)))
        return errs


class FileSet(AccessControlled):
    """
    a child entity representing one logical file plus its revisions and derivatives.

    The ``errors`` list collects problems found while applying updates to the FileSet (e.g. by
    the metadata workflows); it is not persisted.
    """
    collection = FILE_SETS
    _lists = AccessControlled._lists + ("title", "creator", "description", "keyword")

    def __init__(self, data: Mapping = None, **props):
        super(FileSet, self).__init__(data, **props)
        self.errors = []

    @property
    def label(self) -> str:
        """
        the display name for the file (usually its original filename)
        """
        return self._get('label')

    @label.setter
    def label(self, val: str):
        self._set('label', val)

    @property
    def title(self) -> List[str]:
        return self._data['title']

    @title.setter
    def title(self, val: List[str]):
        self._data['title'] = list(val or [])

    @property
    def creator(self) -> List[str]:
        return self._data['creator']

    @creator.setter
    def creator(self, val: List[str]):
        self._data['creator'] = list(val or [])

    @property
    def date_uploaded(self) -> str:
        return self._get('date_uploaded')

    @date_uploaded.setter
    def date_uploaded(self, val: str):
        self._set('date_uploaded', val)

    @property
    def date_modified(self) -> str:
        return self._get('date_modified')

    @date_modified.setter
    def date_modified(self, val: str):
        self._set('date_modified', val)

    @property
    def import_url(self) -> str:
        """
        the URL the content was (or is to be) imported from, if it came from a remote source
        """
        return self._get('import_url')

    @import_url.setter
    def import_url(self, val: str):
        self._set('import_url', val)

    @property
    def files(self) -> Mapping:
        """
        a map of relation names (e.g. "original_file") to the identifier of the current version
        of the content stored for that relation
        """
        return self._data.setdefault('files', {})

    def set_attribute(self, name: str, val):
        """
        set a descriptive attribute by name
        """
        if name in self._lists and not isinstance(val, list):
            val = [val] if isinstance(val, str) else list(val or [])
        self._set(name, val)

    def get_attribute(self, name: str, defval=None):
        return self._get(name, defval)

    def validate(self, errs: List[str] = None) -> List[str]:
        errs = super(FileSet, self).validate(errs)
        if self.persisted and not self.title:
            errs.append("title: a file set requires a title")
        return errs

    def _replace_data(self, data: Mapping):
        super(FileSet, self)._replace_data(data)
        self.errors = []


class UploadedFile(Resource):
    """
    a file uploaded by a user that is cached locally (``path``) or that exists only as a reference
    to a remote location (``file_url``).  ``filename`` is the name the uploader gave the file, if
    known.
    """
    collection = UPLOADS

    @property
    def user(self) -> str:
        return self._get('user')

    @property
    def path(self) -> str:
        return self._get('path')

    @property
    def filename(self) -> str:
        return self._get('filename')

    @property
    def file_url(self) -> str:
        return self._get('file_url')

    @property
    def mime_type(self) -> str:
        return self._get('mime_type')

    def validate(self, errs: List[str] = None) -> List[str]:
        errs = super(UploadedFile, self).validate(errs)
        if not self.path and not self.file_url:
            errs.append("uploaded file has neither a cached path nor a file_url")
        return errs


class ContentDescriptor(Resource):
    """
    the durable record of a pending content-ingestion request.  It binds the payload (either a
    reference to an :py:class:`UploadedFile` or a local path), the relation slot the content
    should be stored under, the acting user, and the target FileSet.
    """
    collection = DESCRIPTORS

    @property
    def user(self) -> Agent:
        data = self._get('user')
        return Agent.from_dict(data) if data else None

    @property
    def relation(self) -> str:
        return self._get('relation')

    @property
    def file_set_id(self) -> str:
        return self._get('file_set_id')

    @property
    def uploaded_file_id(self) -> str:
        return self._get('uploaded_file_id')

    @property
    def path(self) -> str:
        return self._get('path')

    @property
    def original_name(self) -> str:
        return self._get('original_name')

    @property
    def mime_type(self) -> str:
        return self._get('mime_type')

    def validate(self, errs: List[str] = None) -> List[str]:
        errs = super(ContentDescriptor, self).validate(errs)
        for prop in "relation file_set_id user".split():
            if not self._get(prop):
                errs.append("%s: missing required property" % prop)
        if not self.uploaded_file_id and not self.path:
            errs.append("descriptor has neither an uploaded file nor a path")
        return errs


_resource_types = { cls.collection: cls for cls in (Work, FileSet, UploadedFile, ContentDescriptor) }

class ResourceStore(ABC):
    """
    the persistence boundary for DAMS resources.

    :py:meth:`save` validates and writes a resource (assigning an identifier if necessary);
    :py:meth:`find` retrieves a resource by identifier; :py:meth:`reload` refreshes an instance
    with the latest copy in the store; and :py:meth:`delete` removes a resource.  Deleting a
    FileSet also removes its identifier from the member list of any Work that contains it.

    Subclasses implement the collection-level primitives (``_upsert``, ``_get_from_coll``, etc.)
    for a particular backend.  This class supports the following configuration parameters:

    ``id_shoulder``
         (str) _optional_.  The prefix to use when minting identifiers (default: "dams0").
    """

    def __init__(self, config: Mapping = None, log: Logger = None):
        if config is None:
            config = {}
        self._cfg = config
        if not log:
            log = logging.getLogger("dams.store")
        self.log = log

    @property
    def shoulder(self) -> str:
        return self._cfg.get('id_shoulder', DEF_ID_SHOULDER)

    def assign_id(self, resource: Resource) -> str:
        """
        ensure that the given resource has an identifier, minting a new one if necessary, and
        return it.  The resource is not saved.
        """
        if not resource.id:
            resource.id = self._mint_id(resource.collection)
        return resource.id

    def _mint_id(self, collname: str) -> str:
        prefix = { WORKS: "w", FILE_SETS: "fs", UPLOADS: "up", DESCRIPTORS: "io" }.get(collname, "r")
        return "{0}:{1}{2:04}".format(self.shoulder, prefix, self._next_recnum(collname))

    def save(self, resource: Resource) -> Resource:
        """
        validate and save the given resource.  An identifier is assigned if it does not have one
        already.  The given instance is updated to reflect the saved state.

        :return:  a fresh copy of the resource as saved
        :raise InvalidResource:    if the resource fails validation; nothing is written
        :raise PersistenceError:   if the backend fails to write the resource
        """
        if not resource.collection:
            raise ValueError("save(): not a storable resource: " + repr(resource))
        errs = resource.validate()
        if errs:
            raise InvalidResource(resource.id, errors=errs)

        self.assign_id(resource)
        now = time_in_utc()
        data = resource.to_dict()
        if not data.get('created'):
            data['created'] = now
        data['modified'] = now

        try:
            self._upsert(resource.collection, data)
        except StoreException:
            raise
        except Exception as ex:
            raise PersistenceError("%s: failed to save: %s" % (resource.id, str(ex)),
                                   resource.id, cause=ex)
        resource._replace_data(data)
        return self._wrap(resource.collection, data)

    def find(self, id: str, rtype: type = None) -> Resource:
        """
        return the resource with the given identifier.
        :param str    id:  the identifier of the resource
        :param type rtype: the expected resource class (e.g. ``Work``); if not given, all
                           collections are searched.
        :raise ObjectNotFound:  if the resource does not exist
        """
        colls = [rtype.collection] if rtype else list(_resource_types.keys())
        for coll in colls:
            data = self._get_from_coll(coll, id)
            if data:
                return self._wrap(coll, data)
        raise ObjectNotFound(id)

    def exists(self, id: str, rtype: type = None) -> bool:
        try:
            self.find(id, rtype)
            return True
        except ObjectNotFound:
            return False

    def reload(self, resource: Resource) -> Resource:
        """
        replace the contents of the given resource instance with the latest version in the store
        :raise ObjectNotFound:  if the resource no longer exists in the store
        """
        if not resource.id:
            raise ObjectNotFound(None, message="reload(): resource has not been saved")
        data = self._get_from_coll(resource.collection, resource.id)
        if not data:
            raise ObjectNotFound(resource.id)
        resource._replace_data(data)
        return resource

    def delete(self, resource: Resource) -> bool:
        """
        remove the given resource from the store.  When the resource is a FileSet, its identifier
        is also removed from the member list of any Work that contains it.
        :return:  False if the resource did not exist in the store, True otherwise
        """
        if not resource.id:
            return False
        try:
            if isinstance(resource, FileSet):
                for work in list(self._select_prop_contains(WORKS, "member_ids", resource.id)):
                    self._remove_from_list(WORKS, work['id'], "member_ids", resource.id)
            out = self._delete_from(resource.collection, resource.id)
        except StoreException:
            raise
        except Exception as ex:
            raise PersistenceError("%s: failed to delete: %s" % (resource.id, str(ex)),
                                   resource.id, cause=ex)
        resource._persisted = False
        return out

    def find_parent(self, file_set: FileSet) -> Work:
        """
        return the Work that has the given FileSet as a member, or None if it is not attached
        """
        if not file_set.id:
            return None
        for data in self._select_prop_contains(WORKS, "member_ids", file_set.id):
            return self._wrap(WORKS, data)
        return None

    def find_members(self, work: Work) -> List[FileSet]:
        """
        return the FileSets that are members of the given Work, in member order.  Identifiers that
        no longer resolve to a FileSet are skipped.
        """
        out = []
        for mid in work.member_ids:
            data = self._get_from_coll(FILE_SETS, mid)
            if data:
                out.append(self._wrap(FILE_SETS, data))
        return out

    def select(self, rtype: type, **constraints) -> Iterator[Resource]:
        """
        return an iterator to the resources of a given type whose properties match the given
        constraints
        """
        for data in self._select_from_coll(rtype.collection, **constraints):
            yield self._wrap(rtype.collection, data)

    def _wrap(self, collname: str, data: Mapping) -> Resource:
        out = _resource_types[collname](data)
        out._persisted = True
        return out

    @abstractmethod
    def _next_recnum(self, collname: str) -> int:
        """
        return an unused record number that can be used to mint a new identifier for a record
        in the given collection
        """
        raise NotImplementedError()

    @abstractmethod
    def _upsert(self, collname: str, recdata: Mapping) -> bool:
        """
        insert or update a data record into the specified collection.
        :return:  True if the record, based on its `id` property, was added for the first time.
        """
        raise NotImplementedError()

    @abstractmethod
    def _get_from_coll(self, collname: str, id: str) -> MutableMapping:
        """
        return a record with a given identifier from the specified collection or None if it
        does not exist
        """
        raise NotImplementedError()

    @abstractmethod
    def _select_from_coll(self, collname: str, **constraints) -> Iterator[MutableMapping]:
        """
        return an iterator to the records from a specified collection that match the set of
        given constraints.
        """
        raise NotImplementedError()

    @abstractmethod
    def _select_prop_contains(self, collname: str, prop: str, target) -> Iterator[MutableMapping]:
        """
        return an iterator to the records from a specified collection in which the named list
        property contains a given target value.
        """
        raise NotImplementedError()

    @abstractmethod
    def _remove_from_list(self, collname: str, id: str, prop: str, target):
        """
        remove all occurances of a value from a list property of a record.  Nothing should happen
        if the record does not exist.
        """
        raise NotImplementedError()

    @abstractmethod
    def _delete_from(self, collname: str, id: str) -> bool:
        """
        delete a record with the given id from the named collection.  Nothing should happen if the
        record does not exist in the database collection.
        :return:  True if the record existed
        """
        raise NotImplementedError()


class StoreException(DAMSException):
    """
    a general base Exception class for exceptions that occur while interacting with a ResourceStore
    """
    pass

class PersistenceError(StoreException):
    """
    an exception indicating that a resource could not be saved or loaded, either because it is
    invalid or because the backend store is unavailable.
    """
    def __init__(self, message, recid=None, cause=None, sys=None):
        super(PersistenceError, self).__init__(message, cause, sys)
        self.record_id = recid

class InvalidResource(PersistenceError):
    """
    an exception indicating that resource failed validation and so was not saved.  The ``errors``
    property contains a list of messages, each describing a validation error encountered.
    """
    def __init__(self, recid: str = None, message: str = None, errors: List[str] = None, sys=None):
        if not errors:
            errors = [message] if message else []
        if not message:
            if len(errors) == 1:
                message = "Validation Error: " + errors[0]
            elif len(errors) == 0:
                message = "Unknown validation errors encountered"
            else:
                message = "Encountered %d validation errors, including: %s" % (len(errors), errors[0])
        if recid:
            message = "%s: %s" % (recid, message)
        super(InvalidResource, self).__init__(message, recid, sys=sys)
        self.errors = errors

class ObjectNotFound(StoreException):
    """
    an exception indicating that the requested resource does not exist.
    """
    def __init__(self, recid, message=None, sys=None):
        if not message:
            message = "Requested resource with id=%s does not exist" % recid
        super(ObjectNotFound, self).__init__(message, sys=sys)
        self.record_id = recid

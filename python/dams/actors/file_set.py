"""
The actor that carries a FileSet through its lifecycle:

  1. :py:meth:`FileSetActor.create_content` -- save the new FileSet and ingest its content, either 
     right away (for content imported from a URL) or via a deferred ``ingest`` task.
  2. :py:meth:`FileSetActor.create_metadata` -- stamp the depositor, dates, and any explicitly 
     requested visibility.
  3. :py:meth:`FileSetActor.attach_to_work` -- add the FileSet to its parent Work's member list.
  4. :py:meth:`FileSetActor.update_content`, :py:meth:`FileSetActor.revert_content`, and 
     :py:meth:`FileSetActor.update_metadata` -- make later changes.
  5. :py:meth:`FileSetActor.destroy` -- detach the FileSet from its Work and delete it.

A Work's member list, representative, and thumbnail are only ever changed while holding the lock
for that Work (see :py:class:`~dams.locking.LockManager`); the Work is reloaded after the lock is 
acquired so that updates made by a previous lock holder are not lost.  Failures to save are 
reported by a False return value; a missing Work or a lock timeout is raised.
"""
import logging
from collections.abc import Mapping
from typing import Callable, Union
from logging import Logger

from ..store import FileSet, Work, PersistenceError, ObjectNotFound, time_in_utc
from ..store.base import VISIBILITY_EMBARGO, VISIBILITY_LEASE
from ..jobmgt import Job
from ..utils.prov import Agent
from ..utils.logging import blab
from .content import as_payload, label_for, create_descriptor
from .file_actor import FileActor
from .workflows import Ability, Environment, FileSetCreateWorkflow, FileSetUpdateWorkflow

ORIGINAL_FILE = "original_file"
_explicit_visibility_params = ("visibility", "embargo_release_date", "lease_expiration_date")

def assigns_visibility(params: Mapping) -> bool:
    """
    return True if the given FileSet parameters explicitly request a visibility
    """
    return bool(params) and any(p in params for p in _explicit_visibility_params)

class FileSetActor(object):
    """
    the actor responsible for the content, metadata, and Work membership of a single FileSet on 
    behalf of a user.

    :param FileSet file_set:  the FileSet to act on
    :param Agent       user:  the user on whose behalf changes are made
    :param services:          the :py:class:`~dams.services.RepositoryServices` to use
    :param file_actor_class:  the class used to ingest and revert content (default: FileActor)
    """

    def __init__(self, file_set: FileSet, user: Agent, services, file_actor_class=FileActor,
                 log: Logger = None):
        self.file_set = file_set
        self.user = user
        self.services = services
        self.file_actor_class = file_actor_class
        if not log:
            log = logging.getLogger("dams.actors.file_set")
        self.log = log
        self._visibility_assigned = False

    @property
    def store(self):
        return self.services.store

    @property
    def ability(self) -> Ability:
        return Ability(self.user, self.services.ability_config)

    def create_content(self, file, relation: str = ORIGINAL_FILE,
                       from_url: bool = False) -> Union[Job, bool]:
        """
        save the FileSet and ingest the given file as its content.  A missing label is derived 
        from the file (see :py:func:`~dams.actors.content.label_for`) and a missing title is set 
        to the label.

        When ``from_url`` is True, the file has already been retrieved from the FileSet's 
        ``import_url``: it is ingested immediately, after which the parent Work's visibility and 
        permissions are propagated to its members via deferred tasks.  Otherwise, ingestion is 
        deferred to an ``ingest`` task.  The propagated visibility replaces any visibility the 
        FileSet was given explicitly, so an imported file always ends up with its Work's visibility.

        :param file:  the content as a payload variant or anything accepted by 
                      :py:func:`~dams.actors.content.as_payload`
        :return:  the handle for the last task submitted (or True if the content was ingested and
                  there was no parent to propagate to); False if the FileSet could not be saved.
        :raise PersistenceError:  if the content descriptor could not be saved
        """
        payload = as_payload(file)
        if not self.file_set.label:
            self.file_set.label = label_for(payload, self.file_set.import_url)
        if not self.file_set.title and self.file_set.label:
            self.file_set.title = [self.file_set.label]

        if not self._save_file_set():
            return False

        descriptor = create_descriptor(self.store, self.file_set, payload, relation, self.user, self.log)
        if from_url:
            self._build_file_actor(relation).ingest_file(descriptor)
            parent = self.store.find_parent(self.file_set)
            if not parent:
                return True
            self.services.tasks.enqueue("visibility_copy", parent.id)
            return self.services.tasks.enqueue("inherit_permissions", parent.id)

        return self.services.tasks.enqueue("ingest", descriptor.id)

    def update_content(self, file, relation: str = ORIGINAL_FILE) -> Job:
        """
        ingest new content for the FileSet via a deferred task; the user is notified when it is done.
        :raise PersistenceError:  if the content descriptor could not be saved
        """
        descriptor = create_descriptor(self.store, self.file_set, as_payload(file), relation,
                                       self.user, self.log)
        return self.services.tasks.enqueue("ingest", descriptor.id, ["--notify"])

    def revert_content(self, revision_id: str, relation: str = ORIGINAL_FILE) -> bool:
        """
        make the content of an earlier revision the current content
        :return:  False if the revert failed
        """
        try:
            if not self._build_file_actor(relation).revert_to(revision_id):
                return False
        except PersistenceError as ex:
            self.log.error("%s: failed to revert to %s: %s", self.file_set.id, revision_id, str(ex))
            return False
        self.services.callbacks.run("after_revert_content", self.file_set, self.user, revision_id)
        return True

    def create_metadata(self, params: Mapping = None, customize: Callable = None) -> bool:
        """
        set the depositor, creator, and upload and modification dates of a new FileSet.  If 
        ``params`` requests a visibility, embargo, or lease, it is applied now, and 
        :py:meth:`attach_to_work` will not replace it with the Work's visibility.  The FileSet is 
        not saved.
        :param dict  params:  the FileSet parameters requested by the user
        :param customize:     a function that will be passed the FileSet for further changes
        :return:  False if the requested visibility could not be applied
        """
        self.file_set.apply_depositor_metadata(self.user)
        now = time_in_utc()
        self.file_set.date_uploaded = now
        self.file_set.date_modified = now
        self.file_set.creator = [self.user.actor]

        ok = True
        if assigns_visibility(params):
            self._visibility_assigned = True
            env = Environment(self.file_set, self.ability, params)
            ok = FileSetCreateWorkflow(self.log).create(env)
        if customize:
            customize(self.file_set)
        return ok

    def update_metadata(self, attributes: Mapping) -> bool:
        """
        apply updated metadata to the FileSet and save it.  Problems are recorded in the 
        FileSet's ``errors`` list.
        :return:  False if the update was not applied
        """
        env = Environment(self.file_set, self.ability, attributes)
        return FileSetUpdateWorkflow(self.store, self.log).update(env)

    def attach_to_work(self, work: Work, file_set_params: Mapping = None) -> bool:
        """
        add the FileSet to the end of the given Work's member list and save both.  The first 
        FileSet attached to a Work becomes its representative and thumbnail.  Unless a visibility
        was explicitly requested (via ``file_set_params`` or an earlier call to 
        :py:meth:`create_metadata`), the FileSet takes on the Work's visibility.

        The Work is reloaded and updated while holding its lock.  Attaching the same FileSet 
        twice lists it twice.

        :return:  False if either the FileSet or the Work could not be saved
        :raise LockTimeoutError:  if the Work's lock could not be acquired; nothing is changed
        :raise ObjectNotFound:    if the Work has been deleted
        """
        if file_set_params is not None:
            explicit = assigns_visibility(file_set_params)
        else:
            explicit = self._visibility_assigned
        if not work.id:
            self.store.assign_id(work)

        with self.services.locks.lock_for(work.id):
            if work.persisted:
                self.store.reload(work)
            if not explicit:
                self._copy_visibility(work)
            if not self.file_set.title and self.file_set.label:
                self.file_set.title = [self.file_set.label]
            if not self._save_file_set():
                return False

            work.member_ids.append(self.file_set.id)
            if not work.representative_id:
                work.representative_id = self.file_set.id
            if not work.thumbnail_id:
                work.thumbnail_id = self.file_set.id
            if not self._perform_save(work):
                return False
            blab(self.log, "%s: attached %s as member #%d", work.id, self.file_set.id, len(work.member_ids))

        self.services.callbacks.run("after_create_fileset", self.file_set, self.user)
        return True

    def destroy(self) -> bool:
        """
        delete the FileSet and its content.  If the FileSet is the representative or thumbnail of 
        its Work, that reference is cleared and the Work saved first; in any case, the FileSet is 
        removed from the Work's member list.
        :return:  False if the Work could not be saved (in which case nothing is deleted)
        :raise LockTimeoutError:  if the parent Work's lock could not be acquired
        :raise ObjectNotFound:    if the parent Work was deleted while this FileSet was detached
        """
        fsid = self.file_set.id
        if not fsid:
            return False

        parent = self.store.find_parent(self.file_set)
        if parent:
            with self.services.locks.lock_for(parent.id):
                self.store.reload(parent)
                if not self._unlink_from(parent):
                    return False
                self.store.delete(self.file_set)
        else:
            self.store.delete(self.file_set)

        self.services.binaries.purge(fsid)
        self.log.info("%s: deleted FileSet", fsid)
        self.services.callbacks.run("after_destroy", fsid, self.user)
        return True

    def _unlink_from(self, work: Work) -> bool:
        changed = False
        if work.representative_id == self.file_set.id:
            work.representative_id = None
            changed = True
        if work.thumbnail_id == self.file_set.id:
            work.thumbnail_id = None
            changed = True
        if changed:
            return self._perform_save(work)
        return True

    def _copy_visibility(self, work: Work):
        if work.visibility in (VISIBILITY_EMBARGO, VISIBILITY_LEASE):
            self.file_set.embargo = work.embargo
            self.file_set.lease = work.lease
        self.file_set.visibility = work.visibility

    def _save_file_set(self) -> bool:
        # the files map is owned by FileActor, which records new versions on its own copy
        if self.file_set.persisted:
            try:
                current = self.store.find(self.file_set.id, FileSet)
            except ObjectNotFound as ex:
                self.log.error("%s: failed to save: %s", self.file_set.id, str(ex))
                return False
            self.file_set.files.clear()
            self.file_set.files.update(current.files)
        return self._perform_save(self.file_set)

    def _perform_save(self, resource) -> bool:
        try:
            self.store.save(resource)
        except PersistenceError as ex:
            self.log.error("%s: failed to save: %s", resource.id or repr(resource), str(ex))
            return False
        return True

    def _build_file_actor(self, relation: str) -> FileActor:
        return self.file_actor_class(self.file_set, relation, self.user, self.services)

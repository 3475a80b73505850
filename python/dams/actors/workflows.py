"""
The workflows that apply user-supplied metadata to a FileSet, together with the authorization 
check that they consult.

A workflow is given an :py:class:`Environment` carrying the resource being changed (the 
*curation concern*), the :py:class:`Ability` of the requesting user, and the requested attributes.
Problems are not raised; instead, they are appended to the FileSet's ``errors`` list and the 
workflow returns False.
"""
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import List
from logging import Logger

from ..store import (FileSet, ResourceStore, PersistenceError, InvalidResource, ObjectNotFound,
                     time_in_utc)
from ..store.base import (AccessControlled, VISIBILITIES, VISIBILITY_OPEN, VISIBILITY_AUTHENTICATED,
                          VISIBILITY_RESTRICTED, VISIBILITY_EMBARGO, VISIBILITY_LEASE,
                          PUBLIC_GROUP, REGISTERED_GROUP)
from ..utils.prov import Agent

VISIBILITY_PARAMS = ("visibility", "embargo_release_date", "visibility_during_embargo",
                     "visibility_after_embargo", "lease_expiration_date", "visibility_during_lease",
                     "visibility_after_lease")
_basic_visibilities = (VISIBILITY_OPEN, VISIBILITY_AUTHENTICATED, VISIBILITY_RESTRICTED)

class Ability(object):
    """
    the capabilities of a user.  Superusers (listed in the ``superusers`` configuration parameter)
    and members of the ``admin_group`` can do anything.  Otherwise:

    ``edit`` (and ``destroy``)
         requires being the depositor or holding an edit grant (as a user or via a group)
    ``read``
         requires edit permission, a read grant, or a visibility that admits the user
    """

    def __init__(self, user: Agent, config: Mapping = None):
        self.user = user
        if config is None:
            config = {}
        self.cfg = config

    @property
    def is_superuser(self) -> bool:
        if self.user.actor in self.cfg.get('superusers', []):
            return True
        return bool(self.cfg.get('admin_group')) and self.user.is_in_group(self.cfg['admin_group'])

    def can(self, action: str, resource: AccessControlled) -> bool:
        """
        return True if this user may carry out the given action on the given resource
        """
        if self.is_superuser:
            return True
        if action in ("edit", "destroy"):
            return self._can_edit(resource)
        if action == "read":
            return self._can_read(resource)
        return False

    def cannot(self, action: str, resource: AccessControlled) -> bool:
        return not self.can(action, resource)

    def _can_edit(self, resource):
        if self.user.is_anonymous:
            return False
        if resource.depositor == self.user.actor or self.user.actor in resource.edit_users:
            return True
        return any(g in resource.edit_groups for g in self.user.groups)

    def _can_read(self, resource):
        if PUBLIC_GROUP in resource.read_groups:
            return True
        if self.user.is_anonymous:
            return False
        if REGISTERED_GROUP in resource.read_groups:
            return True
        if self.user.actor in resource.read_users or any(g in resource.read_groups for g in self.user.groups):
            return True
        return self._can_edit(resource)

class Environment(object):
    """
    the context for a workflow request
    """
    def __init__(self, curation_concern: AccessControlled, ability: Ability, attributes: Mapping):
        self.curation_concern = curation_concern
        self.ability = ability
        self.attributes = dict(attributes or {})

def _future_date(val, name: str, errors: List[str]) -> str:
    try:
        if isinstance(val, datetime):
            when = val
        else:
            when = datetime.fromisoformat(str(val))
    except ValueError:
        errors.append("%s: not a recognizable date: %s" % (name, val))
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    if when <= datetime.now(timezone.utc):
        errors.append("%s: date must be in the future: %s" % (name, val))
        return None
    return when.isoformat()

def _choice(attrs, name, default, errors):
    val = attrs.get(name) or default
    if val not in _basic_visibilities:
        errors.append("%s: not an allowed value: %s" % (name, val))
    return val

def apply_visibility(resource: AccessControlled, attrs: Mapping, errors: List[str]) -> bool:
    """
    apply the visibility requested by the given attributes (see :py:data:`VISIBILITY_PARAMS`) to
    a resource.  An embargo is applied when the visibility is "embargo" or when only an embargo 
    release date is given; likewise for a lease.  Any problems are appended to ``errors`` and 
    leave the resource unchanged.
    :return:  True if the visibility was applied without error
    """
    nerrs = len(errors)
    vis = attrs.get('visibility')
    if not vis:
        if attrs.get('embargo_release_date'):
            vis = VISIBILITY_EMBARGO
        elif attrs.get('lease_expiration_date'):
            vis = VISIBILITY_LEASE
        else:
            return True
    if vis not in VISIBILITIES:
        errors.append("visibility: not an allowed value: %s" % vis)
        return False

    embargo = None
    lease = None
    if vis == VISIBILITY_EMBARGO:
        if not attrs.get('embargo_release_date'):
            errors.append("embargo_release_date: required for an embargo")
            return False
        embargo = {
            "embargo_release_date": _future_date(attrs['embargo_release_date'], "embargo_release_date", errors),
            "visibility_during_embargo": _choice(attrs, "visibility_during_embargo",
                                                 VISIBILITY_RESTRICTED, errors),
            "visibility_after_embargo": _choice(attrs, "visibility_after_embargo", VISIBILITY_OPEN, errors)
        }
    elif vis == VISIBILITY_LEASE:
        if not attrs.get('lease_expiration_date'):
            errors.append("lease_expiration_date: required for a lease")
            return False
        lease = {
            "lease_expiration_date": _future_date(attrs['lease_expiration_date'], "lease_expiration_date", errors),
            "visibility_during_lease": _choice(attrs, "visibility_during_lease", VISIBILITY_OPEN, errors),
            "visibility_after_lease": _choice(attrs, "visibility_after_lease", VISIBILITY_RESTRICTED, errors)
        }

    if len(errors) > nerrs:
        return False
    resource.embargo = embargo
    resource.lease = lease
    resource.visibility = vis
    return True

class FileSetCreateWorkflow(object):
    """
    the workflow that applies the visibility settings requested when a FileSet is created.  The 
    FileSet is not saved.
    """
    def __init__(self, log: Logger = None):
        if not log:
            log = logging.getLogger("dams.actors.workflows")
        self.log = log

    def create(self, env: Environment) -> bool:
        file_set = env.curation_concern
        errors = []
        ok = apply_visibility(file_set, env.attributes, errors)
        if not ok:
            file_set.errors.extend(errors)
            self.log.info("%s: visibility not applied: %s", file_set.id or "new FileSet", "; ".join(errors))
        return ok

class FileSetUpdateWorkflow(object):
    """
    the workflow that applies updated descriptive metadata and visibility to a FileSet and saves it

    A FileSet that has been saved before is first reloaded, so content versions recorded by 
    another copy (e.g. by an ingest task) are not written over.
    """
    allowed_fields = ("title", "label", "creator", "description", "keyword", "license",
                      "rights_statement", "language", "resource_type")

    def __init__(self, store: ResourceStore, log: Logger = None):
        self.store = store
        if not log:
            log = logging.getLogger("dams.actors.workflows")
        self.log = log

    def update(self, env: Environment) -> bool:
        file_set = env.curation_concern
        if file_set.persisted:
            try:
                self.store.reload(file_set)
            except ObjectNotFound as ex:
                file_set.errors.append(str(ex))
                return False

        if env.ability.cannot("edit", file_set):
            file_set.errors.append("%s: user %s is not authorized to edit" %
                                   (file_set.id, env.ability.user.actor))
            return False

        attrs = dict(env.attributes)
        visattrs = dict((k, attrs.pop(k)) for k in VISIBILITY_PARAMS if k in attrs)
        unknown = sorted(k for k in attrs if k not in self.allowed_fields)
        if unknown:
            file_set.errors.extend("%s: not an updatable attribute" % k for k in unknown)
            return False

        errors = []
        for name, val in attrs.items():
            file_set.set_attribute(name, val)
        if visattrs and not apply_visibility(file_set, visattrs, errors):
            file_set.errors.extend(errors)
            return False
        file_set.date_modified = time_in_utc()

        try:
            self.store.save(file_set)
        except InvalidResource as ex:
            file_set.errors.extend(ex.errors)
            return False
        except PersistenceError as ex:
            self.log.error("%s: failed to save metadata update: %s", file_set.id, str(ex))
            file_set.errors.append(str(ex))
            return False
        return True

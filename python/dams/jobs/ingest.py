"""
The task that ingests content described by a persisted 
:py:class:`~dams.store.base.ContentDescriptor` into its FileSet.

When run with the ``--notify`` argument, the ``after_update_content`` hook is run and the user is 
notified once the content is in place.  A failure is always reported to the user via the 
notifier; if the content was being imported from a URL, the ``after_import_url_failure`` hook is 
also run.  Re-running the task for the same descriptor adds another version of the same content.
"""
import logging
from collections.abc import Mapping
from typing import List
from logging import Logger

from .. import DAMSException
from ..store import ContentDescriptor, FileSet, ObjectNotFound

LOGNAME = "ingest"

class IngestFailure(DAMSException):
    """
    an exception indicating that content could not be ingested into a FileSet
    """
    def __init__(self, message, file_set_id=None, cause=None):
        super(IngestFailure, self).__init__(message, cause)
        self.file_set_id = file_set_id

def run(services, descriptor_id: str, args: List[str] = None, log: Logger = None) -> Mapping:
    """
    ingest the content described by the descriptor with the given identifier
    :return:  the description of the new content version
    :raise IngestFailure:  if the content could not be ingested
    """
    from ..actors.file_actor import FileActor

    if args is None:
        args = []
    if not log:
        log = logging.getLogger("dams.jobs.ingest")

    try:
        descriptor = services.store.find(descriptor_id, ContentDescriptor)
    except ObjectNotFound as ex:
        raise IngestFailure("%s: content descriptor not found" % descriptor_id, cause=ex)
    user = descriptor.user

    try:
        file_set = services.store.find(descriptor.file_set_id, FileSet)
    except ObjectNotFound as ex:
        msg = "%s: FileSet no longer exists; content not ingested" % descriptor.file_set_id
        log.warning(msg)
        services.notifier.notify_user(user, "ingest_failed", descriptor.file_set_id, msg)
        raise IngestFailure(msg, descriptor.file_set_id, ex)

    actor = FileActor(file_set, descriptor.relation, user, services)
    try:
        version = actor.ingest_file(descriptor)
    except Exception as ex:
        msg = "%s: failed to ingest %s content: %s" % (file_set.id, descriptor.relation, str(ex))
        log.error(msg)
        services.notifier.notify_user(user, "ingest_failed", file_set.id, msg)
        if file_set.import_url:
            services.callbacks.run("after_import_url_failure", file_set, user)
        raise IngestFailure(msg, file_set.id, ex)

    log.info("%s: ingested %s as %s/%s", file_set.id, version['label'], descriptor.relation, version['id'])
    if "--notify" in args:
        services.callbacks.run("after_update_content", file_set, user)
        services.notifier.notify_user(user, "ingest_complete", file_set.id,
                                      "%s has been ingested" % version['label'],
                                      relation=descriptor.relation, version=version['id'])
    return version

def process(descriptor_id: str, config: Mapping, args: List[str], log: Logger = None):
    from ..services import RepositoryServices
    services = RepositoryServices.from_config(config, log, inline_tasks=True)
    run(services, descriptor_id, args, log)

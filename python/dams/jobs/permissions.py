"""
The task that gives each of a Work's member FileSets the read and edit grants held on the Work.
Grants already on a FileSet are kept.  The "public" and "registered" groups are not copied, as they
express visibility (see :py:mod:`dams.jobs.visibility`).
"""
import logging
from collections.abc import Mapping
from typing import List
from logging import Logger

from ..store import Work
from ..store.base import PUBLIC_GROUP, REGISTERED_GROUP

LOGNAME = "permissions"
GRANTS = ("read_users", "edit_users", "read_groups", "edit_groups")
_visibility_groups = (PUBLIC_GROUP, REGISTERED_GROUP)

def run(services, work_id: str, args: List[str] = None, log: Logger = None) -> int:
    """
    copy the grants of the Work with the given identifier onto its members
    :return:  the number of FileSets that were changed
    :raise ObjectNotFound:  if the Work does not exist
    """
    if not log:
        log = logging.getLogger("dams.jobs.permissions")
    work = services.store.find(work_id, Work)

    changed = 0
    for fs in services.store.find_members(work):
        dirty = False
        for grant in GRANTS:
            have = getattr(fs, grant)
            for who in getattr(work, grant):
                if who not in have and who not in _visibility_groups:
                    have.append(who)
                    dirty = True
        if dirty:
            services.store.save(fs)
            changed += 1

    log.debug("%s: permissions copied to %d member(s)", work_id, changed)
    return changed

def process(work_id: str, config: Mapping, args: List[str], log: Logger = None):
    from ..services import RepositoryServices
    run(RepositoryServices.from_config(config, log, inline_tasks=True), work_id, args, log)

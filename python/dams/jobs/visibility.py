"""
The task that copies a Work's visibility--including any embargo or lease--onto each of its member
FileSets.
"""
import logging
from collections.abc import Mapping
from typing import List
from logging import Logger

from ..store import Work

LOGNAME = "visibility"

def run(services, work_id: str, args: List[str] = None, log: Logger = None) -> int:
    """
    copy the visibility of the Work with the given identifier onto its members
    :return:  the number of FileSets that were changed
    :raise ObjectNotFound:  if the Work does not exist
    """
    if not log:
        log = logging.getLogger("dams.jobs.visibility")
    work = services.store.find(work_id, Work)

    changed = 0
    for fs in services.store.find_members(work):
        if fs.visibility == work.visibility and fs.embargo == work.embargo and fs.lease == work.lease:
            continue
        fs.embargo = work.embargo
        fs.lease = work.lease
        fs.visibility = work.visibility
        services.store.save(fs)
        changed += 1

    log.debug("%s: visibility (%s) copied to %d member(s)", work_id, work.visibility, changed)
    return changed

def process(work_id: str, config: Mapping, args: List[str], log: Logger = None):
    from ..services import RepositoryServices
    run(RepositoryServices.from_config(config, log, inline_tasks=True), work_id, args, log)

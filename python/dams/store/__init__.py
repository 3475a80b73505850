"""
The persistence layer for DAMS resources.  :py:func:`create_store` builds the 
:py:class:`~dams.store.base.ResourceStore` selected by the configuration:

``type``
     (str) _optional_.  One of "inmem" (default), "fsbased", or "mongo".
``root_dir``
     (str) _required for fsbased_.  The directory where records are written.
``db_url``
     (str) _required for mongo_.  The MongoDB database URL.
``id_shoulder``
     (str) _optional_.  The prefix for minted identifiers.
"""
from collections.abc import Mapping
from logging import Logger

from .base import *
from .base import ResourceStore
from ..config import ConfigurationException

def create_store(config: Mapping, log: Logger = None) -> ResourceStore:
    """
    create a ResourceStore as directed by the given configuration
    """
    stype = config.get('type', 'inmem')
    if stype == 'inmem':
        from .inmem import InMemoryResourceStore
        return InMemoryResourceStore(config, log=log)

    if stype == 'fsbased':
        from .fsbased import FSBasedResourceStore
        if not config.get('root_dir'):
            raise ConfigurationException("store.root_dir: required parameter for fsbased store is missing")
        return FSBasedResourceStore(config['root_dir'], config, log)

    if stype == 'mongo':
        from .mongo import MongoResourceStore
        if not config.get('db_url'):
            raise ConfigurationException("store.db_url: required parameter for mongo store is missing")
        return MongoResourceStore(config['db_url'], config, log)

    raise ConfigurationException("store.type: unsupported store type: " + str(stype))

"""
The actors that carry out the lifecycle of a FileSet: ingesting its content, applying its metadata,
attaching it to its parent Work, and tearing it down.  :py:class:`FileSetActor` is the entry point; 
see :py:mod:`dams.actors.file_set`.
"""
from .content import CachedUpload, RawFile, NamedDecorator, as_payload, label_for
from .file_actor import FileActor
from .workflows import Environment, Ability, FileSetCreateWorkflow, FileSetUpdateWorkflow
from .file_set import FileSetActor

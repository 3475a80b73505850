"""
The deferred tasks that the FileSet actors submit via a :py:class:`~dams.tasks.TaskQueue`.  Each 
module provides a ``run()`` function for execution in the current process and a ``process()`` 
function for execution in a separate process via :py:mod:`dams.jobmgt.exec`.
"""

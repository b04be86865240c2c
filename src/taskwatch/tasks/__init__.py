"""
Task subsystem.

Components:
- task_models.py: data structures (TaskState, DispatchRequest, TaskRecord)
- task_codec.py: JSON encoding of inputs, results and failures
- task_store.py: SQLite-backed result store
- task_queue.py: SQLite-backed local queue (dispatch channel)
- task_registry.py: named callables the worker may run
- task_handle.py / task_api.py: the caller-facing client
- task_worker.py: polling worker that executes queued tasks
"""

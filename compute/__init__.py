"""Transport-free core shared by the dispatch server and worker agents.

Import submodules directly:

    from compute.models import Job, Task, TaskStatus
    from compute.storage import TaskQueue, TaskStore
    from compute.predictor import SubprocessPredictor
"""

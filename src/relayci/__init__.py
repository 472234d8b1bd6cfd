from .dsl import JobBuilder, build, cache, container, job, matrix, sh, wf, workflow
from .model import Job, JobState, Step, Workflow
from .scheduler import Scheduler, run_workflow

__all__ = [
    "job",
    "sh",
    "cache",
    "container",
    "matrix",
    "wf",
    "workflow",
    "JobBuilder",
    "build",
    "Scheduler",
    "run_workflow",
    "Job",
    "JobState",
    "Step",
    "Workflow",
]

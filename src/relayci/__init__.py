from .conditions import always, failure, on_branch, on_event, success
from .dsl import JobBuilder, build, container, image, integration, job, matrix, publish_job, service, sh, wf
from .model import Job, RunResult, Step, Trigger
from .runner import run_pipeline
from .scheduler import Scheduler

__all__ = [
    "job", "sh", "matrix", "wf", "JobBuilder", "build", "container", "image", "integration",
    "publish_job", "service", "success", "failure", "always", "on_branch", "on_event",
    "run_pipeline", "Scheduler", "Job", "Step", "Trigger", "RunResult",
]

from .dsl import download, job, pipeline, publish, sh, ssh_copy, ssh_run, stage
from .loader import load_pipeline
from .scheduler import run_pipeline
from .model import Job, Pipeline, Stage, Step

__all__ = [
    "download", "job", "pipeline", "publish", "sh", "ssh_copy", "ssh_run", "stage",
    "load_pipeline", "run_pipeline", "Job", "Pipeline", "Stage", "Step",
]

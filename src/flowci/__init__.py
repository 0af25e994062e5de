from .dsl import job, sh, checkout, attach_workspace, persist_to_workspace, store_artifacts, ref, workflow, pipeline, matrix, JobBuilder, build
from .loader import load_pipeline, parse_pipeline
from .model import Job, JobRef, Pipeline, TriggerContext, Workflow, InvocationReport
from .orchestrator import Orchestrator
from .settings import Settings

__all__ = [
    "job", "sh", "checkout", "attach_workspace", "persist_to_workspace", "store_artifacts",
    "ref", "workflow", "pipeline", "matrix", "JobBuilder", "build",
    "load_pipeline", "parse_pipeline",
    "Job", "JobRef", "Pipeline", "TriggerContext", "Workflow", "InvocationReport",
    "Orchestrator", "Settings",
]

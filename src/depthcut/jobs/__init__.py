from .local import LocalJobRunner, LocalJobStore
from .models import JobStatus

__all__ = ["LocalJobRunner", "LocalJobStore", "JobStatus"]

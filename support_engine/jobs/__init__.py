"""Units of work executed by the AsyncTaskManager."""

from support_engine.jobs.analysis_job import AnalysisJob
from support_engine.jobs.embedding_job import EmbeddingJob

__all__ = ["AnalysisJob", "EmbeddingJob"]

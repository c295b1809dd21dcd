"""
Return ingestion: upload registration, retry policy and the worker.
"""

from tiss_claims.ingestion.retry_policy import RetryPolicy
from tiss_claims.ingestion.uploads import ReturnUploads
from tiss_claims.ingestion.worker import ReturnIngestionWorker

__all__ = [
    "RetryPolicy",
    "ReturnUploads",
    "ReturnIngestionWorker",
]

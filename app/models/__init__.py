"""SQLAlchemy models."""

from app.models.enums import BatchStatus, DNCSource, RequestMethod
from app.models.opt_out import PermanentOptOut
from app.models.suppression_entry import SuppressionEntry
from app.models.upload_batch import UploadBatch

__all__ = [
    "SuppressionEntry",
    "PermanentOptOut",
    "UploadBatch",
    "DNCSource",
    "RequestMethod",
    "BatchStatus",
]

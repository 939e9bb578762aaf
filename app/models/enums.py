"""Enumerations shared by the DNC models and schemas."""

from enum import Enum


class DNCSource(str, Enum):
    """Origin of a block decision."""

    NATIONAL = "NATIONAL"
    STATE = "STATE"
    MANUAL_UPLOAD = "MANUAL_UPLOAD"
    INTERNAL = "INTERNAL"


# Sources a suppression entry (and an upload batch) may carry
SUPPRESSION_SOURCES = (DNCSource.NATIONAL, DNCSource.STATE, DNCSource.MANUAL_UPLOAD)


class RequestMethod(str, Enum):
    """Channel through which an opt-out request arrived."""

    PHONE_CALL = "PHONE_CALL"
    TEXT_MESSAGE = "TEXT_MESSAGE"
    EMAIL = "EMAIL"
    WEB_FORM = "WEB_FORM"
    MANUAL = "MANUAL"


class BatchStatus(str, Enum):
    """Upload batch lifecycle."""

    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

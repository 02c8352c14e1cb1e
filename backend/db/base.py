"""SQLAlchemy declarative base and shared metadata for accrual schema models."""

from __future__ import annotations

import logging

from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

metadata = MetaData()


class Base(DeclarativeBase):
    """Base class for investment, ledger and job-run models."""

    metadata = metadata

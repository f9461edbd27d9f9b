"""Shared FastAPI dependencies.

Routes never import the ``services`` singleton directly; they ask for it
through ``get_services`` so tests can swap in a container built from
fakes with ``app.dependency_overrides[get_services]``.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, status

from app import container
from app.container import Services
from app.core.errors import LedgerError

logger = logging.getLogger(__name__)


def get_services() -> Services:
    return container.services


ServicesDep = Annotated[Services, Depends(get_services)]


def ledger_unavailable(e: LedgerError) -> HTTPException:
    """503 for a persistence failure; the caller may retry."""
    logger.error("Ledger failure: %s", e)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"message": "Storage temporarily unavailable"},
    )

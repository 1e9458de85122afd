from __future__ import annotations

import pytest

from timbersync.domain.models import InventorySession
from timbersync.persistence.guards import CompanyPredicateError, company_predicate, require_company_id
from timbersync.services import sync as sync_service


def test_missing_company_id_is_a_programming_error() -> None:
    with pytest.raises(CompanyPredicateError):
        require_company_id(None)
    with pytest.raises(CompanyPredicateError):
        require_company_id("")


def test_predicate_binds_company_column() -> None:
    clause = company_predicate(InventorySession, "company-1")
    assert "company_id" in str(clause)


@pytest.mark.asyncio
async def test_session_reads_refuse_empty_company_scope() -> None:
    # An empty string is not the admin sentinel (None) and must not widen the read.
    with pytest.raises(CompanyPredicateError):
        await sync_service.list_sessions(None, company_id="")  # type: ignore[arg-type]

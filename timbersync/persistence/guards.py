from __future__ import annotations


class CompanyPredicateError(RuntimeError):
    # Surface missing company predicates instead of silently reading across tenants.
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def require_company_id(company_id: str | None) -> str:
    # Company-scoped reads and writes must always carry a resolved company id.
    if not company_id:
        raise CompanyPredicateError("Company predicate required but company_id is missing")
    return company_id


def company_predicate(model, company_id: str | None) -> object:
    # Build company predicates through a single helper to guarantee guard coverage.
    return model.company_id == require_company_id(company_id)

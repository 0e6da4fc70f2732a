# scoping.py — Turn authorization scopes into query predicates
# Every predicate built here starts with tenant_id = T. The tenant argument is
# positional and required; there is no way to build a filter without it.

from sqlalchemy import and_, select
from sqlalchemy.sql import ColumnElement, Select

from authorization import GlobalScope, Scope, TeamScope, TeamSetScope
from tenancy import TenantScope


def tenant_clause(model, tenant: TenantScope) -> ColumnElement:
    return model.tenant_id == tenant.tenant_id


def build_filter(scope: Scope, tenant: TenantScope, model) -> ColumnElement:
    """Predicate for rows of model visible under scope, always bound to the tenant."""
    clauses = [tenant_clause(model, tenant)]
    if isinstance(scope, TeamScope):
        clauses.append(model.team_id == scope.team_id)
    elif isinstance(scope, TeamSetScope):
        clauses.append(model.team_id.in_(sorted(scope.team_ids)))
    elif not isinstance(scope, GlobalScope):
        raise TypeError(f"Unsupported scope: {scope!r}")
    return and_(*clauses)


def tenant_select(model, tenant: TenantScope) -> Select:
    """SELECT model rows belonging to the tenant."""
    return select(model).where(tenant_clause(model, tenant))


def scoped_select(model, scope: Scope, tenant: TenantScope) -> Select:
    return select(model).where(build_filter(scope, tenant, model))


def team_in_scope(scope: Scope, team_id) -> bool:
    if isinstance(scope, GlobalScope):
        return True
    if isinstance(scope, TeamScope):
        return team_id == scope.team_id
    if isinstance(scope, TeamSetScope):
        return team_id in scope.team_ids
    raise TypeError(f"Unsupported scope: {scope!r}")

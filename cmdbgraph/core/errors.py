from __future__ import annotations


class CmdbError(Exception):
    """Base error for the CMDB core."""

    code = "CMDB_ERROR"


class CmdbValidationError(CmdbError):
    """Malformed request input; never retried."""

    code = "CMDB_VALIDATION_ERROR"


class UnknownCategoryError(CmdbValidationError):
    """Category is not present in the schema registry."""

    code = "CMDB_UNKNOWN_CATEGORY"


class IdentityUnresolvableError(CmdbError):
    """No identification rule is applicable to the payload."""

    code = "CMDB_IDENTITY_UNRESOLVABLE"


class ConstraintViolationError(CmdbError):
    """A concurrent writer claimed the same identity and the conflict could not be re-resolved."""

    code = "CMDB_CONSTRAINT_VIOLATION"


class EntityNotFoundError(CmdbError):
    """Configuration item does not exist for the tenant."""

    code = "CMDB_NOT_FOUND"


class ManagedDeleteBlockedError(CmdbError):
    """Managed configuration items cannot be deleted."""

    code = "CMDB_MANAGED_DELETE_BLOCKED"


class TraversalCancelledError(CmdbError):
    """Graph expansion was cancelled at a depth checkpoint."""

    code = "CMDB_TRAVERSAL_CANCELLED"


class TenantRequiredError(CmdbValidationError):
    """Writes and reads must name a client tenant."""

    code = "CMDB_TENANT_REQUIRED"


class TenantPredicateError(TenantRequiredError):
    """A repository query was built without a tenant predicate."""

    code = "CMDB_TENANT_PREDICATE_MISSING"

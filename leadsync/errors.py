class LeadSyncError(Exception):
    """Base class for errors raised across the sync pipeline."""


class LeadConflictError(LeadSyncError):
    """An active lead already exists for the tenant/contact/business key."""

    def __init__(self, tenant_id: str, contact_id: str, business_id=None):
        self.tenant_id = tenant_id
        self.contact_id = contact_id
        self.business_id = business_id
        super().__init__(
            f"Active lead already exists for contact {contact_id} "
            f"(tenant={tenant_id}, business={business_id or '-'})"
        )


class LeadNotFoundError(LeadSyncError):
    pass


class EmailNotFoundError(LeadSyncError):
    pass


class LLMUnavailableError(LeadSyncError):
    """Text generation is not configured (missing credentials or provider)."""


class RetryExhaustedError(LeadSyncError):
    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")

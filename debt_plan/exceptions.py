"""Exception hierarchy for debt-plan.

Every business-rule violation has its own class and a machine-readable
``code`` so that callers (the CLI and the web API) can react to the kind of
failure without parsing messages::

    DebtPlanError
    +-- ValidationError
    +-- NotFoundError
    |   +-- PlanNotFoundError
    |   +-- InstallmentNotFoundError
    |   +-- RateNotFoundError
    |   +-- ReceiptNotFoundError
    +-- ConflictError
    |   +-- ActivePlanExistsError
    |   +-- RateOverlapError
    |   +-- InstallmentAlreadyPaidError
    |   +-- AmountAlreadyPostedError
    +-- PreconditionFailedError
    |   +-- MissingRateError
    |   +-- InvalidPlanStateError
    |   +-- InstallmentNotPaidError
    |   +-- PostedAmountError
    |   +-- NothingToRecoverError
    +-- ExternalFetchError
    |   +-- FetchError
    |   +-- SourceParseError
    +-- ConfigurationError
"""


class DebtPlanError(Exception):
    """Base exception for all debt-plan errors."""

    code: str = "DEBT_PLAN_ERROR"


class ValidationError(DebtPlanError):
    """Raised when input is malformed; nothing has been changed."""

    code = "VALIDATION_ERROR"


class NotFoundError(DebtPlanError):
    """Raised when a referenced entity does not exist."""

    code = "NOT_FOUND"


class PlanNotFoundError(NotFoundError):
    code = "PLAN_NOT_FOUND"


class InstallmentNotFoundError(NotFoundError):
    code = "INSTALLMENT_NOT_FOUND"


class RateNotFoundError(NotFoundError):
    code = "RATE_NOT_FOUND"


class ReceiptNotFoundError(NotFoundError):
    code = "RECEIPT_NOT_FOUND"


class ConflictError(DebtPlanError):
    """Raised when the operation clashes with existing data."""

    code = "CONFLICT"


class ActivePlanExistsError(ConflictError):
    code = "ACTIVE_PLAN_EXISTS"

    def __init__(self, case_id: str):
        self.case_id = case_id
        super().__init__(
            f"Case {case_id} already has an active plan; close it before creating a new one"
        )


class RateOverlapError(ConflictError):
    code = "RATE_OVERLAP"

    def __init__(self, kind: str, existing_id: str):
        self.kind = kind
        self.existing_id = existing_id
        super().__init__(f"A {kind} rate already covers this period (id {existing_id})")


class InstallmentAlreadyPaidError(ConflictError):
    code = "INSTALLMENT_ALREADY_PAID"


class AmountAlreadyPostedError(ConflictError):
    code = "AMOUNT_ALREADY_POSTED"


class PreconditionFailedError(DebtPlanError):
    """Raised when the data is not in a state that allows the operation."""

    code = "PRECONDITION_FAILED"


class MissingRateError(PreconditionFailedError):
    code = "MISSING_RATE"

    def __init__(self, kind: str, on_date):
        self.kind = kind
        self.on_date = on_date
        super().__init__(
            f"No {kind} rate found for {on_date.isoformat()}; "
            "configure the rate registry before creating the plan"
        )


class InvalidPlanStateError(PreconditionFailedError):
    code = "INVALID_PLAN_STATE"


class InstallmentNotPaidError(PreconditionFailedError):
    code = "INSTALLMENT_NOT_PAID"


class PostedAmountError(PreconditionFailedError):
    code = "POSTED_AMOUNT"


class NothingToRecoverError(PreconditionFailedError):
    code = "NOTHING_TO_RECOVER"


class ExternalFetchError(DebtPlanError):
    """Raised when an external rate source cannot be fetched or parsed."""

    code = "EXTERNAL_FETCH_ERROR"


class FetchError(ExternalFetchError):
    code = "FETCH_FAILED"

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Fetching {url} failed: {reason}")


class SourceParseError(ExternalFetchError):
    code = "SOURCE_UNPARSEABLE"


class ConfigurationError(DebtPlanError):
    """Raised when configuration is invalid or missing."""

    code = "CONFIGURATION_ERROR"

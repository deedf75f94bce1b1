"""
Ledger-wide exception hierarchy.

Every service raises these types and nothing else for domain failures, so
a collaborator (HTTP controller, report job, CLI) can catch one family and
map it consistently:

    NotFoundError            → 404   (SiteNotFound, EstimateNotFound, ItemNotFound, ...)
    ValidationError          → 422   (InvalidQuantity, InvalidPrice, InvalidTransition)
    ConflictError            → 409   (duplicate unique value)
    HasDependentsError       → 409   (HasDependentActuals — retry with cascade=True)
    ConcurrentModificationError → 409 (rollup write lost its retry budget)
    UnavailableError         → 503   (store unavailable after bounded retries)

None of these is raised after a partial write: detection happens before the
first write, or the surrounding transaction is rolled back first.

Usage:
    from budget_ledger.core.exceptions import ItemNotFoundError, InvalidPriceError

    raise ItemNotFoundError(42)
    raise InvalidPriceError("unit_price must be greater than 0", details={"unit_price": "-3"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "LineItem", "Estimate").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class SiteNotFoundError(NotFoundError):
    def __init__(self, site_id: int | None = None) -> None:
        super().__init__("Site", site_id)


class EstimateNotFoundError(NotFoundError):
    def __init__(self, estimate_id: int | None = None) -> None:
        super().__init__("Estimate", estimate_id)


class ItemNotFoundError(NotFoundError):
    def __init__(self, item_id: int | None = None) -> None:
        super().__init__("LineItem", item_id)


class ActualNotFoundError(NotFoundError):
    def __init__(self, actual_id: int | None = None) -> None:
        super().__init__("ActualEntry", actual_id)


class CategoryNotFoundError(NotFoundError):
    def __init__(self, category_id: int | None = None) -> None:
        super().__init__("Category", category_id)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names; values
                 are error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidQuantityError(ValidationError):
    """Quantity missing, non-numeric or not strictly positive."""


class InvalidPriceError(ValidationError):
    """Unit price missing, non-numeric or not strictly positive."""


class InvalidTransitionError(ValidationError):
    """Estimate status change not allowed by ESTIMATE_TRANSITIONS."""

    def __init__(self, old_status: str, new_status: str) -> None:
        self.old_status = old_status
        self.new_status = new_status
        super().__init__(
            f"Invalid transition: {old_status} → {new_status}",
            details={"status": new_status},
        )


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique value.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class HasDependentsError(Exception):
    """Raised when a delete is refused because child rows still exist.

    Advisory rather than terminal: the caller decides whether to remove the
    children first or re-invoke with an explicit cascade.

    Args:
        resource: Entity being deleted (e.g. "LineItem").
        resource_id: Its PK.
        dependent: Name of the child collection (e.g. "actuals").
        count: How many children blocked the delete.
    """

    def __init__(self, resource: str, resource_id: int, dependent: str, count: int) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.dependent = dependent
        self.count = count
        super().__init__(
            f"Cannot delete {resource} id={resource_id}: {count} {dependent} still recorded"
        )


class HasDependentActualsError(HasDependentsError):
    """Line item still has ActualEntry rows; pass cascade=True to remove them."""

    def __init__(self, item_id: int, count: int) -> None:
        super().__init__("LineItem", item_id, "actuals", count)


class ConcurrentModificationError(Exception):
    """A rollup write kept conflicting with concurrent writers.

    Raised once the bounded retry budget is spent; nothing was committed.
    """

    def __init__(self, operation: str, attempts: int) -> None:
        self.operation = operation
        self.attempts = attempts
        super().__init__(
            f"{operation} conflicted with a concurrent write after {attempts} attempt(s)"
        )


class UnavailableError(Exception):
    """The ledger store could not be reached within the retry budget."""

    def __init__(self, operation: str, attempts: int) -> None:
        self.operation = operation
        self.attempts = attempts
        super().__init__(f"{operation} failed: ledger store unavailable after {attempts} attempt(s)")

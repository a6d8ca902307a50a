from typing import Any, Dict, Optional


class BoxOfficeError(Exception):
    """Base of every error the services raise on purpose."""
    status_code = 500
    code = "error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.code, "detail": self.message,
                **self.details}


# ----------------------------
# caller mistakes: synchronous, nothing mutated
# ----------------------------
class ValidationError(BoxOfficeError):
    status_code = 400
    code = "invalid"


class DiscountInvalid(ValidationError):
    code = "discount_invalid"


class SoldOut(ValidationError):
    status_code = 409
    code = "sold_out"

    def __init__(self, tier_id: str, tier_name: Optional[str] = None):
        name = tier_name or tier_id
        super().__init__(f"Not enough tickets available for {name}",
                         tier_id=tier_id)
        self.tier_id = tier_id


class InvalidSignature(ValidationError):
    """Webhook payload failed verification; never parsed further."""
    code = "invalid_signature"


class NotFound(BoxOfficeError):
    status_code = 404
    code = "not_found"


class Forbidden(BoxOfficeError):
    status_code = 403
    code = "forbidden"


class Conflict(BoxOfficeError):
    """The target is in a state that does not allow the action."""
    status_code = 409
    code = "conflict"


# ----------------------------
# provider & ordering
# ----------------------------
class ProviderError(BoxOfficeError):
    status_code = 502
    code = "provider_error"


class OutOfOrderEvent(BoxOfficeError):
    """Cannot be applied yet; the provider is expected to redeliver."""
    status_code = 503
    code = "retry_later"


# ----------------------------
# data integrity: abort, never default financial fields
# ----------------------------
class IntegrityViolation(BoxOfficeError):
    status_code = 500
    code = "integrity_violation"

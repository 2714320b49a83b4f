from dataclasses import dataclass


class DispatchError(Exception):
    """Base class for every recoverable engine error."""

    code = "dispatch_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class NotFound(DispatchError):
    code = "not_found"


class InvalidState(DispatchError):
    code = "invalid_state"


class InvalidTransition(DispatchError):
    code = "invalid_transition"

    def __init__(self, source, target):
        source = getattr(source, "value", source)
        target = getattr(target, "value", target)
        super().__init__(f"Invalid status transition from {source} to {target}")
        self.source = source
        self.target = target

    def to_dict(self) -> dict:
        return {**super().to_dict(), "source": self.source, "target": self.target}


class NotAuthorized(DispatchError):
    code = "not_authorized"


class ValidationFailed(DispatchError):
    code = "validation_failed"


class ConcurrencyConflict(DispatchError):
    """A conditional write lost a race. Retry the higher-level operation."""

    code = "concurrency_conflict"


@dataclass(frozen=True)
class RuleViolation:
    rule: str
    message: str


class LedgerRuleViolation(DispatchError):
    code = "ledger_rule_violation"

    def __init__(self, violations: list[RuleViolation]):
        super().__init__("; ".join(v.message for v in violations))
        self.violations = list(violations)

    @property
    def rules(self) -> list[str]:
        return [v.rule for v in self.violations]

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "violations": [{"rule": v.rule, "message": v.message} for v in self.violations],
        }


HTTP_STATUS = {
    NotFound: 404,
    NotAuthorized: 403,
    InvalidState: 409,
    InvalidTransition: 409,
    ConcurrencyConflict: 409,
    ValidationFailed: 422,
    LedgerRuleViolation: 422,
}


def http_status(exc: DispatchError) -> int:
    for cls, status_code in HTTP_STATUS.items():
        if isinstance(exc, cls):
            return status_code
    return 400

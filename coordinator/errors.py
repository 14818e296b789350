"""
Transition error taxonomy. Each error carries a stable code, an HTTP status for
the API layer and whether the caller may safely retry.
"""


class TransitionError(Exception):
    code = "transition_error"
    http_status = 400
    retryable = False

    def __init__(self, message: str, order_id: str | None = None):
        self.message = message
        self.order_id = order_id
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "order_id": self.order_id,
            "retryable": self.retryable,
        }


class NotFound(TransitionError):
    """Unknown order_id."""
    code = "not_found"
    http_status = 404

    def __init__(self, order_id: str):
        super().__init__(f"order {order_id} not found", order_id=order_id)


class RecordNotFound(TransitionError):
    """The order exists but does not carry the requested record."""
    code = "record_not_found"
    http_status = 404

    def __init__(self, order_id: str, machine: str):
        self.machine = machine
        super().__init__(f"order {order_id} has no {machine} record", order_id=order_id)


class OrderAlreadyExists(TransitionError):
    code = "order_exists"
    http_status = 409

    def __init__(self, order_id: str):
        super().__init__(f"order {order_id} already exists", order_id=order_id)


class IllegalTransition(TransitionError):
    """Requested edge is not in the machine's graph. Caller must pick a valid target."""
    code = "illegal_transition"
    http_status = 409

    def __init__(self, order_id: str, machine: str, current_state: str | None, target_state: str):
        self.machine = machine
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(
            f"{machine} cannot move from {current_state} to {target_state}",
            order_id=order_id,
        )


class ConsistencyViolation(TransitionError):
    """A cross-entity rule failed against the proposed state."""
    code = "consistency_violation"
    http_status = 422

    def __init__(self, order_id: str, reason: str, rule: str | None = None):
        self.reason = reason
        self.rule = rule
        super().__init__(reason, order_id=order_id)

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["rule"] = self.rule
        return body


class ItemsFrozen(TransitionError):
    code = "items_frozen"
    http_status = 423

    def __init__(self, order_id: str, status: str):
        super().__init__(f"items cannot change once order is {status}", order_id=order_id)


class InvalidCheckout(TransitionError):
    code = "invalid_checkout"
    http_status = 400


class VersionConflict(TransitionError):
    """A concurrent commit won the optimistic check. Reload and retry."""
    code = "version_conflict"
    http_status = 412
    retryable = True

    def __init__(self, order_id: str, expected_version: int, actual_version: int | None = None):
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"order {order_id} expected version {expected_version}, found {actual_version}",
            order_id=order_id,
        )


class LockTimeout(TransitionError):
    """Per-order lock not granted within the configured wait. Retry with backoff."""
    code = "lock_timeout"
    http_status = 503
    retryable = True

    def __init__(self, order_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(f"could not lock order {order_id} within {timeout}s", order_id=order_id)

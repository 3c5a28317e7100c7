class WorkflowError(Exception):
    status_code = 400
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(WorkflowError):
    status_code = 404


class InvalidTransition(WorkflowError):
    """Action not allowed for the application's status or the actor's role."""

    status_code = 409


class NotPayable(WorkflowError):
    status_code = 200


class OrderAlreadyOpen(WorkflowError):
    status_code = 200

    def __init__(self, order):
        super().__init__(f"Payment order {order.reference or order.id} is already open")
        self.order = order


class GatewayUnavailable(WorkflowError):
    status_code = 503
    retryable = True


class GatewayRejected(WorkflowError):
    status_code = 502


class PaymentVerificationFailed(WorkflowError):
    """Never retried automatically; needs a fresh order or manual follow-up."""

    status_code = 402


class ReviewerAtCapacity(WorkflowError):
    status_code = 409


class PersistenceConflict(WorkflowError):
    status_code = 409
    retryable = True


class GatewayError(Exception):
    def __init__(self, message: str, transient: bool = True):
        super().__init__(message)
        self.transient = transient

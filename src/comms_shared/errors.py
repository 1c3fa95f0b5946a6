"""Error taxonomy for notification dispatch.

Provider-level errors (``InputError``, ``TransientProviderError``) are raised
only inside provider implementations and converted to ``ProviderResult``
values at the provider boundary.  Store errors propagate to the caller of
the store; the orchestrator handles the ones a late callback can trigger.
"""

from uuid import UUID


class DispatchError(Exception):
    """Base class for all dispatch errors."""


class InputError(DispatchError):
    """Permanent input defect (e.g. malformed recipient address). Never retried."""


class TransientProviderError(DispatchError):
    """Network timeout or provider 5xx. Retried with backoff."""


class PartialBatchFailure(DispatchError):
    """Some recipients of a multicast call failed while others succeeded.

    Informational: used to describe a push outcome in logs, never raised
    across the orchestrator boundary.
    """

    def __init__(self, success_count: int, failure_count: int) -> None:
        super().__init__(
            f"{failure_count} of {success_count + failure_count} recipients failed"
        )
        self.success_count = success_count
        self.failure_count = failure_count


class DeliveryStoreError(DispatchError):
    """Base class for delivery record store errors."""


class RecordNotFoundError(DeliveryStoreError):
    def __init__(self, record_id: UUID) -> None:
        super().__init__(f"Delivery record not found: {record_id}")
        self.record_id = record_id


class TerminalStatusError(DeliveryStoreError):
    def __init__(self, record_id: UUID, status: str) -> None:
        super().__init__(
            f"Delivery record {record_id} is already terminal ({status!r})"
        )
        self.record_id = record_id
        self.status = status


class InvalidTransitionError(DeliveryStoreError):
    def __init__(self, record_id: UUID, current: str, new: str) -> None:
        super().__init__(
            f"Delivery record {record_id}: transition {current!r} -> {new!r} "
            "is not allowed"
        )
        self.record_id = record_id
        self.current = current
        self.new = new

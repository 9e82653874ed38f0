"""Bulk writes and per-recipient fan-out.

Two patterns for working over a set of targets built from a query made just
before the operation:

- ``BulkWriter`` stages one write per target into store batches of at most
  ``batch_size`` operations, committing each full batch and then a final
  partial one. Every batch is atomic; the run as a whole is not, so a crash
  between commits leaves the earlier batches applied.
- ``fan_out`` runs a unit of work per recipient, one after another, and
  records (rather than raises) any recipient's failure so the rest are still
  attempted.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from buyly.document_store import MAX_BATCH_SIZE, DocumentRef, DocumentStore, WriteBatch
from buyly.log import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Delete:
    pass


@dataclass(frozen=True)
class Update:
    fields: Dict[str, Any]


@dataclass(frozen=True)
class Set:
    data: Dict[str, Any]
    merge: bool = False


WriteOp = Union[Delete, Update, Set]


@dataclass
class BatchResult:
    processed: int = 0
    batches_committed: int = 0
    batch_sizes: List[int] = field(default_factory=list)


@dataclass
class RecipientOutcome:
    recipient: str
    ok: bool
    error: Optional[str] = None


@dataclass
class FanOutResult:
    outcomes: List[RecipientOutcome] = field(default_factory=list)

    @property
    def success(self) -> bool:
        # Completing the iteration is success; individual failures are recorded
        return True

    @property
    def succeeded(self) -> List[str]:
        return [o.recipient for o in self.outcomes if o.ok]

    @property
    def failed(self) -> List[str]:
        return [o.recipient for o in self.outcomes if not o.ok]


def _stage(batch: WriteBatch, ref: DocumentRef, op: WriteOp) -> None:
    if isinstance(op, Delete):
        batch.delete(ref)
    elif isinstance(op, Update):
        batch.update(ref, op.fields)
    elif isinstance(op, Set):
        batch.set(ref, op.data, merge=op.merge)
    else:
        raise TypeError(f"Unsupported write operation: {op!r}")


class BulkWriter:
    """Applies writes to any number of documents in bounded atomic batches."""

    def __init__(self, store: DocumentStore, batch_size: int = MAX_BATCH_SIZE):
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}, got {batch_size}")
        self.store = store
        self.batch_size = batch_size

    def write_all(self, writes: Iterable[Tuple[DocumentRef, WriteOp]]) -> BatchResult:
        """
        Stage and commit ``(ref, operation)`` pairs in enumeration order.

        Returns:
            Counts of targets processed and batches committed, with the size
            of each committed batch
        """
        result = BatchResult()
        batch = self.store.batch()

        for ref, op in writes:
            _stage(batch, ref, op)
            result.processed += 1
            if len(batch) == self.batch_size:
                self._commit(batch, result)
                # A committed batch is never reused
                batch = self.store.batch()

        if len(batch):
            self._commit(batch, result)

        return result

    def apply_to_all(self, targets: Sequence[DocumentRef], operation: WriteOp) -> BatchResult:
        """Apply the same delete/update/set to every target."""
        return self.write_all((ref, operation) for ref in targets)

    def _commit(self, batch: WriteBatch, result: BatchResult) -> None:
        size = batch.commit()
        result.batches_committed += 1
        result.batch_sizes.append(size)
        logger.info(
            "Committed batch %d with %d writes", result.batches_committed, size
        )


def fan_out(
    recipients: Iterable[str],
    unit_of_work: Callable[[str], Any],
    label: str = "recipient",
) -> FanOutResult:
    """
    Run ``unit_of_work`` once per recipient with per-recipient isolation.

    Recipients are processed sequentially. An exception from one recipient's
    unit is logged and recorded on its outcome; iteration continues with the
    next recipient.
    """
    result = FanOutResult()
    for recipient in recipients:
        try:
            unit_of_work(recipient)
        except Exception as e:
            logger.error("Error processing %s %s: %s", label, recipient, e)
            result.outcomes.append(RecipientOutcome(recipient, ok=False, error=str(e)))
        else:
            result.outcomes.append(RecipientOutcome(recipient, ok=True))
    return result

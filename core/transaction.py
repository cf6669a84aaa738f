"""
Compensating transactions ("sagas") over a store without multi-statement transactions.

Each step has an `execute` (receives the list of prior step results) and an
optional `rollback` (receives the step's own execute result). When a step
fails, every completed step is undone in reverse order. The runners never
raise: callers inspect TransactionResult.success / .outcome.
"""
import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


class TransactionState(str, Enum):
    PENDING = "pending"
    STEP_EXECUTING = "step_executing"
    STEPS_COMPLETING = "steps_completing"
    ROLLING_BACK = "rolling_back"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


_TRANSITIONS = {
    TransactionState.PENDING: {TransactionState.STEP_EXECUTING, TransactionState.STEPS_COMPLETING},
    TransactionState.STEP_EXECUTING: {TransactionState.STEP_EXECUTING, TransactionState.STEPS_COMPLETING,
                                      TransactionState.ROLLING_BACK},
    TransactionState.STEPS_COMPLETING: {TransactionState.COMMITTED},
    TransactionState.ROLLING_BACK: {TransactionState.ROLLED_BACK},
    TransactionState.COMMITTED: set(),
    TransactionState.ROLLED_BACK: set(),
}


@dataclass
class TransactionStep:
    name: str
    execute: Callable[..., Any]
    rollback: Optional[Callable[[Any], Any]] = None


@dataclass
class TransactionResult:
    success: bool
    results: List[Any]
    error: Optional[BaseException] = None
    failed_step: Optional[str] = None
    rolled_back: List[str] = field(default_factory=list)
    rollback_errors: List[dict] = field(default_factory=list)
    state: TransactionState = TransactionState.PENDING
    transaction_id: Optional[str] = None
    completed_steps: int = 0

    @property
    def outcome(self) -> str:
        """committed | rolled_back | noop (failed before anything took effect)."""
        if self.success:
            return "committed"
        if self.completed_steps == 0:
            return "noop"
        return "rolled_back"

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "outcome": self.outcome,
            "error": str(self.error) if self.error else None,
            "failed_step": self.failed_step,
            "rolled_back": list(self.rolled_back),
            "rollback_errors": [{"step": e["step"], "error": str(e["error"])} for e in self.rollback_errors],
            "transaction_id": self.transaction_id,
        }


async def _call(fn, *args):
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def _new_transaction_id(prefix: str = "txn") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class CompensatingTransaction:
    """Sequential saga as an explicit state machine."""

    def __init__(self, steps: List[TransactionStep], continue_on_rollback_error: bool = True,
                 transaction_id: Optional[str] = None):
        self.steps = list(steps)
        self.continue_on_rollback_error = continue_on_rollback_error
        self.transaction_id = transaction_id or _new_transaction_id()
        self.state = TransactionState.PENDING
        self.history: List[TransactionState] = [self.state]
        self._completed: List[tuple] = []   # (step, result)
        self._results: List[Any] = []

    def _transition(self, new_state: TransactionState):
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal transaction transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    async def run(self) -> TransactionResult:
        logger.debug("[TXN] %s starting with steps %s", self.transaction_id, [s.name for s in self.steps])

        for index, step in enumerate(self.steps):
            name = step.name or f"step_{index + 1}"
            self._transition(TransactionState.STEP_EXECUTING)
            try:
                result = await _call(step.execute, list(self._results))
            except Exception as e:
                logger.error("[TXN] %s step '%s' failed, rolling back %d completed step(s): %r",
                             self.transaction_id, name, len(self._completed), e)
                self._transition(TransactionState.ROLLING_BACK)
                rolled_back, rollback_errors = await self._rollback()
                self._transition(TransactionState.ROLLED_BACK)
                return TransactionResult(
                    success=False,
                    results=list(self._results),
                    error=e,
                    failed_step=name,
                    rolled_back=rolled_back,
                    rollback_errors=rollback_errors,
                    state=self.state,
                    transaction_id=self.transaction_id,
                    completed_steps=len(self._completed),
                )
            self._results.append(result)
            self._completed.append((step, result))
            logger.debug("[TXN] %s step '%s' completed", self.transaction_id, name)

        self._transition(TransactionState.STEPS_COMPLETING)
        self._transition(TransactionState.COMMITTED)
        logger.debug("[TXN] %s committed (%d steps)", self.transaction_id, len(self._completed))
        return TransactionResult(
            success=True,
            results=list(self._results),
            state=self.state,
            transaction_id=self.transaction_id,
            completed_steps=len(self._completed),
        )

    async def _rollback(self):
        rolled_back: List[str] = []
        errors: List[dict] = []
        for step, result in reversed(self._completed):
            if step.rollback is None:
                logger.warning("[TXN] %s step '%s' has no rollback, skipping", self.transaction_id, step.name)
                continue
            try:
                await _call(step.rollback, result)
                rolled_back.append(step.name)
            except Exception as e:
                logger.error("[TXN] %s rollback of '%s' failed: %r", self.transaction_id, step.name, e)
                errors.append({"step": step.name, "error": e})
                if not self.continue_on_rollback_error:
                    break
        return rolled_back, errors


async def with_transaction(steps: List[TransactionStep], continue_on_rollback_error: bool = True,
                           transaction_id: Optional[str] = None) -> TransactionResult:
    """Execute steps in order; on failure undo the completed ones in reverse order."""
    return await CompensatingTransaction(steps, continue_on_rollback_error, transaction_id).run()


async def with_parallel_transaction(operations: List[TransactionStep]) -> TransactionResult:
    """
    Run independent operations concurrently with all-or-nothing semantics.

    `execute` is called without arguments. If any operation fails, every
    operation that did complete is rolled back (concurrently, no ordering).
    """
    transaction_id = _new_transaction_id("ptxn")
    names = [op.name or f"operation_{i}" for i, op in enumerate(operations)]
    logger.debug("[TXN] %s starting parallel operations %s", transaction_id, names)

    outcomes = await asyncio.gather(*(_call(op.execute) for op in operations), return_exceptions=True)

    results: List[Any] = [None] * len(operations)
    completed: List[int] = []
    first_failure: Optional[int] = None
    for index, outcome in enumerate(outcomes):
        if isinstance(outcome, BaseException):
            if first_failure is None:
                first_failure = index
        else:
            results[index] = outcome
            completed.append(index)

    if first_failure is None:
        return TransactionResult(
            success=True,
            results=results,
            state=TransactionState.COMMITTED,
            transaction_id=transaction_id,
            completed_steps=len(completed),
        )

    logger.error("[TXN] %s parallel operation '%s' failed, rolling back %d completed operation(s)",
                 transaction_id, names[first_failure], len(completed))

    async def _undo(index: int):
        op = operations[index]
        if op.rollback is None:
            logger.warning("[TXN] %s operation '%s' has no rollback, skipping", transaction_id, names[index])
            return index, None, False
        try:
            await _call(op.rollback, results[index])
            return index, None, True
        except Exception as e:
            logger.error("[TXN] %s parallel rollback of '%s' failed: %r", transaction_id, names[index], e)
            return index, e, False

    undone = await asyncio.gather(*(_undo(i) for i in completed))

    return TransactionResult(
        success=False,
        results=results,
        error=outcomes[first_failure],
        failed_step=names[first_failure],
        rolled_back=[names[i] for i, _, ok in undone if ok],
        rollback_errors=[{"step": names[i], "error": err} for i, err, _ in undone if err is not None],
        state=TransactionState.ROLLED_BACK,
        transaction_id=transaction_id,
        completed_steps=len(completed),
    )


async def create_with_secondary(create_fn, delete_fn, secondary_fn, secondary_rollback_fn=None) -> dict:
    """
    Create a resource, then a dependent one; undo the first if the second fails.

    Raises the failing step's original error. `secondary_fn` receives the
    primary result.
    """
    result = await with_transaction([
        TransactionStep(name="create", execute=lambda _: create_fn(), rollback=delete_fn),
        TransactionStep(name="secondary", execute=lambda prior: secondary_fn(prior[0]),
                        rollback=secondary_rollback_fn),
    ])
    if not result.success:
        raise result.error
    return {"primary": result.results[0], "secondary": result.results[1]}

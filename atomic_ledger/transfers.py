"""
Transfer Processing Module

Moves funds between two accounts as one atomic unit of work: balance check,
debit, credit and ledger entry all happen inside a single store transaction.
A distributed store aborts conflicting transactions rather than blocking them,
so aborts reported as retryable rerun the whole protocol with backoff.
"""

from decimal import Decimal
from typing import Callable, Optional, Union
import time

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_random_exponential,
)

from .errors import (
    LedgerError, InvalidTransfer, AccountNotFound, InsufficientFunds,
    TransientConflict, PersistenceFailure, RetryableStoreError,
)
from .logging_config import get_logger, log_action
from .models import TransferResult, parse_amount
from .store import LedgerStore


class TransferCoordinator:
    """
    Runs the atomic transfer protocol against a LedgerStore.

    The coordinator holds no per-account locks; ordering between concurrent
    transfers touching the same account is left to the store's isolation.
    """

    def __init__(
        self,
        store: LedgerStore,
        max_attempts: int = 5,
        backoff_initial: float = 0.05,
        backoff_max: float = 1.0,
        retry_deadline: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.max_attempts = max_attempts
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.retry_deadline = retry_deadline
        self._sleep = sleep
        self.logger = get_logger("atomic_ledger.transfers")

    @classmethod
    def from_config(cls, store: LedgerStore, config) -> 'TransferCoordinator':
        """Build a coordinator with the retry policy from LedgerConfig"""
        return cls(
            store,
            max_attempts=config.transfer_max_attempts,
            backoff_initial=config.transfer_backoff_initial,
            backoff_max=config.transfer_backoff_max,
            retry_deadline=config.transfer_retry_deadline,
        )

    def _retrying(self) -> Retrying:
        stop = stop_after_attempt(self.max_attempts)
        if self.retry_deadline is not None:
            stop = stop | stop_after_delay(self.retry_deadline)
        return Retrying(
            retry=retry_if_exception_type(RetryableStoreError),
            stop=stop,
            wait=wait_random_exponential(multiplier=self.backoff_initial, max=self.backoff_max),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        log_action(
            self.logger, "warning",
            f"Transfer conflicted, retrying: {retry_state.outcome.exception()}",
            action="transfer_retry",
            attempt=retry_state.attempt_number,
        )

    def transfer(self, from_id: int, to_id: int,
                 amount: Union[Decimal, int, float, str]) -> TransferResult:
        """
        Move amount from one account to another.

        Raises:
            InvalidTransfer: amount not positive or not a cent amount, or from_id == to_id
            AccountNotFound: either account does not exist
            InsufficientFunds: sender balance lower than amount
            TransientConflict: store kept aborting past the retry budget
            PersistenceFailure: any other store failure
        """
        amount = parse_amount(amount)
        if from_id == to_id:
            raise InvalidTransfer(
                "Cannot transfer to the same account",
                {"from_id": from_id, "to_id": to_id},
            )

        attempts = 0
        try:
            for attempt in self._retrying():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    result = self._run_protocol(from_id, to_id, amount, attempts)
        except LedgerError as exc:
            log_action(
                self.logger, "info", f"Transfer rejected: {exc.message}",
                action="transfer", resource=f"{from_id}->{to_id}",
                extra={"category": exc.category, "amount": str(amount)},
            )
            raise
        except RetryableStoreError as exc:
            self.logger.error(f"Transfer {from_id}->{to_id} gave up after {attempts} attempts: {exc}")
            raise TransientConflict(
                f"Transfer could not be completed after {attempts} attempts due to concurrent updates",
                {"attempts": attempts},
            ) from exc
        except Exception as exc:
            self.logger.error(f"Transfer {from_id}->{to_id} failed: {exc}", exc_info=True)
            raise PersistenceFailure(f"Transfer failed: {exc}") from exc

        log_action(
            self.logger, "info", "Transfer committed",
            action="transfer", resource=f"{from_id}->{to_id}", attempt=attempts,
            extra={"entry_id": result.entry.id, "amount": str(amount)},
        )
        return result

    def _run_protocol(self, from_id: int, to_id: int, amount: Decimal,
                      attempt: int) -> TransferResult:
        with self.store.transaction() as tx:
            balance = tx.get_balance(from_id)
            if balance is None:
                raise AccountNotFound(f"Sender account {from_id} not found", {"account_id": from_id})

            if balance < amount:
                raise InsufficientFunds(
                    "Insufficient funds",
                    {"account_id": from_id, "balance": str(balance), "amount": str(amount)},
                )

            from_balance = tx.apply_delta(from_id, -amount)
            if from_balance is None:
                raise AccountNotFound(f"Sender account {from_id} not found", {"account_id": from_id})

            to_balance = tx.apply_delta(to_id, amount)
            if to_balance is None:
                raise AccountNotFound(f"Receiver account {to_id} not found", {"account_id": to_id})

            entry = tx.insert_entry(from_id, to_id, amount)

        return TransferResult(
            entry=entry,
            attempts=attempt,
            from_balance=from_balance,
            to_balance=to_balance,
        )

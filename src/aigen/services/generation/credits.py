"""Credit settlement for generation attempts."""

from __future__ import annotations

import logging
from collections.abc import Callable

from aigen.services.generation.exceptions import ErrorKind, create_generation_error
from aigen.services.generation.interfaces import CreditLedger
from aigen.services.generation.models import CreditTransaction


logger = logging.getLogger(__name__)


class CreditSettlement:
    """Charge an attempt's cost against the host app's ledger.

    One instance serves one attempt: `settle` deducts at most once, and
    `on_exhausted` fires at most once, whether from a declined pre-check or a
    declined deduction. With no ledger configured both steps are no-ops.
    """

    def __init__(
        self,
        ledger: CreditLedger | None,
        on_exhausted: Callable[[], None] | None = None,
        *,
        failure_message: str = "Insufficient credits",
    ) -> None:
        self.ledger = ledger
        self.on_exhausted = on_exhausted
        self.failure_message = failure_message
        self.transaction: CreditTransaction | None = None
        self._exhausted_notified = False

    def _notify_exhausted(self) -> None:
        if self._exhausted_notified:
            return
        self._exhausted_notified = True
        if self.on_exhausted is not None:
            self.on_exhausted()

    async def precheck(self, cost: float) -> bool:
        """Return False (after notifying) when the balance cannot cover `cost`."""
        if self.ledger is None or cost <= 0:
            return True
        if await self.ledger.check(cost):
            return True
        logger.info(f"Credit pre-check declined for cost={cost}")
        self._notify_exhausted()
        return False

    async def settle(self, cost: float) -> CreditTransaction:
        """Deduct `cost`; raise a `credits` GenerationError when declined.

        Calling `settle` again after the first deduction returns the recorded
        transaction without touching the ledger.
        """
        if self.transaction is not None:
            return self.transaction

        transaction = CreditTransaction(cost=cost)
        self.transaction = transaction
        if self.ledger is None:
            return transaction

        try:
            deducted = await self.ledger.deduct(cost)
        except Exception as e:
            logger.warning(f"Credit deduction raised; treating as declined: {e}")
            self._notify_exhausted()
            raise create_generation_error(
                ErrorKind.CREDITS, self.failure_message, e
            ) from e

        if not deducted:
            logger.info(f"Credit deduction declined for cost={cost}")
            self._notify_exhausted()
            raise create_generation_error(ErrorKind.CREDITS, self.failure_message)

        transaction.deducted = True
        return transaction

"""
Transaction submission and status tracking

`submit` retries transport failures only; the payload is identical on every
attempt so a resend after a lost response is harmless. A refusal from the
node (SubmissionError) is final. `wait_for_terminal` polls on the caller's
PollPolicy and only ever reports Accepted as success.
"""

import asyncio
from typing import Optional

from loguru import logger

from .backoff import DEFAULT_STATUS_POLICY, PollPolicy, RetryPolicy, retry_transport, wait_or_cancel
from .client import ChainClient
from .errors import PollingCancelled, StatusTimeout, TransactionRejected, TransportError
from .models import SignedTransaction, TransactionStatus, TxID


class TransactionTracker:

    def __init__(self, client: ChainClient, retry_policy: Optional[RetryPolicy] = None):
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy()

    async def submit(self, chain: str, signed_tx: SignedTransaction) -> TxID:
        """
        Issue a signed transaction

        Raises:
            SubmissionError: malformed or double-spending transaction
            TransportError: node unreachable after retries
        """
        async def issue():
            return await self.client.issue_tx(chain, signed_tx)

        tx_id = await retry_transport(issue, self.retry_policy, f"issueTx on {chain}")
        logger.info(f"✓ Submitted {signed_tx.unsigned.kind.value} tx on {chain}: {tx_id}")
        return tx_id

    async def poll_status(self, chain: str, tx_id: TxID) -> TransactionStatus:
        return await self.client.get_tx_status(chain, tx_id)

    async def wait_for_terminal(
        self,
        chain: str,
        tx_id: TxID,
        policy: PollPolicy = DEFAULT_STATUS_POLICY,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> TransactionStatus:
        """
        Poll until the transaction is Accepted

        Returns:
            TransactionStatus.ACCEPTED

        Raises:
            TransactionRejected: status reached Rejected
            StatusTimeout: attempt cap or total timeout hit while not terminal
            PollingCancelled: cancel event set between polls
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + policy.timeout_seconds
        intervals = policy.intervals()
        status = TransactionStatus.UNKNOWN
        attempts = 0

        while True:
            attempts += 1
            try:
                status = await self.poll_status(chain, tx_id)
            except TransportError as e:
                # Status reads are idempotent; a failed read just costs an attempt
                logger.debug(f"Status poll {attempts} for {tx_id} failed: {e}")
            else:
                logger.debug(f"Status poll {attempts} for {tx_id} on {chain}: {status.value}")
                if status == TransactionStatus.ACCEPTED:
                    logger.info(f"✓ Transaction accepted on {chain}: {tx_id}")
                    return status
                if status == TransactionStatus.REJECTED:
                    logger.error(f"✗ Transaction rejected on {chain}: {tx_id}")
                    raise TransactionRejected(chain, tx_id)

            delay = next(intervals, None)
            if delay is None or loop.time() + delay > deadline:
                logger.warning(f"⚠ Status polling gave up for {tx_id} after {attempts} attempts")
                raise StatusTimeout(chain, tx_id, attempts, status.value)

            if await wait_or_cancel(delay, cancel_event):
                raise PollingCancelled(f"Cancelled while polling status of {tx_id}")

"""Stock reservation for one order, recorded as a saga.

Every decrement is committed together with a ``ReservationStep`` row, and every
compensating increment together with the step's ``compensated`` mark, so the
log and the stock counters never disagree. A saga interrupted by a crash is
finished or reversed by ``recover_incomplete_sagas``, which runs at start-up and
from ``python -m storefront.recovery``. A redelivery that runs into a stale
claim resolves that one saga itself.
"""

from datetime import timedelta
from typing import Dict, List, Optional, Sequence
from uuid import uuid4

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from storefront import config
from storefront.exceptions import (
    CompensationFailure, InsufficientStock, ReservationInProgress, StorageFailure,
)
from storefront.inventory import InventoryStore
from storefront.models import (
    Order, OrderStatus, ReservationSaga, ReservationStep, SagaState, StepState, utcnow,
)

logger = structlog.get_logger(__name__)

UNFINISHED_STATES = (SagaState.RESERVING, SagaState.RESERVED, SagaState.COMPENSATING)
FULFILLED_ORDER_STATES = (OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED)


class ReservationCoordinator:
    def __init__(self, session_factory: async_sessionmaker, inventory: InventoryStore,
                 max_attempts: int = config.COMPENSATION_MAX_ATTEMPTS,
                 retry_wait: float = config.COMPENSATION_RETRY_WAIT,
                 recovery_grace: timedelta = timedelta(seconds=config.SAGA_RECOVERY_GRACE_SECONDS)):
        self.session_factory = session_factory
        self.inventory = inventory
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait
        self.recovery_grace = recovery_grace

    # ------------------------------------------------------------------
    # Reservation
    # ------------------------------------------------------------------

    async def reserve(self, order: Order) -> str:
        """Decrement stock for every line item of ``order``, all or nothing.

        Returns the saga id in state ``reserved``. Raises ReservationInProgress
        when another live delivery holds the claim for this order and
        InsufficientStock after undoing the items already taken. A claim older
        than the recovery grace period is resolved and taken over.
        """
        saga_id = await self._claim(order)
        if saga_id is None:
            if not await self._take_over_stale_claim(order.id):
                raise ReservationInProgress(order.id)
            saga_id = await self._claim(order)
            if saga_id is None:
                raise ReservationInProgress(order.id)
        log = logger.bind(order_id=order.id, saga_id=saga_id)

        for position, item in enumerate(order.items):
            product_id = item["product_id"]
            quantity = item["quantity"]
            try:
                applied = await self._commit_step(saga_id, position, product_id, quantity)
            except StorageFailure:
                log.error("Reservation interrupted by storage failure", product_id=product_id)
                await self._abandon(saga_id)
                raise

            if not applied:
                log.warning("Insufficient stock, compensating", product_id=product_id, quantity=quantity)
                await self._set_state(saga_id, SagaState.COMPENSATING,
                                      expected=(SagaState.RESERVING,), failed_product_id=product_id)
                await self._compensate(saga_id)
                await self._set_state(saga_id, SagaState.COMPENSATED, expected=(SagaState.COMPENSATING,))
                raise InsufficientStock(product_id, item.get("name"))

        await self._set_state(saga_id, SagaState.RESERVED, expected=(SagaState.RESERVING,))
        log.info("Stock reserved", items=len(order.items))
        return saga_id

    async def complete(self, saga_id: str):
        await self._set_state(saga_id, SagaState.COMPLETED, expected=(SagaState.RESERVED,))

    async def release(self, saga_id: str) -> bool:
        """Give back the stock held by a reserved or completed saga.

        Returns False when the saga was not holding stock any more.
        """
        claimed = await self._set_state(saga_id, SagaState.COMPENSATING,
                                        expected=(SagaState.RESERVED, SagaState.COMPLETED))
        if not claimed:
            return False
        await self._compensate(saga_id)
        await self._set_state(saga_id, SagaState.RELEASED, expected=(SagaState.COMPENSATING,))
        logger.info("Reservation released", saga_id=saga_id)
        return True

    async def release_for_order(self, order_id: str) -> bool:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(ReservationSaga.id).where(
                        ReservationSaga.order_id == order_id,
                        ReservationSaga.state.in_((SagaState.RESERVED, SagaState.COMPLETED)),
                    )
                )
                saga_id = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageFailure(f"Could not look up reservation for order {order_id}") from e

        if saga_id is None:
            return False
        return await self.release(saga_id)

    async def get_saga(self, saga_id: str) -> Optional[ReservationSaga]:
        try:
            async with self.session_factory() as session:
                return await session.get(ReservationSaga, saga_id)
        except SQLAlchemyError as e:
            raise StorageFailure(f"Could not load saga {saga_id}") from e

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def recover_incomplete_sagas(self, grace: Optional[timedelta] = None) -> Dict[str, int]:
        """Finish or reverse sagas left unfinished by a crashed process.

        Only sagas untouched for longer than ``grace`` (default: the
        coordinator's recovery grace) are considered, so a live worker's
        reservation is left alone.
        """
        stale = await self._stale_sagas(grace)

        summary = {"completed": 0, "compensated": 0, "aborted": 0, "failed": 0}
        for saga, order_status in stale:
            outcome = await self._resolve(saga, order_status)
            if outcome:
                summary[outcome] += 1

        if stale:
            logger.info("Saga recovery sweep finished", **summary)
        return summary

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _stale_sagas(self, grace: Optional[timedelta] = None, order_id: Optional[str] = None):
        cutoff = utcnow() - (self.recovery_grace if grace is None else grace)
        statement = (
            select(ReservationSaga, Order.order_status)
            .join(Order, Order.id == ReservationSaga.order_id)
            .where(ReservationSaga.state.in_(UNFINISHED_STATES), ReservationSaga.updated_at <= cutoff)
            .order_by(ReservationSaga.created_at)
        )
        if order_id is not None:
            statement = statement.where(ReservationSaga.order_id == order_id)
        try:
            async with self.session_factory() as session:
                result = await session.execute(statement)
                return result.all()
        except SQLAlchemyError as e:
            raise StorageFailure("Could not scan reservation sagas") from e

    async def _resolve(self, saga: ReservationSaga, order_status: OrderStatus) -> Optional[str]:
        """Bring one stale saga to a final state; returns the summary key, or None if someone else did."""
        log = logger.bind(saga_id=saga.id, order_id=saga.order_id, state=saga.state.value)

        if saga.state == SagaState.RESERVED and order_status in FULFILLED_ORDER_STATES:
            if await self._set_state(saga.id, SagaState.COMPLETED, expected=(SagaState.RESERVED,)):
                log.info("Recovered saga marked completed")
                return "completed"
            return None

        claimed = await self._set_state(saga.id, SagaState.COMPENSATING, expected=(saga.state,))
        if not claimed:
            return None
        try:
            await self._compensate(saga.id)
        except CompensationFailure:
            return "failed"

        # A still-pending order can be retried by the gateway's next delivery
        final = SagaState.ABORTED if order_status == OrderStatus.PENDING else SagaState.COMPENSATED
        await self._set_state(saga.id, final, expected=(SagaState.COMPENSATING,))
        log.warning("Recovered saga reversed", final_state=final.value)
        return final.value

    async def _take_over_stale_claim(self, order_id: str) -> bool:
        """Resolve a stale saga blocking ``order_id``; True once the claim is free again."""
        for saga, order_status in await self._stale_sagas(order_id=order_id):
            logger.warning("Redelivery found a stale reservation", saga_id=saga.id, order_id=order_id)
            if await self._resolve(saga, order_status) == SagaState.ABORTED.value:
                return True
        return False

    async def _claim(self, order: Order) -> Optional[str]:
        """Insert the saga intent row; None when another saga already holds the order."""
        saga = ReservationSaga(
            id=str(uuid4()),
            order_id=order.id,
            state=SagaState.RESERVING,
            items=[{"product_id": item["product_id"], "quantity": item["quantity"]} for item in order.items],
        )
        try:
            async with self.session_factory() as session:
                session.add(saga)
                await session.commit()
        except IntegrityError:
            logger.info("Order already claimed by another delivery", order_id=order.id)
            return None
        except SQLAlchemyError as e:
            raise StorageFailure(f"Could not start reservation for order {order.id}") from e
        return saga.id

    async def _commit_step(self, saga_id: str, position: int, product_id: str, quantity: int) -> bool:
        try:
            async with self.session_factory() as session:
                applied = await self.inventory.conditional_decrement(product_id, quantity, session=session)
                if not applied:
                    await session.rollback()
                    return False
                session.add(ReservationStep(
                    saga_id=saga_id,
                    position=position,
                    product_id=product_id,
                    quantity=quantity,
                    state=StepState.COMMITTED,
                ))
                await session.commit()
                return True
        except SQLAlchemyError as e:
            raise StorageFailure(f"Could not record reservation of {product_id}") from e

    async def _committed_steps(self, saga_id: str) -> List[ReservationStep]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(ReservationStep)
                    .where(ReservationStep.saga_id == saga_id, ReservationStep.state == StepState.COMMITTED)
                    .order_by(ReservationStep.position)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StorageFailure(f"Could not load steps of saga {saga_id}") from e

    async def _compensate(self, saga_id: str):
        """Restore every committed step, in the order the steps were committed."""
        try:
            steps = await self._committed_steps(saga_id)
        except StorageFailure as e:
            logger.critical("Compensation could not load saga steps", saga_id=saga_id)
            raise CompensationFailure(saga_id, "*", 0) from e

        for step in steps:
            retrying = AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.retry_wait, max=30),
                retry=retry_if_exception_type(StorageFailure),
                reraise=True,
            )
            try:
                async for attempt in retrying:
                    with attempt:
                        await self._restore_step(step)
            except StorageFailure as e:
                logger.critical(
                    "Compensation failed, stock left short",
                    saga_id=saga_id,
                    product_id=step.product_id,
                    quantity=step.quantity,
                    attempts=self.max_attempts,
                )
                raise CompensationFailure(saga_id, step.product_id, step.quantity) from e

    async def _restore_step(self, step: ReservationStep):
        try:
            async with self.session_factory() as session:
                marked = await session.execute(
                    update(ReservationStep)
                    .where(ReservationStep.id == step.id, ReservationStep.state == StepState.COMMITTED)
                    .values(state=StepState.COMPENSATED)
                    .execution_options(synchronize_session=False)
                )
                if marked.rowcount != 1:
                    # already restored by an earlier attempt
                    await session.rollback()
                    return
                await self.inventory.increment(step.product_id, step.quantity, session=session)
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageFailure(f"Could not restore stock for {step.product_id}") from e
        logger.info("Stock restored", saga_id=step.saga_id, product_id=step.product_id, quantity=step.quantity)

    async def _abandon(self, saga_id: str):
        """Best-effort undo after a storage failure; the sweep covers what this misses."""
        try:
            await self._set_state(saga_id, SagaState.COMPENSATING, expected=(SagaState.RESERVING,))
            await self._compensate(saga_id)
            await self._set_state(saga_id, SagaState.ABORTED, expected=(SagaState.COMPENSATING,))
        except (StorageFailure, CompensationFailure) as e:
            logger.error("Could not undo interrupted reservation, leaving it to recovery",
                         saga_id=saga_id, error=str(e))

    async def _set_state(self, saga_id: str, state: SagaState,
                         expected: Sequence[SagaState] = (), **extra) -> int:
        statement = update(ReservationSaga).where(ReservationSaga.id == saga_id)
        if expected:
            statement = statement.where(ReservationSaga.state.in_(tuple(expected)))
        statement = statement.values(state=state, updated_at=utcnow(), **extra).execution_options(
            synchronize_session=False
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(statement)
                await session.commit()
                return result.rowcount
        except SQLAlchemyError as e:
            raise StorageFailure(f"Could not move saga {saga_id} to {state.value}") from e

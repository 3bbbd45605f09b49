"""Inter-module message bus with dependency enforcement, retry and dead-lettering."""

from __future__ import annotations

import asyncio
import contextvars
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from pydantic_core import to_jsonable_python

from .config import BusConfig
from .contracts import (
    BroadcastResult,
    DeliveryReceipt,
    Message,
    MessageStatus,
    Priority,
)
from .errors import (
    BusStopped,
    DeliveryError,
    DeliveryFailed,
    DeliveryTimeout,
    DependencyNotSatisfied,
    TargetNotRegistered,
    TransientDeliveryError,
)
from .persistence import Store
from .registry import ModuleRegistry
from .transports import BaseTransport, InMemoryTransport
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)

# The worker slot held by the lane task currently running a handler.
_worker_slot: contextvars.ContextVar[Optional[Tuple[asyncio.Semaphore, asyncio.Task]]] = (
    contextvars.ContextVar("modweave_worker_slot", default=None)
)


class MessageBus:
    """Point-to-point and broadcast delivery between registered modules.

    Every message is persisted before it is queued. Deliveries for one
    (sender, target) pair run through a single consumer lane, so they are
    FIFO with at most one in flight; lanes for distinct pairs run
    concurrently, bounded by ``config.workers``. A handler waiting on a
    nested :meth:`call` gives its worker slot back until the reply arrives.
    Lanes stop after ``config.lane_idle_timeout`` seconds without traffic and
    are restarted by the next message on their key.
    """

    COLLECTION = "messages"

    def __init__(
        self,
        registry: ModuleRegistry,
        store: Store,
        transport: Optional[BaseTransport] = None,
        config: Optional[BusConfig] = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._transport = transport or InMemoryTransport()
        self.config = config or BusConfig()
        self._workers = asyncio.Semaphore(self.config.workers)
        self._lanes: Dict[str, asyncio.Task] = {}
        self._backlog: Dict[str, int] = {}
        self._waiters: Dict[str, asyncio.Future] = {}
        self._pending: Set[str] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> None:
        """Connect the transport and requeue messages still queued in the store.

        The store is authoritative: a message the transport already holds may be
        published twice, and the second copy is skipped once the first is terminal.
        """
        self._closed = False
        await self._transport.connect()
        queued = await self._store.select(self.COLLECTION, status=MessageStatus.QUEUED.value)
        for doc in queued:
            message = Message.model_validate(doc)
            self._track(message.message_id)
            await self._publish(message)
        if queued:
            logger.info(f"Resumed {len(queued)} queued messages")

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every submitted message reached a terminal state.

        Returns ``False`` if ``timeout`` expired first.
        """
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def stop(self) -> None:
        """Stop accepting messages and cancel consumer lanes."""
        self._closed = True
        lanes = list(self._lanes.values())
        for task in lanes:
            task.cancel()
        await asyncio.gather(*lanes, return_exceptions=True)
        self._lanes.clear()
        self._backlog.clear()
        for future in self._waiters.values():
            if not future.done():
                future.cancel()
        self._waiters.clear()
        self._pending.clear()
        self._idle.set()

    # ------------------------------------------------------------------
    # Sending
    async def send(
        self,
        target: str,
        message_type: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        sender: Optional[str] = None,
        priority: Priority = Priority.NORMAL,
        correlation_id: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> str:
        """Queue a message for ``target`` and return its id.

        Raises:
            TargetNotRegistered: ``target`` is unknown.
            DependencyNotSatisfied: ``target`` does not accept ``sender``.
            BusStopped: The bus has been stopped.
        """
        message = await self._submit(
            target,
            message_type,
            payload,
            sender=sender,
            priority=priority,
            correlation_id=correlation_id,
            reply_to=reply_to,
        )
        return message.message_id

    async def call(
        self,
        target: str,
        message_type: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        sender: Optional[str] = None,
        timeout: Optional[float] = None,
        priority: Priority = Priority.NORMAL,
        correlation_id: Optional[str] = None,
    ) -> Any:
        """Synchronous send: wait for the target handler's outcome.

        Raises:
            DeliveryTimeout: No outcome within ``timeout``. The message stays
                queued and will still be delivered.
            DeliveryFailed: The delivery ended failed or dead-lettered.
        """
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        message = await self._submit(
            target,
            message_type,
            payload,
            sender=sender,
            priority=priority,
            correlation_id=correlation_id,
            waiter=future,
        )
        timeout = self.config.call_timeout if timeout is None else timeout
        held = _worker_slot.get()
        lend_slot = (
            held is not None and held[0] is self._workers and held[1] is asyncio.current_task()
        )
        if lend_slot:
            self._workers.release()
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
        except asyncio.TimeoutError:
            raise DeliveryTimeout(
                f"No reply from {target} within {timeout}s",
                message_id=message.message_id,
                target=target,
            ) from None
        finally:
            self._waiters.pop(message.message_id, None)
            if not future.done():
                future.cancel()
            if lend_slot:
                await asyncio.shield(self._workers.acquire())

    async def broadcast(
        self,
        message_type: str,
        payload: Optional[Dict[str, Any]] = None,
        targets: Optional[Iterable[str]] = None,
        *,
        sender: Optional[str] = None,
        priority: Priority = Priority.NORMAL,
        correlation_id: Optional[str] = None,
    ) -> BroadcastResult:
        """Send to every registered module (or to ``targets``), best effort."""
        if targets is None:
            targets = [name for name in await self._registry.module_names() if name != sender]
        result = BroadcastResult()
        for target in targets:
            try:
                message_id = await self.send(
                    target,
                    message_type,
                    payload,
                    sender=sender,
                    priority=priority,
                    correlation_id=correlation_id,
                )
            except DeliveryError as exc:
                result.results[target] = DeliveryReceipt(
                    target=target, ok=False, error=exc.to_dict()
                )
            else:
                result.results[target] = DeliveryReceipt(
                    target=target, ok=True, message_id=message_id
                )
        if not result.succeeded:
            logger.warning(
                f"Broadcast {message_type} partially failed for {result.failed_targets}"
            )
        return result

    async def _submit(
        self,
        target: str,
        message_type: str,
        payload: Optional[Dict[str, Any]],
        *,
        sender: Optional[str],
        priority: Priority,
        correlation_id: Optional[str],
        reply_to: Optional[str] = None,
        waiter: Optional[asyncio.Future] = None,
        replay_of: Optional[str] = None,
    ) -> Message:
        if self._closed:
            raise BusStopped(
                f"Message bus is stopped; {message_type} for {target} was not queued",
                target=target,
            )
        if not await self._registry.is_registered(target):
            raise TargetNotRegistered(
                f"Target module {target} is not registered", target=target
            )
        if not await self._registry.check_dependency_satisfied(target, sender):
            raise DependencyNotSatisfied(
                f"Module {target} does not accept messages from {sender}",
                target=target,
                sender=sender,
            )

        message = Message(
            sender=sender,
            target=target,
            message_type=message_type,
            payload=payload or {},
            priority=priority,
            correlation_id=correlation_id,
            reply_to=reply_to,
            replay_of=replay_of,
        )
        await self._store.insert(self.COLLECTION, message.message_id, message.to_document())

        if waiter is not None:
            self._waiters[message.message_id] = waiter

        self._track(message.message_id)
        await self._publish(message)
        logger.debug(
            f"Queued {message.message_type} {message.message_id} on {message.ordering_key}"
        )
        return message

    # ------------------------------------------------------------------
    # Delivery
    async def _publish(self, message: Message) -> None:
        key = message.ordering_key
        # Counted before publishing so an idle lane never exits with work pending.
        self._backlog[key] = self._backlog.get(key, 0) + 1
        try:
            await self._transport.publish(key, message)
        except Exception:
            self._backlog[key] -= 1
            raise
        self._ensure_lane(key)

    @property
    def active_lanes(self) -> List[str]:
        return sorted(key for key, task in self._lanes.items() if not task.done())

    def _ensure_lane(self, key: str) -> None:
        task = self._lanes.get(key)
        if task is None or task.done():
            self._lanes[key] = asyncio.create_task(self._run_lane(key), name=f"lane:{key}")

    async def _run_lane(self, key: str) -> None:
        while True:
            received = 0
            async for raw_message, message in self._transport.subscribe(
                key, lifespan=self.config.lane_idle_timeout
            ):
                received += 1
                self._backlog[key] = max(self._backlog.get(key, 0) - 1, 0)
                try:
                    await self._deliver(message)
                except asyncio.CancelledError:
                    await self._transport.nack(raw_message, requeue=True)
                    raise
                except Exception:
                    # The message stays queued in the store for operator review.
                    logger.exception(f"Delivery loop error for {message.message_id} on {key}")
                    self._settle(message.message_id)
                await self._transport.ack(raw_message)
            if not received and not self._backlog.get(key):
                break

        # Nothing awaits between the idle check above and here.
        if self._lanes.get(key) is asyncio.current_task():
            del self._lanes[key]
        self._backlog.pop(key, None)
        self._transport.release(key)
        logger.debug(f"Lane {key} idle, stopped")

    async def _deliver(self, message: Message) -> None:
        doc = await self._store.get(self.COLLECTION, message.message_id)
        if doc is None:
            logger.debug(f"Message {message.message_id} no longer stored, skipping")
            self._settle(message.message_id)
            return
        current = Message.model_validate(doc)
        if current.status.terminal:
            self._settle(message.message_id)
            return

        attempt = current.attempts
        while True:
            attempt += 1
            if not await self._registry.is_registered(current.target):
                await self._finish(
                    current,
                    MessageStatus.FAILED,
                    attempt,
                    error=f"Target module {current.target} is no longer registered",
                )
                return
            module = self._registry.implementation(current.target)
            try:
                if module is None:
                    raise TransientDeliveryError(
                        f"Module {current.target} has no attached implementation"
                    )
                async with self._workers:
                    token = _worker_slot.set((self._workers, asyncio.current_task()))
                    try:
                        result = await module.handle(current.message_type, current.payload)
                    finally:
                        _worker_slot.reset(token)
            except TransientDeliveryError as exc:
                if attempt >= self.config.max_attempts:
                    await self._finish(
                        current, MessageStatus.DEAD_LETTERED, attempt, error=str(exc)
                    )
                    return
                logger.warning(
                    f"Transient failure delivering {current.message_id} to "
                    f"{current.target} (attempt {attempt}/{self.config.max_attempts}): {exc}"
                )
                current.attempts = attempt
                current.last_error = str(exc)
                current.updated_at = datetime.now(timezone.utc)
                await self._store.update(
                    self.COLLECTION,
                    current.message_id,
                    current.to_document(),
                    expected={"status": MessageStatus.QUEUED.value},
                )
                await schedule_retry(attempt, self.config)
            except Exception as exc:
                await self._finish(
                    current,
                    MessageStatus.FAILED,
                    attempt,
                    error=f"{type(exc).__name__}: {exc}",
                    exc=exc,
                )
                return
            else:
                if current.reply_to:
                    await self._send_reply(current, result)
                await self._finish(current, MessageStatus.DELIVERED, attempt, result=result)
                return

    async def _finish(
        self,
        message: Message,
        status: MessageStatus,
        attempts: int,
        *,
        result: Any = None,
        error: Optional[str] = None,
        exc: Optional[BaseException] = None,
    ) -> None:
        message.status = status
        message.attempts = attempts
        message.result = to_jsonable_python(result, fallback=repr)
        message.last_error = error
        message.updated_at = datetime.now(timezone.utc)
        updated = await self._store.update(
            self.COLLECTION,
            message.message_id,
            message.to_document(),
            expected={"status": MessageStatus.QUEUED.value},
        )
        if not updated:
            logger.debug(f"Message {message.message_id} already terminal")

        if status is MessageStatus.DELIVERED:
            logger.info(
                f"Delivered {message.message_type} {message.message_id} to {message.target}"
            )
        elif status is MessageStatus.DEAD_LETTERED:
            logger.warning(
                f"Dead-lettered {message.message_id} for {message.target} "
                f"after {attempts} attempts: {error}"
            )
        else:
            logger.error(f"Delivery of {message.message_id} to {message.target} failed: {error}")

        waiter = self._waiters.pop(message.message_id, None)
        if waiter is not None and not waiter.done():
            if status is MessageStatus.DELIVERED:
                waiter.set_result(result)
            else:
                waiter.set_exception(
                    DeliveryFailed(
                        f"Delivery to {message.target} ended {status.value}: {error}",
                        message_id=message.message_id,
                        target=message.target,
                        status=status.value,
                        cause=exc.to_dict() if hasattr(exc, "to_dict") else error,
                    )
                )

        self._settle(message.message_id)

    def _track(self, message_id: str) -> None:
        self._pending.add(message_id)
        self._idle.clear()

    def _settle(self, message_id: str) -> None:
        self._pending.discard(message_id)
        if not self._pending:
            self._idle.set()

    async def _send_reply(self, message: Message, result: Any) -> None:
        try:
            await self.send(
                message.reply_to,
                f"{message.message_type}.reply",
                {"in_reply_to": message.message_id, "result": to_jsonable_python(result, fallback=repr)},
                sender=message.target,
                correlation_id=message.correlation_id or message.message_id,
            )
        except DeliveryError as exc:
            logger.error(
                f"Could not route reply for {message.message_id} to {message.reply_to}: {exc}"
            )

    # ------------------------------------------------------------------
    # Operator views
    async def get_message(self, message_id: str) -> Message | None:
        doc = await self._store.get(self.COLLECTION, message_id)
        return Message.model_validate(doc) if doc else None

    async def list_messages(self, status: Optional[MessageStatus] = None) -> List[Message]:
        filters = {"status": status.value} if status else {}
        return [Message.model_validate(d) for d in await self._store.select(self.COLLECTION, **filters)]

    async def dead_letters(self) -> List[Message]:
        return await self.list_messages(MessageStatus.DEAD_LETTERED)

    async def failed_messages(self) -> List[Message]:
        return await self.list_messages(MessageStatus.FAILED)

    async def replay_dead_letter(self, message_id: str) -> str:
        """Queue a fresh copy of a dead-lettered message; the original stays terminal."""
        original = await self.get_message(message_id)
        if original is None or original.status is not MessageStatus.DEAD_LETTERED:
            raise DeliveryError(
                f"Message {message_id} is not dead-lettered", message_id=message_id
            )
        message = await self._submit(
            original.target,
            original.message_type,
            original.payload,
            sender=original.sender,
            priority=original.priority,
            correlation_id=original.correlation_id,
            reply_to=original.reply_to,
            replay_of=original.message_id,
        )
        logger.info(f"Replaying dead letter {message_id} as {message.message_id}")
        return message.message_id

    async def collect_garbage(self, now: Optional[datetime] = None) -> int:
        """Delete delivered and failed messages older than ``message_ttl``."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.config.message_ttl)
        removed = 0
        for status in (MessageStatus.DELIVERED, MessageStatus.FAILED):
            for message in await self.list_messages(status):
                if message.updated_at <= cutoff:
                    removed += await self._store.delete(self.COLLECTION, message.message_id)
        if removed:
            logger.info(f"Collected {removed} expired messages")
        return removed

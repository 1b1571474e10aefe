"""
inbox_subscriber.py - Live Inbox Subscription for the Fairdrop Client

Keeps at most one live channel to an inbox open, delivers every descriptor
the channel produces, and reconnects after transport errors or closes.

State machine (pure reducer, reduce_subscription):

    IDLE --CONNECTING--> CONNECTING --CONNECTED--> CONNECTED --MESSAGE--> CONNECTED
    CONNECTING/CONNECTED --ERROR|CLOSED--> IDLE --RECONNECT_SCHEDULED--> RECONNECT_PENDING
    RECONNECT_PENDING --CONNECTING--> CONNECTING
    IDLE --GAVE_UP--> CLOSED (reconnect disabled or attempt cap reached)
    any --CANCELLED--> CLOSED (only CONNECTING leaves CLOSED)

Every async step runs under a generation check: subscribe(), cancel() and
each reconnect bump the generation, and a task whose generation is no
longer current (or whose owner has called close()) stops without touching
state or firing callbacks.

Consumers can use callbacks, the events() async iterator, or both.

Classes:
    InboxSubscriber
        subscribe(params, start_index, on_message, on_error, on_close, on_connect) -> InboxErrorCode
        cancel() / unsubscribe()
        close()
        events() -> AsyncIterator[SubscriptionEvent]
"""

import asyncio
import inspect
from typing import Any, AsyncIterator, Callable, Optional, Protocol

from fairdrop_types import (
    InboxErrorCode,
    InboxParams,
    GSOCMessage,
    SubscriberConfig,
    SubscriptionState,
    SubscriptionEventType,
    SubscriptionEvent,
    SubscriptionStatus,
)
from logger import log_debug, log_info, log_warning, log_error, LoggerHandle


CONTEXT = "InboxSubscr"

TERMINAL_EVENTS = (SubscriptionEventType.CANCELLED, SubscriptionEventType.GAVE_UP)


# ============================================================================
# TRANSPORT CONTRACT
# ============================================================================

class InboxChannel(Protocol):
    async def receive(self) -> Optional[GSOCMessage]:
        """Next descriptor, None on a clean close; raises on transport error."""
        ...

    async def close(self) -> None:
        ...


class InboxTransport(Protocol):
    async def open(self, params: InboxParams, start_index: int) -> InboxChannel:
        ...


# ============================================================================
# REDUCER
# ============================================================================

def reduce_subscription(status: SubscriptionStatus, event: SubscriptionEvent) -> SubscriptionStatus:
    """
    Next status for an event. Pure: no I/O, no callbacks.

    A CLOSED subscription ignores everything except CONNECTING, which a new
    subscribe() emits.
    """
    kind = event.type

    if status.state == SubscriptionState.CLOSED and kind != SubscriptionEventType.CONNECTING:
        return status

    if kind == SubscriptionEventType.CONNECTING:
        return SubscriptionStatus(
            state=SubscriptionState.CONNECTING,
            error=None,
            message_count=status.message_count,
            reconnect_attempts=status.reconnect_attempts,
        )

    if kind == SubscriptionEventType.CONNECTED:
        return SubscriptionStatus(
            state=SubscriptionState.CONNECTED,
            error=None,
            message_count=status.message_count,
            reconnect_attempts=status.reconnect_attempts,
        )

    if kind == SubscriptionEventType.MESSAGE_RECEIVED:
        return SubscriptionStatus(
            state=status.state,
            error=status.error,
            message_count=status.message_count + 1,
            reconnect_attempts=0,
        )

    if kind == SubscriptionEventType.ERROR:
        return SubscriptionStatus(
            state=SubscriptionState.IDLE,
            error=str(event.error) if event.error is not None else "unknown error",
            message_count=status.message_count,
            reconnect_attempts=status.reconnect_attempts,
        )

    if kind == SubscriptionEventType.CLOSED:
        return SubscriptionStatus(
            state=SubscriptionState.IDLE,
            error=status.error,
            message_count=status.message_count,
            reconnect_attempts=status.reconnect_attempts,
        )

    if kind == SubscriptionEventType.RECONNECT_SCHEDULED:
        return SubscriptionStatus(
            state=SubscriptionState.RECONNECT_PENDING,
            error=status.error,
            message_count=status.message_count,
            reconnect_attempts=status.reconnect_attempts + 1,
        )

    if kind in TERMINAL_EVENTS:
        return SubscriptionStatus(
            state=SubscriptionState.CLOSED,
            error=status.error,
            message_count=status.message_count,
            reconnect_attempts=status.reconnect_attempts,
        )

    return status


# ============================================================================
# SUBSCRIBER
# ============================================================================

Callback = Optional[Callable[..., Any]]


class InboxSubscriber:
    """
    Owns one live inbox channel and its reconnect timer.

    subscribe() must be called from inside a running event loop. Callbacks
    may be plain functions or coroutines; coroutine callbacks are awaited
    before the next descriptor is read, so on_message order is transport
    order.

    Args:
        transport: Opens channels (BeeInboxTransport in production)
        subscriber_config: Reconnect policy and event queue size
        logger_handle: Optional logger handle
    """

    def __init__(
        self,
        transport: InboxTransport,
        subscriber_config: Optional[SubscriberConfig] = None,
        logger_handle: Optional[LoggerHandle] = None
    ):
        self.transport = transport
        self.config = subscriber_config or SubscriberConfig()
        self.logger = logger_handle

        self._status = SubscriptionStatus()
        self._generation = 0
        self._alive = True

        self._task: Optional[asyncio.Task] = None
        self._stopping: list = []
        self._channel: Optional[InboxChannel] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None

        self._params: Optional[InboxParams] = None
        self._start_index = 0
        self._last_index: Optional[int] = None
        self._on_message: Callback = None
        self._on_error: Callback = None
        self._on_close: Callback = None
        self._on_connect: Callback = None

        self._queue: Optional[asyncio.Queue] = None
        self._streaming = False
        self.dropped_events = 0

    # --- context manager ---

    async def __aenter__(self) -> "InboxSubscriber":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()
        await self.wait_closed()

    # --- public state ---

    @property
    def status(self) -> SubscriptionStatus:
        return self._status

    @property
    def current_index(self) -> int:
        """Slot after the highest one delivered, else the start index."""
        if self._last_index is not None:
            return self._last_index + 1
        return self._start_index

    @property
    def is_active(self) -> bool:
        if self._status.state == SubscriptionState.CLOSED or not self._alive:
            return False
        running = self._task is not None and not self._task.done()
        return running or self._reconnect_handle is not None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    # --- subscribe / cancel ---

    def subscribe(
        self,
        params: InboxParams,
        start_index: int = 0,
        on_message: Callback = None,
        on_error: Callback = None,
        on_close: Callback = None,
        on_connect: Callback = None
    ) -> InboxErrorCode:
        """
        Open a live channel, replacing any existing one.

        Returns:
            SUCCESS, ERR_INVALID_PARAM, or ERR_NOT_RUNNING after close()
        """
        if not self._alive:
            log_error(self.logger, CONTEXT, "Subscribe failed", "subscriber has been closed")
            return InboxErrorCode.ERR_NOT_RUNNING

        if params is None or not params.is_valid() or start_index < 0:
            log_error(self.logger, CONTEXT, "Subscribe failed", "invalid inbox parameters")
            return InboxErrorCode.ERR_INVALID_PARAM

        self._teardown()

        self._params = params
        self._start_index = start_index
        self._last_index = None
        self._on_message = on_message
        self._on_error = on_error
        self._on_close = on_close
        self._on_connect = on_connect
        self._status = SubscriptionStatus(message_count=self._status.message_count)

        log_info(self.logger, CONTEXT, f"Subscribing from slot {start_index}")
        self._start(start_index)
        return InboxErrorCode.SUCCESS

    def cancel(self) -> None:
        """Stop the channel and any pending reconnect. Safe to call repeatedly."""
        self._teardown()
        if self._status.state != SubscriptionState.CLOSED:
            self._dispatch(SubscriptionEvent(SubscriptionEventType.CANCELLED))
            log_info(self.logger, CONTEXT, "Subscription cancelled")

    def unsubscribe(self) -> None:
        self.cancel()

    def close(self) -> None:
        """Owner teardown: no callback or state change happens after this."""
        self._alive = False
        self.cancel()

    async def wait_closed(self) -> None:
        """Wait for cancelled channel tasks to finish closing their transport."""
        current = asyncio.current_task()
        tasks = [t for t in self._stopping if t is not current]
        self._stopping = []
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def events(self) -> AsyncIterator[SubscriptionEvent]:
        """
        Stream of subscription events, ending after CANCELLED or GAVE_UP.

        Example:
            async for event in subscriber.events():
                if event.type == SubscriptionEventType.MESSAGE_RECEIVED:
                    handle(event.message)
        """
        self._streaming = True
        queue = self._event_queue()
        while True:
            event = await queue.get()
            yield event
            if event.type in TERMINAL_EVENTS:
                return

    # --- internals ---

    def _event_queue(self) -> asyncio.Queue:
        # created on first use so it belongs to the loop that consumes it
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=max(1, self.config.queue_size))
        return self._queue

    def _is_current(self, generation: int) -> bool:
        return self._alive and generation == self._generation

    def _teardown(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

        self._generation += 1

        task, self._task = self._task, None
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            # the task's finally block closes its channel; a task cancelling
            # itself from a callback just sees the generation change
            if task is not current:
                task.cancel()
            self._stopping.append(task)
        self._stopping = [t for t in self._stopping if not t.done()]

    def _start(self, index: int) -> None:
        self._generation += 1
        generation = self._generation
        self._dispatch(SubscriptionEvent(SubscriptionEventType.CONNECTING))
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(generation, index))

    def _dispatch(self, event: SubscriptionEvent) -> None:
        self._status = reduce_subscription(self._status, event)
        log_debug(self.logger, CONTEXT, f"{event.type.name} -> {self._status.state.name}")

        queue = self._event_queue()
        if queue.full():
            queue.get_nowait()
            self.dropped_events += 1
            if self._streaming:
                log_warning(self.logger, CONTEXT, "Event queue full, dropped oldest event")
        queue.put_nowait(event)

    async def _fire(self, generation: int, callback: Callback, *args: Any) -> None:
        if callback is None or not self._is_current(generation):
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_error(self.logger, CONTEXT, "Subscriber callback raised", str(e))

    async def _run(self, generation: int, index: int) -> None:
        channel: Optional[InboxChannel] = None
        try:
            try:
                channel = await self.transport.open(self._params, index)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._is_current(generation):
                    await self._on_failure(generation, e)
                return

            if not self._is_current(generation):
                return

            self._channel = channel
            self._dispatch(SubscriptionEvent(SubscriptionEventType.CONNECTED))
            log_info(self.logger, CONTEXT, f"Connected at slot {index}")
            await self._fire(generation, self._on_connect)

            while self._is_current(generation):
                try:
                    message = await channel.receive()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    if self._is_current(generation):
                        await self._on_failure(generation, e)
                    return

                if not self._is_current(generation):
                    return

                if message is None:
                    await self._on_closed(generation)
                    return

                if message.index is not None:
                    if self._last_index is None or message.index > self._last_index:
                        self._last_index = message.index

                self._dispatch(SubscriptionEvent(SubscriptionEventType.MESSAGE_RECEIVED, message=message))
                await self._fire(generation, self._on_message, message)
        finally:
            if self._channel is channel:
                self._channel = None
            if channel is not None:
                try:
                    await channel.close()
                except Exception as e:
                    log_warning(self.logger, CONTEXT, f"Channel close failed: {e}")

    async def _on_failure(self, generation: int, error: BaseException) -> None:
        log_error(self.logger, CONTEXT, "Inbox channel failed", str(error))
        self._dispatch(SubscriptionEvent(SubscriptionEventType.ERROR, error=error))
        await self._fire(generation, self._on_error, error)
        if self._is_current(generation):
            self._schedule_reconnect(generation)

    async def _on_closed(self, generation: int) -> None:
        log_info(self.logger, CONTEXT, "Inbox channel closed by transport")
        self._dispatch(SubscriptionEvent(SubscriptionEventType.CLOSED))
        await self._fire(generation, self._on_close)
        if self._is_current(generation):
            self._schedule_reconnect(generation)

    def reconnect_delay_ms(self) -> float:
        """Delay before the next reconnect attempt under the configured policy."""
        delay = self.config.reconnect_delay_ms
        multiplier = self.config.backoff_multiplier
        if multiplier > 1.0:
            delay = min(delay * (multiplier ** self._status.reconnect_attempts),
                        self.config.max_reconnect_delay_ms)
        return delay

    def _schedule_reconnect(self, generation: int) -> None:
        if not self.config.auto_reconnect:
            self._give_up("reconnect disabled")
            return

        cap = self.config.max_reconnect_attempts
        if cap > 0 and self._status.reconnect_attempts >= cap:
            self._give_up(f"gave up after {cap} reconnect attempt(s)")
            return

        delay_ms = self.reconnect_delay_ms()
        self._dispatch(SubscriptionEvent(SubscriptionEventType.RECONNECT_SCHEDULED))
        log_info(self.logger, CONTEXT,
                 f"Reconnecting in {delay_ms:.0f}ms (attempt {self._status.reconnect_attempts})")

        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay_ms / 1000.0, self._reconnect, generation)

    def _reconnect(self, generation: int) -> None:
        self._reconnect_handle = None
        if not self._is_current(generation):
            return

        index = self._start_index
        if self.config.resume_from_last_index and self._last_index is not None:
            index = self._last_index + 1

        self._start(index)

    def _give_up(self, reason: str) -> None:
        log_warning(self.logger, CONTEXT, f"Subscription stopped: {reason}")
        self._dispatch(SubscriptionEvent(SubscriptionEventType.GAVE_UP))

"""
Message broker connecting the gateway, the task service and the notification service.

Two kinds of traffic flow through it:

- request/response ("message patterns"): the gateway sends a payload to the
  single handler registered for a pattern and waits for its reply, up to
  BROKER_REQUEST_TIMEOUT seconds;
- events ("event patterns"): fire-and-forget payloads delivered to every
  listener of a pattern. emit() never raises; failures are logged.

The backend is determined by the BROKER_BACKEND environment variable:

    BROKER_BACKEND=local   # in-process dispatch (development, tests)
    BROKER_BACKEND=redis   # Redis pub/sub (separately deployed services)

Payloads and replies are JSON documents on both backends.
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

import config
from errors import AppError, DatabaseError, InternalServerError

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


def _to_wire(value: Any) -> Any:
    """Force a value through JSON so every backend hands handlers the same types."""
    return json.loads(json.dumps(value, default=str))


class MessageBroker(ABC):
    """
    Abstract broker.

    Implementations:
    - LocalBroker: dispatch inside the current event loop
    - RedisBroker: Redis pub/sub with a per-process reply channel
    """

    def __init__(self, request_timeout: float = config.BROKER_REQUEST_TIMEOUT):
        self.request_timeout = request_timeout
        self._handlers: Dict[str, Handler] = {}
        self._listeners: Dict[str, List[Handler]] = {}
        # Background deliveries and dispatches still running
        self._inflight: Set[asyncio.Task] = set()

    def add_handler(self, pattern: str, handler: Handler) -> None:
        """Register the request/response handler for a pattern, replacing any previous one."""
        self._handlers[pattern] = handler
        logger.debug(f"Registered handler for {pattern}")

    def add_listener(self, pattern: str, listener: Handler) -> None:
        """Subscribe a listener to an event pattern. Registering twice is a no-op."""
        listeners = self._listeners.setdefault(pattern, [])
        if listener not in listeners:
            listeners.append(listener)
            logger.debug(f"Registered listener for {pattern}")

    @property
    def patterns(self) -> List[str]:
        return sorted(set(self._handlers) | set(self._listeners))

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        await self.drain()

    def _spawn(self, coro: Awaitable[Any]) -> "asyncio.Task[Any]":
        task = asyncio.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def drain(self) -> None:
        """Wait until every background delivery, including ones they start, has finished."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    @abstractmethod
    async def send(self, pattern: str, data: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        """
        Send a request and wait for the handler's reply.

        Raises:
            InternalServerError: if no reply arrives within the timeout
            AppError: the error raised by the handler, with its code and status
        """

    @abstractmethod
    async def emit(self, pattern: str, data: Dict[str, Any]) -> None:
        """Publish an event. Never raises."""

    async def _run_handler(self, pattern: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run the handler for a pattern and package its outcome as a reply.

        Returns:
            {"result": ...} on success, {"error": {...}} on failure
        """
        handler = self._handlers.get(pattern)
        if handler is None:
            logger.warning(f"No handler registered for pattern: {pattern}")
            return {"error": InternalServerError(f"No handler for {pattern}").to_reply()}

        try:
            result = await handler(data)
        except AppError as e:
            logger.info(f"Handler for {pattern} raised {e.code}: {e.message}")
            return {"error": e.to_reply()}
        except SQLAlchemyError as e:
            logger.error(f"Database error in handler for {pattern}: {e}")
            return {"error": DatabaseError("Database operation failed").to_reply()}
        except Exception as e:
            logger.exception(f"Handler for {pattern} failed: {e}")
            return {"error": InternalServerError("Internal server error occurred").to_reply()}
        return {"result": _to_wire(result)}

    async def _notify_listeners(self, pattern: str, data: Dict[str, Any]) -> None:
        for listener in list(self._listeners.get(pattern, [])):
            try:
                await listener(data)
            except Exception as e:
                # No retry or dead-letter: the event is dropped for this listener
                logger.exception(f"Listener for {pattern} failed, event dropped: {e}")

    @staticmethod
    def _unwrap(pattern: str, reply: Dict[str, Any]) -> Any:
        if reply.get("error"):
            raise AppError.from_reply(reply["error"])
        logger.debug(f"Reply received for {pattern}")
        return reply.get("result")


class LocalBroker(MessageBroker):
    """
    Dispatch requests and events inside the current event loop.

    Events are delivered in a background task: emit() returns at once and a
    slow or failing listener never delays or fails the emitting request. Use
    drain() to wait for pending deliveries.
    """

    async def send(self, pattern: str, data: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        logger.debug(f"[LOCAL] Sending {pattern}")
        try:
            reply = await asyncio.wait_for(
                self._run_handler(pattern, _to_wire(data)),
                timeout or self.request_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"[LOCAL] Request {pattern} timed out")
            raise InternalServerError(f"Request {pattern} timed out")
        return self._unwrap(pattern, reply)

    async def emit(self, pattern: str, data: Dict[str, Any]) -> None:
        logger.debug(f"[LOCAL] Emitting {pattern}")
        try:
            payload = _to_wire(data)
        except (TypeError, ValueError) as e:
            logger.error(f"[LOCAL] Could not serialize event {pattern}: {e}")
            return
        self._spawn(self._notify_listeners(pattern, payload))


class RedisBroker(MessageBroker):
    """
    Redis pub/sub broker.

    Each pattern maps to the channel "<prefix>:<pattern>". Requests carry a
    correlation id and the sender's reply channel "<prefix>:reply:<uuid>";
    the handling process publishes {"id", "result"|"error"} there.
    """

    def __init__(
        self,
        url: str = config.REDIS_URL,
        prefix: str = config.BROKER_CHANNEL_PREFIX,
        request_timeout: float = config.BROKER_REQUEST_TIMEOUT,
    ):
        super().__init__(request_timeout)
        self._url = url
        self._prefix = prefix
        self._reply_channel = f"{prefix}:reply:{uuid.uuid4()}"
        self._redis: Optional[aioredis.Redis] = None
        self._pubsub = None
        self._listen_task: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}

    def _channel(self, pattern: str) -> str:
        return f"{self._prefix}:{pattern}"

    async def start(self) -> None:
        self._redis = aioredis.from_url(self._url, decode_responses=True)
        self._pubsub = self._redis.pubsub()
        channels = [self._channel(p) for p in self.patterns] + [self._reply_channel]
        await self._pubsub.subscribe(*channels)
        self._listen_task = asyncio.create_task(self._listen())
        logger.info(f"Redis broker subscribed to {len(channels)} channels")

    async def stop(self) -> None:
        if self._listen_task is not None:
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
        # No more replies can arrive once the listener is gone
        for future in self._pending.values():
            future.cancel()
        self._pending.clear()
        await self.drain()
        if self._pubsub is not None:
            await self._pubsub.aclose()
        if self._redis is not None:
            await self._redis.aclose()
        logger.info("Redis broker stopped")

    async def _listen(self) -> None:
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            # Handlers may themselves send requests, so never await them inline
            self._spawn(self._dispatch(message["channel"], message["data"]))

    async def _dispatch(self, channel: str, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding non-JSON message on {channel}")
            return

        if channel == self._reply_channel:
            future = self._pending.get(message.get("id"))
            if future is not None and not future.done():
                future.set_result(message)
            return

        pattern = channel[len(self._prefix) + 1:]
        if "reply_to" in message:
            reply = await self._run_handler(pattern, message.get("data") or {})
            reply["id"] = message.get("id")
            try:
                await self._redis.publish(message["reply_to"], json.dumps(reply))
            except RedisError as e:
                logger.error(f"Could not publish reply for {pattern}: {e}")
        else:
            await self._notify_listeners(pattern, message.get("data") or {})

    async def send(self, pattern: str, data: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        if self._redis is None:
            raise InternalServerError("Broker is not started")

        correlation_id = str(uuid.uuid4())
        future = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = future
        message = {"id": correlation_id, "reply_to": self._reply_channel, "data": data}
        try:
            receivers = await self._redis.publish(self._channel(pattern), json.dumps(message, default=str))
            if not receivers:
                logger.error(f"No subscriber for {pattern}")
                raise InternalServerError(f"Service unavailable for {pattern}")
            reply = await asyncio.wait_for(future, timeout or self.request_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Request {pattern} timed out")
            raise InternalServerError(f"Request {pattern} timed out")
        except RedisError as e:
            logger.error(f"Could not publish request {pattern}: {e}")
            raise InternalServerError("Message broker unavailable")
        finally:
            self._pending.pop(correlation_id, None)
        return self._unwrap(pattern, reply)

    async def emit(self, pattern: str, data: Dict[str, Any]) -> None:
        if self._redis is None:
            logger.error(f"Broker is not started, dropping event {pattern}")
            return
        try:
            await self._redis.publish(self._channel(pattern), json.dumps({"data": data}, default=str))
            logger.debug(f"Emitted {pattern}")
        except (RedisError, TypeError, ValueError) as e:
            logger.error(f"Could not emit event {pattern}: {e}")


def create_broker(backend: str = config.BROKER_BACKEND) -> MessageBroker:
    """Build a broker for the configured backend."""
    if backend == "local":
        return LocalBroker()
    elif backend == "redis":
        return RedisBroker()
    else:
        raise ValueError(f"Unknown BROKER_BACKEND: {backend}")

"""
Inference gateway: the caller-side facade over the model host.

Every request gets a fresh request id and a future in the pending map; a
reader thread pulls replies off the host queue and hands them to the event
loop, where the reply's request id selects the future to resolve. Entries
leave the map as soon as their call finishes, whatever the outcome.

Known limitations: there are no timeouts (a crashed host leaves its pending
calls unresolved until `close()`), and abandoning a call does not stop work
already queued in the host.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Dict, List, Optional, Set

from pydantic import BaseModel, ValidationError

from .config import DEFAULT_MODEL_ID
from .errors import EmbeddingFailed, ModelUnavailable, ProtocolMismatch
from .host import ModelHost
from .progress import ProgressBroadcaster, ProgressListener
from .protocol import (
    DownloadProgress,
    ErrorReply,
    GenerateCommand,
    InitCommand,
    InitComplete,
    encode,
    new_request_id,
    parse_reply,
)

logger = logging.getLogger(__name__)


def _settle_init(task: asyncio.Task) -> None:
    """Retrieve the outcome of a load whose waiters may all have gone away."""
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Model load ended with %r", task.exception())


class InferenceGateway:
    """
    Async API for embeddings computed by a `ModelHost`.

    The host is started on first use. Concurrent `generate_embedding` calls
    are not serialized here; the host processes them in arrival order and
    each call resolves from its own reply only.
    """

    def __init__(
        self,
        host: ModelHost,
        model_id: str = DEFAULT_MODEL_ID,
        broadcaster: Optional[ProgressBroadcaster] = None,
    ) -> None:
        self._host = host
        self._model_id = model_id
        self._broadcaster = broadcaster or ProgressBroadcaster()
        self._pending: Dict[str, asyncio.Future] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reader: Optional[threading.Thread] = None
        self._init_task: Optional[asyncio.Task] = None
        self._loaded_device: Optional[str] = None
        self._background: Set[asyncio.Task] = set()
        self._closed = False

    async def __aenter__(self) -> "InferenceGateway":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def device(self) -> Optional[str]:
        return self._loaded_device

    @property
    def host(self) -> ModelHost:
        return self._host

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def on_progress(self, listener: ProgressListener) -> Callable[[], None]:
        return self._broadcaster.subscribe(listener)

    def _ensure_started(self) -> asyncio.AbstractEventLoop:
        if self._closed:
            raise RuntimeError("Gateway is closed")
        loop = asyncio.get_running_loop()
        if self._loop is None:
            self._loop = loop
        elif self._loop is not loop:
            raise RuntimeError("Gateway is bound to a different event loop")
        if not self._host.started:
            self._host.start()
        if self._reader is None or not self._reader.is_alive():
            self._reader = threading.Thread(
                target=self._pump_replies,
                args=(self._host, loop),
                name="cv-rank-reply-reader",
                daemon=True,
            )
            self._reader.start()
        return loop

    def _pump_replies(self, host: ModelHost, loop: asyncio.AbstractEventLoop) -> None:
        while True:
            message = host.receive()
            if message is None:
                break
            try:
                loop.call_soon_threadsafe(self._dispatch, message)
            except RuntimeError:
                logger.debug("Event loop closed; reply reader exiting")
                break

    def _dispatch(self, message: dict) -> None:
        try:
            reply = parse_reply(message)
        except ValidationError as exc:
            logger.warning("Ignoring malformed reply from model host: %s", exc)
            return

        if isinstance(reply, DownloadProgress):
            self._broadcaster.publish(reply.to_event())
            return

        future = self._pending.get(reply.request_id) if reply.request_id else None
        if future is None:
            if isinstance(reply, ErrorReply):
                logger.warning("Model host error without a pending request: %s", reply.message)
            else:
                logger.debug("%s; ignoring", ProtocolMismatch(reply.request_id, reply.type))
            return
        if not future.done():
            future.set_result(reply)

    async def _request(self, command: BaseModel):
        loop = self._ensure_started()
        request_id = command.request_id
        future = loop.create_future()
        self._pending[request_id] = future
        try:
            self._host.send(encode(command))
            return await future
        finally:
            self._pending.pop(request_id, None)

    def _fresh_request_id(self) -> str:
        request_id = new_request_id()
        while request_id in self._pending:
            request_id = new_request_id()
        return request_id

    async def _initialize(self, model_id: str) -> None:
        reply = await self._request(InitCommand(request_id=self._fresh_request_id(), model_id=model_id))
        if isinstance(reply, InitComplete) and reply.status == "ready":
            self._loaded_device = reply.device
            logger.info("Model %s loaded on %s", model_id, reply.device)
            return
        message = reply.message if reply.message else "unknown error"
        raise ModelUnavailable(model_id, message)

    def _start_init(self, model_id: str) -> asyncio.Task:
        self._ensure_started()
        task = asyncio.ensure_future(self._initialize(model_id))
        task.add_done_callback(_settle_init)
        self._init_task = task
        return task

    async def _ensure_model(self) -> str:
        """Wait for the active model to be loaded and return its id."""
        while True:
            task = self._init_task
            if task is None:
                task = self._start_init(self._model_id)
            try:
                await asyncio.shield(task)
            except ModelUnavailable:
                if self._init_task is not task:
                    # Superseded by set_model; wait for the replacement.
                    continue
                # Next caller issues a fresh init.
                self._init_task = None
                raise
            if task is self._init_task:
                return self._model_id

    async def set_model(self, model_id: str) -> None:
        """Switch to `model_id`. Later `generate_embedding` calls target it."""
        logger.info("Switching model to %s", model_id)
        self._model_id = model_id
        self._start_init(model_id)
        await self._ensure_model()

    def preload(self) -> None:
        """Start loading the active model without waiting; failures are only logged."""
        self._ensure_started()
        task = asyncio.ensure_future(self._preload())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _preload(self) -> None:
        try:
            await self._ensure_model()
        except ModelUnavailable as exc:
            logger.warning("Model preload failed (non-fatal): %s", exc)

    async def generate_embedding(self, text: str) -> List[float]:
        model_id = await self._ensure_model()
        request_id = self._fresh_request_id()
        reply = await self._request(
            GenerateCommand(request_id=request_id, text=text, model_id=model_id)
        )
        if isinstance(reply, ErrorReply):
            raise EmbeddingFailed(reply.message, request_id=request_id)
        return reply.vector

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in list(self._background):
            task.cancel()
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
        if self._host.started:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._host.stop)
        if self._reader is not None:
            await asyncio.get_running_loop().run_in_executor(None, self._reader.join, 5.0)
        for request_id, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(EmbeddingFailed("Gateway closed", request_id=request_id))
        self._broadcaster.clear()

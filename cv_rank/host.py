"""
Model host: owns the single loaded embedding pipeline.

The host runs `serve` inside an isolated execution context and is reached
only through two queues. It handles one command at a time in arrival order,
so an `init` naturally holds back every `generate` queued behind it.

`ModelHost` is the caller-side handle. With ``isolation="process"`` the
host lives in a spawned process and shares no memory with the caller. With
``isolation="thread"`` it runs in a daemon thread of the calling process:
same protocol, no isolation.
"""

from __future__ import annotations

import gc
import logging
import multiprocessing
import os
import queue
import threading
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from .errors import ModelUnavailable
from .loaders import EmbeddingPipeline, ModelLoader, load_with_fallback
from .protocol import (
    DownloadProgress,
    ErrorReply,
    GenerateCommand,
    GenerateComplete,
    InitCommand,
    InitComplete,
    ShutdownCommand,
    encode,
    parse_command,
)
from .schemas import ProgressEvent, ProgressStatus

logger = logging.getLogger(__name__)


class HostWorker:
    """Command handler holding at most one pipeline."""

    def __init__(
        self,
        loader: ModelLoader,
        outbox,
        primary_device: str = "cuda",
        fallback_device: str = "cpu",
    ) -> None:
        self._loader = loader
        self._outbox = outbox
        self._primary_device = primary_device
        self._fallback_device = fallback_device
        self._pipeline: Optional[EmbeddingPipeline] = None
        self._model_id: Optional[str] = None
        self._device: Optional[str] = None

    @property
    def model_id(self) -> Optional[str]:
        return self._model_id if self._pipeline is not None else None

    def _reply(self, message) -> None:
        self._outbox.put(encode(message))

    def _progress(self, event: ProgressEvent) -> None:
        self._reply(DownloadProgress.from_event(event))

    def handle(self, message: Mapping[str, Any]) -> bool:
        """Process one raw command. Returns False once the host should stop."""
        try:
            command = parse_command(message)
        except ValidationError as exc:
            request_id = message.get("request_id") if isinstance(message, Mapping) else None
            if not isinstance(request_id, str):
                request_id = None
            logger.warning("Rejected malformed command: %s", exc)
            self._reply(ErrorReply(request_id=request_id, message=f"Malformed command: {exc}"))
            return True

        if isinstance(command, ShutdownCommand):
            return False
        try:
            if isinstance(command, InitCommand):
                self._init(command)
            elif isinstance(command, GenerateCommand):
                self._generate(command)
        except Exception as exc:
            logger.exception("Host failed handling %s", command.type)
            self._reply(ErrorReply(request_id=command.request_id, message=str(exc) or repr(exc)))
        return True

    def _drop_pipeline(self) -> None:
        if self._pipeline is not None:
            logger.info("Releasing model %s", self._model_id)
        self._pipeline = None
        self._model_id = None
        self._device = None
        gc.collect()

    def _init(self, command: InitCommand) -> None:
        if self._pipeline is not None and self._model_id == command.model_id:
            self._reply(
                InitComplete(
                    request_id=command.request_id,
                    model_id=command.model_id,
                    status="ready",
                    device=self._device,
                )
            )
            return

        self._drop_pipeline()
        logger.info("Loading model %s", command.model_id)
        try:
            source = self._loader.prepare(command.model_id, on_progress=self._progress)
            outcome = load_with_fallback(
                self._loader.build,
                source,
                self._primary_device,
                self._fallback_device,
                model_id=command.model_id,
            )
        except Exception as exc:
            message = exc.message if isinstance(exc, ModelUnavailable) else str(exc)
            logger.error("Model %s failed to load: %s", command.model_id, message)
            self._progress(
                ProgressEvent(status=ProgressStatus.ERROR, file=command.model_id, model_id=command.model_id)
            )
            self._reply(
                InitComplete(
                    request_id=command.request_id,
                    model_id=command.model_id,
                    status="error",
                    message=message,
                )
            )
            return

        self._pipeline = outcome.pipeline
        self._model_id = command.model_id
        self._device = outcome.device
        logger.info("Model %s ready on %s", command.model_id, outcome.device)
        self._progress(
            ProgressEvent(
                status=ProgressStatus.READY,
                file=command.model_id,
                percent=100.0,
                model_id=command.model_id,
            )
        )
        self._reply(
            InitComplete(
                request_id=command.request_id,
                model_id=command.model_id,
                status="ready",
                device=outcome.device,
            )
        )

    def _generate(self, command: GenerateCommand) -> None:
        if self._pipeline is None:
            self._reply(ErrorReply(request_id=command.request_id, message="No model loaded"))
            return
        if command.model_id != self._model_id:
            self._reply(
                ErrorReply(
                    request_id=command.request_id,
                    message=f"Model {command.model_id} is not loaded (active: {self._model_id})",
                )
            )
            return

        vector = self._pipeline.embed(command.text)
        self._reply(
            GenerateComplete(request_id=command.request_id, vector=[float(v) for v in vector])
        )


def serve(
    inbox,
    outbox,
    loader: ModelLoader,
    primary_device: str = "cuda",
    fallback_device: str = "cpu",
) -> None:
    """Host loop. Runs until a shutdown command arrives."""
    worker = HostWorker(loader, outbox, primary_device, fallback_device)
    logger.debug("Model host started")
    while True:
        message = inbox.get()
        if not worker.handle(message):
            break
    logger.debug("Model host stopped")


class ModelHost:
    """
    Caller-side handle to a model host running in an isolated context.

    Nothing runs until `start()`. The loader must be picklable when
    ``isolation="process"``.
    """

    def __init__(
        self,
        loader: ModelLoader,
        *,
        isolation: str = "process",
        primary_device: str = "cuda",
        fallback_device: str = "cpu",
    ) -> None:
        if isolation not in ("process", "thread"):
            raise ValueError(f"Unknown isolation mode: {isolation}")
        self._loader = loader
        self._isolation = isolation
        self._primary_device = primary_device
        self._fallback_device = fallback_device
        self._inbox = None
        self._outbox = None
        self._worker = None
        self._lock = threading.Lock()

    @property
    def isolation(self) -> str:
        return self._isolation

    @property
    def started(self) -> bool:
        return self._worker is not None

    @property
    def pid(self) -> Optional[int]:
        if isinstance(self._worker, multiprocessing.process.BaseProcess):
            return self._worker.pid
        if self._worker is not None:
            return os.getpid()
        return None

    def start(self) -> None:
        with self._lock:
            if self._worker is not None:
                return
            args_tail = (self._loader, self._primary_device, self._fallback_device)
            if self._isolation == "process":
                ctx = multiprocessing.get_context("spawn")
                self._inbox = ctx.Queue()
                self._outbox = ctx.Queue()
                worker = ctx.Process(
                    target=serve,
                    args=(self._inbox, self._outbox) + args_tail,
                    name="cv-rank-model-host",
                    daemon=True,
                )
            else:
                self._inbox = queue.Queue()
                self._outbox = queue.Queue()
                worker = threading.Thread(
                    target=serve,
                    args=(self._inbox, self._outbox) + args_tail,
                    name="cv-rank-model-host",
                    daemon=True,
                )
            worker.start()
            self._worker = worker
            logger.info("Started model host (%s isolation)", self._isolation)

    def send(self, message: dict) -> None:
        if self._inbox is None:
            raise RuntimeError("Model host is not started")
        self._inbox.put(message)

    def receive(self, timeout: Optional[float] = None) -> Optional[dict]:
        """Block for the next reply. Returns None once the host has been stopped."""
        if self._outbox is None:
            raise RuntimeError("Model host is not started")
        try:
            return self._outbox.get(timeout=timeout)
        except queue.Empty:
            return None

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            worker = self._worker
            if worker is None:
                return
            self._inbox.put(encode(ShutdownCommand()))
            worker.join(timeout)
            if isinstance(worker, multiprocessing.process.BaseProcess) and worker.is_alive():
                logger.warning("Model host did not stop in %.1fs; terminating", timeout)
                worker.terminate()
                worker.join(timeout)
            # Wakes up anyone blocked in receive().
            self._outbox.put(None)
            self._worker = None
            logger.info("Stopped model host")

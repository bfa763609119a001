"""Serialized, attributed output for concurrently running units.

Every supervisor publishes `OutputChunk`s into one bounded queue. A single
writer task owns the sinks, so lines from different units never tear into
each other. A full queue makes `publish` wait, which in turn stops the pump
from reading the child's pipe: output is slowed down, never dropped.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import TextIO

from .types import OutputChunk, Stream

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1024


class OutputMultiplexer:
    def __init__(
        self,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
        *,
        width: int = 0,
        maxsize: int = DEFAULT_QUEUE_SIZE,
    ):
        self.stdout = stdout if stdout is not None else sys.stdout
        self.stderr = stderr if stderr is not None else sys.stderr
        self.width = width
        self.maxsize = maxsize
        self._queue: asyncio.Queue[OutputChunk | str | None] | None = None
        self._writer: asyncio.Task[None] | None = None
        self._broken = False

    async def __aenter__(self) -> OutputMultiplexer:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def running(self) -> bool:
        return self._writer is not None

    def start(self) -> None:
        if self._writer is not None:
            return
        queue: asyncio.Queue[OutputChunk | str | None] = asyncio.Queue(maxsize=self.maxsize)
        self._queue = queue
        self._writer = asyncio.create_task(self._drain(queue), name="output-multiplexer")

    async def publish(self, chunk: OutputChunk) -> None:
        await self._put(chunk)

    async def announce(self, message: str) -> None:
        """Queue an unattributed status line (goes to stdout)."""
        await self._put(message)

    async def close(self) -> None:
        """Flush everything queued so far and stop the writer.

        If the writer died, its exception is raised here instead.
        """
        writer = self._writer
        if writer is None:
            return
        await self._offer(None)
        self._writer = None
        self._queue = None
        await writer

    def render(self, chunk: OutputChunk) -> str:
        text = chunk.text if chunk.text.endswith("\n") else chunk.text + "\n"
        return f"{chunk.unit:<{self.width}} | {text}"

    async def _put(self, item: OutputChunk | str) -> None:
        if self._writer is None:
            raise RuntimeError("OutputMultiplexer is not running")
        if not await self._offer(item):
            raise RuntimeError("OutputMultiplexer writer has stopped")

    async def _offer(self, item: OutputChunk | str | None) -> bool:
        """Queue `item`, waiting for room. False if the writer is gone."""
        queue, writer = self._queue, self._writer
        if queue is None or writer is None or writer.done():
            return False
        try:
            queue.put_nowait(item)
            return True
        except asyncio.QueueFull:
            pass

        # Wait for room, but not on a writer that will never make any.
        put = asyncio.ensure_future(queue.put(item))
        try:
            await asyncio.wait({put, writer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            put.cancel()
        return not put.cancelled()

    async def _drain(self, queue: asyncio.Queue[OutputChunk | str | None]) -> None:
        while True:
            item = await queue.get()
            if item is None:
                return
            self._write(item)

    def _write(self, item: OutputChunk | str) -> None:
        if isinstance(item, str):
            sink, text = self.stdout, item + "\n"
        else:
            sink = self.stderr if item.stream is Stream.STDERR else self.stdout
            text = self.render(item)

        # Keep consuming after the sink breaks so producers never stall.
        if self._broken:
            return
        try:
            try:
                self._emit(sink, text)
            except UnicodeEncodeError as exc:
                # Sink encoding narrower than the unit's output.
                self._emit(sink, text.encode(exc.encoding, "replace").decode(exc.encoding))
        except (OSError, ValueError) as exc:
            self._broken = True
            logger.error("Output sink failed, discarding further unit output: %s", exc)

    @staticmethod
    def _emit(sink: TextIO, text: str) -> None:
        sink.write(text)
        sink.flush()

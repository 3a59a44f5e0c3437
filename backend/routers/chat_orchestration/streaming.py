"""
Forkline Streaming - bridge blocking backend streams onto the event loop

receive_stream() runs the blocking receive loop on a worker thread and
hands chunks over through an asyncio.Queue. A watcher task waits for either
cancellation or the loop's one-shot "receive finished" signal; on
cancellation it force-closes the backend stream so a blocked read returns.
The watcher exits as soon as the receive loop finishes, so it never
outlives it.

simulate_stream() manufactures a chunk sequence from one complete answer
for backends that cannot be streamed.
"""

import asyncio
import logging
from typing import AsyncIterator, List, Optional

from backends import IncrementalStream
from errors import StreamProtocolError
from logging_config import log_stream
from services.messages import ChatMessage

logger = logging.getLogger(__name__)

_CHUNK = "chunk"
_END = "end"
_ERROR = "error"


def simulate_stream(message: ChatMessage) -> List[ChatMessage]:
    """Split a complete answer into stream-shaped chunks.

    Reasoning paragraphs come first (split on blank lines, or on single
    newlines when there are no blank lines), each with a trailing newline;
    then the full text; then all multimodal parts as one chunk. An empty
    answer still yields one empty assistant chunk.
    """
    chunks: List[ChatMessage] = []

    if message.reasoning_content:
        paragraphs = message.reasoning_content.split("\n\n")
        if len(paragraphs) <= 1:
            paragraphs = message.reasoning_content.split("\n")
        for para in paragraphs:
            para = para.strip()
            if para:
                chunks.append(ChatMessage.assistant(reasoning_content=para + "\n"))

    if message.content:
        chunks.append(ChatMessage.assistant(content=message.content))

    if message.assistant_gen_multi_content:
        chunks.append(ChatMessage.assistant(parts=list(message.assistant_gen_multi_content)))

    if not chunks:
        chunks.append(ChatMessage.assistant())

    return chunks


async def _watch(stream: IncrementalStream, stop: asyncio.Event, receive_done: asyncio.Event) -> None:
    stop_wait = asyncio.create_task(stop.wait())
    done_wait = asyncio.create_task(receive_done.wait())
    try:
        await asyncio.wait({stop_wait, done_wait}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop_wait.cancel()
        done_wait.cancel()

    if receive_done.is_set():
        return

    log_stream(logger, "cancel", action="closing backend stream")
    try:
        stream.close()
    except Exception as e:
        # The receive loop still ends at the next chunk boundary
        logger.warning(f"Closing backend stream failed: {e}")


async def receive_stream(
    stream: IncrementalStream,
    cancel: Optional[asyncio.Event] = None,
    backend_name: str = "",
) -> AsyncIterator[ChatMessage]:
    """Yield chunks from a blocking IncrementalStream without blocking the loop.

    Ends quietly when cancelled (by ``cancel`` or by the consumer closing
    this generator). Receive errors propagate unless cancellation caused them.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    receive_done = asyncio.Event()
    stop = asyncio.Event()

    def receive_loop() -> None:
        try:
            for chunk in stream:
                loop.call_soon_threadsafe(queue.put_nowait, (_CHUNK, chunk))
            loop.call_soon_threadsafe(queue.put_nowait, (_END, None))
        except Exception as e:
            loop.call_soon_threadsafe(queue.put_nowait, (_ERROR, e))
        finally:
            loop.call_soon_threadsafe(receive_done.set)

    worker = loop.run_in_executor(None, receive_loop)
    watcher = asyncio.create_task(_watch(stream, stop, receive_done))
    relay = asyncio.create_task(cancel.wait()) if cancel is not None else None
    if relay is not None:
        relay.add_done_callback(lambda _: stop.set())

    finished = False
    try:
        while True:
            kind, payload = await queue.get()
            if kind == _CHUNK:
                if not isinstance(payload, ChatMessage):
                    raise StreamProtocolError(
                        f"backend yielded {type(payload).__name__} instead of a message chunk",
                        backend=backend_name,
                    )
                yield payload
            elif kind == _END:
                finished = True
                return
            else:
                finished = True
                if stop.is_set():
                    logger.debug(f"Receive loop ended after cancellation: {payload}")
                    return
                raise payload
    finally:
        if finished:
            await receive_done.wait()
        else:
            stop.set()
        if relay is not None:
            relay.cancel()
        await watcher
        # The loop returns promptly once the stream is closed
        await worker

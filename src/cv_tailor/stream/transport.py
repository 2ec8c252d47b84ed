"""Drive a stream poller into any writable sink."""

from __future__ import annotations

from collections.abc import Callable

from cv_tailor.stream.poller import GenerationStreamPoller


def pump(
    poller: GenerationStreamPoller,
    write: Callable[[str], object],
    flush: Callable[[], object] | None = None,
) -> int:
    """Write chunks in order until the poller finishes; returns chunk count."""

    count = 0
    while (chunk := poller.next_chunk()) is not None:
        write(chunk)
        if flush is not None:
            flush()
        count += 1
    return count

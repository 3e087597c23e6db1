"""
operator_input.py — Blocking terminal prompts without blocking shutdown.

Each prompt (console.input, Prompt.ask, Confirm.ask) runs on its own daemon
thread and hands its answer back to the event loop. Cancelling the awaiting
task abandons the thread: nothing joins it, so the process can exit while
a prompt is still waiting for Enter.
"""

import asyncio
import threading


def _deliver(fut: asyncio.Future, result, exc):
    if fut.done():
        return
    if exc is not None:
        fut.set_exception(exc)
    else:
        fut.set_result(result)


def _prompt_thread(fn, loop: asyncio.AbstractEventLoop, fut: asyncio.Future):
    result, exc = None, None
    try:
        result = fn()
    except Exception as e:   # EOFError on closed stdin
        exc = e
    if loop.is_closed():
        return
    try:
        loop.call_soon_threadsafe(_deliver, fut, result, exc)
    except RuntimeError:
        # loop closed between the check and the call
        pass


async def ask(fn):
    """Run a blocking prompt callable and await its answer."""
    loop = asyncio.get_running_loop()
    fut = loop.create_future()
    threading.Thread(
        target=_prompt_thread, args=(fn, loop, fut),
        name="operator-input", daemon=True,
    ).start()
    return await fut

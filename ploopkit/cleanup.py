"""Per-thread registry of cleanup hooks run when an operation is cancelled."""

from __future__ import annotations

import contextlib
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from .log import ploop_log


@dataclass(eq=False)
class CleanupHook:
    """A callback and the data it is called with."""

    fn: Callable[[Any], None]
    data: Any = None


@dataclass
class CancelHandle:
    """Hooks registered by the current thread; newest first."""

    hooks: List[CleanupHook] = field(default_factory=list)
    flags: int = 0

    @property
    def cancelled(self) -> bool:
        return bool(self.flags)


_tls = threading.local()


def get_cancel_handle() -> CancelHandle:
    """Return the calling thread's cancel handle."""
    handle = getattr(_tls, "handle", None)
    if handle is None:
        handle = CancelHandle()
        _tls.handle = handle
    return handle


def register_cleanup_hook(fn: Callable[[Any], None], data: Any = None) -> CleanupHook:
    """Register ``fn(data)`` to run on cancellation and return its hook."""
    hook = CleanupHook(fn, data)
    get_cancel_handle().hooks.insert(0, hook)
    return hook


def unregister_cleanup_hook(hook: Optional[CleanupHook]) -> None:
    """Remove a hook; ``None`` is ignored."""
    if hook is None:
        return
    with contextlib.suppress(ValueError):
        get_cancel_handle().hooks.remove(hook)


def cancel_operation() -> None:
    """Mark the thread's operation cancelled and run its hooks, newest first."""
    handle = get_cancel_handle()
    ploop_log(0, "Cancelling...")
    handle.flags = 1
    for hook in list(handle.hooks):
        hook.fn(hook.data)
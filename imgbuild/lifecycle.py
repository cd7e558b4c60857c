# SPDX-License-Identifier: LGPL-2.1-or-later

"""
Tracking of acquired OS resources (loop devices, mounts, chroot setups).

Every acquired resource is represented by a ResourceHandle and owned by exactly one ResourceStack. The stack
releases its handles in reverse order of acquisition when it is closed, no matter whether it is closed
because the work finished, failed or was interrupted. run_scoped() is the single entry point the rest of
imgbuild uses to acquire resources and run work against them.
"""

import contextlib
import dataclasses
import enum
import logging
import signal
from collections.abc import Iterator, Sequence
from types import TracebackType
from typing import Callable, Optional, TypeVar

from imgbuild.errors import CleanupWarning
from imgbuild.log import log_notice
from imgbuild.util import StrEnum

T = TypeVar("T")

# A release action either succeeds silently, or reports that it had to fall back to a degraded teardown (e.g.
# a lazy unmount) by returning a CleanupWarning. Exceptions raised by it are downgraded to warnings as well.
ReleaseAction = Callable[[], Optional[CleanupWarning]]


class ResourceKind(StrEnum):
    loop_device = enum.auto()
    mount = enum.auto()
    chroot = enum.auto()


@dataclasses.dataclass(eq=False)
class ResourceHandle:
    kind: ResourceKind
    identifier: str
    action: ReleaseAction = dataclasses.field(repr=False)
    released: bool = False

    def release(self) -> Optional[CleanupWarning]:
        if self.released:
            return None

        # Mark first so a release action that raises is still never retried.
        self.released = True
        return self.action()

    def __str__(self) -> str:
        return f"{self.kind} {self.identifier}"


@contextlib.contextmanager
def signals_deferred() -> Iterator[None]:
    """Hold back SIGINT and SIGTERM until the block is done.

    Used around acquiring a resource and pushing it onto a stack so that an interrupt can never arrive
    between the two and leave a resource nobody knows about.
    """
    blocked = {signal.SIGINT, signal.SIGTERM}
    old = signal.pthread_sigmask(signal.SIG_BLOCK, blocked)
    try:
        yield
    finally:
        signal.pthread_sigmask(signal.SIG_SETMASK, old)


@contextlib.contextmanager
def signals_allowed() -> Iterator[None]:
    """Let SIGINT and SIGTERM through again inside a signals_deferred() block.

    For slow parts of an acquisition that already clean up after themselves when interrupted.
    """
    old = signal.pthread_sigmask(signal.SIG_UNBLOCK, {signal.SIGINT, signal.SIGTERM})
    try:
        yield
    finally:
        signal.pthread_sigmask(signal.SIG_SETMASK, old)


class ResourceStack:
    def __init__(self) -> None:
        self.handles: list[ResourceHandle] = []
        self.warnings: list[CleanupWarning] = []

    def push(self, handle: ResourceHandle) -> ResourceHandle:
        assert not handle.released, f"{handle} was already released"
        self.handles.append(handle)
        return handle

    def acquire(self, fn: Callable[[], ResourceHandle]) -> ResourceHandle:
        with signals_deferred():
            return self.push(fn())

    def release(self, handle: ResourceHandle) -> None:
        try:
            warning = handle.release()
        except Exception as e:
            warning = CleanupWarning(str(handle), f"release failed: {e}")

        if warning:
            logging.warning(f"Cleanup: {warning}")
            self.warnings.append(warning)

    def close(self, *, propagating: bool = False) -> None:
        """Release every handle, most recent first.

        An interrupt arriving during a release does not stop the unwind. It is raised once the stack is
        empty, unless another exception is already propagating, which then wins.
        """
        interrupt: Optional[BaseException] = None

        while self.handles:
            handle = self.handles.pop()
            try:
                self.release(handle)
            except BaseException as e:
                logging.warning(f"Cleanup: interrupted while releasing {handle}")
                interrupt = interrupt or e

        if interrupt and not propagating:
            raise interrupt

    def pop_all(self) -> list[ResourceHandle]:
        """Stop tracking all handles without releasing them and return them."""
        handles, self.handles = self.handles, []
        return handles

    def __enter__(self) -> "ResourceStack":
        return self

    def __exit__(
        self,
        type: Optional[type[BaseException]],
        value: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        self.close(propagating=value is not None)


def run_scoped(
    acquisitions: Sequence[Callable[[list[ResourceHandle]], ResourceHandle]],
    body: Callable[[list[ResourceHandle]], T],
    *,
    keep_on_failure: bool = False,
    stack: Optional[ResourceStack] = None,
) -> T:
    """
    Acquire resources in order, run body with the acquired handles and release everything in reverse order
    on every way out. Each acquisition function gets the handles acquired before it, so later acquisitions
    can build on earlier ones (e.g. mounting a partition of an attached loop device).

    If an acquisition or the body fails, only the handles acquired so far are released and the original
    exception propagates. With keep_on_failure, resources are deliberately left in place on failure so they
    can be inspected.
    """
    stack = stack if stack is not None else ResourceStack()

    # The stack is armed before the first acquisition and stays armed until the last release.
    try:
        handles: list[ResourceHandle] = []
        for acquire in acquisitions:
            handles.append(stack.acquire(lambda: acquire(list(handles))))

        result = body(list(handles))
    except BaseException:
        if keep_on_failure:
            kept = stack.pop_all()
            for handle in reversed(kept):
                log_notice(f"Keeping {handle} for inspection")
            if kept:
                logging.warning("Debug mode: resources were left in place, clean them up manually when done")
        else:
            stack.close(propagating=True)
        raise

    stack.close()
    return result

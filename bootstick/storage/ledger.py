"""Transactional ledger of side-effecting host operations.

Every operation that changes host state during a build (mounts, loop
attachments, partition mappings, volume groups, temporary directories) goes
through a :class:`Ledger`. The ledger only records an undo action once its
operation has succeeded, and it replays undo actions most-recent-first, so an
unwind at any point returns the host to the state it was in before the run.

Entries are identified by a :class:`LedgerHandle` returned from
:meth:`Ledger.record`, which allows one resource to be released early
(:meth:`Ledger.undo_one`) while older and newer entries stay in place.

Example:
    >>> ledger = Ledger()
    >>> handle = ledger.record(lambda: attach_loop(path), detach_loop, "loop")
    >>> handle.result
    '/dev/loop3'
    >>> ledger.undo_all()  # detach_loop('/dev/loop3')

:func:`scoped` pairs an acquire with its release around a ``with`` body:

    >>> with scoped(ledger, lambda: mount_tmpfs(path), unmount, "tmpfs") as mp:
    ...     run_in(mp)
"""

from __future__ import annotations

import itertools
import signal
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterator, Optional, TypeVar

from bootstick.logging import LoggerFactory
from bootstick.storage.exceptions import LedgerUnwindError


T = TypeVar("T")

log = LoggerFactory.for_ledger()

_handle_ids = itertools.count(1)

# Signals held back while a host change and its ledger entry are made
# together; a delivery pending at the end is handled right after.
DEFERRED_SIGNALS = frozenset({signal.SIGINT, signal.SIGTERM})


@contextmanager
def signals_deferred() -> Iterator[None]:
    """Block SIGINT and SIGTERM for the duration of the block."""
    previous = signal.pthread_sigmask(signal.SIG_BLOCK, DEFERRED_SIGNALS)
    try:
        yield
    finally:
        signal.pthread_sigmask(signal.SIG_SETMASK, previous)


@dataclass(frozen=True, eq=False)
class LedgerHandle(Generic[T]):
    """Stable identity of one recorded operation.

    Handles compare by identity; two recordings of the same command are
    distinct entries.
    """

    id: int
    description: str
    result: T = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"LedgerHandle(id={self.id}, description={self.description!r})"


@dataclass
class LedgerEntry:
    """A recorded operation and the action that reverses it."""

    handle: LedgerHandle
    undo: Callable[[Any], None]

    @property
    def description(self) -> str:
        return self.handle.description

    def run_undo(self) -> None:
        self.undo(self.handle.result)


@dataclass
class Ledger:
    """Most-recent-first record of reversible operations."""

    entries: list[LedgerEntry] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, handle: object) -> bool:
        return any(entry.handle is handle for entry in self.entries)

    @property
    def is_empty(self) -> bool:
        return not self.entries

    def descriptions(self) -> list[str]:
        """Descriptions of pending undo actions, in unwind order."""
        return [entry.description for entry in self.entries]

    def record(
        self,
        op: Callable[[], T],
        undo: Callable[[T], None],
        description: str = "",
    ) -> LedgerHandle[T]:
        """Execute ``op`` and, only if it succeeds, record ``undo``.

        ``undo`` receives the value returned by ``op`` (a device path,
        mountpoint, directory, ...). If ``op`` raises, the error propagates
        and nothing is recorded.

        SIGINT and SIGTERM are deferred until the entry is in place, so an
        interrupt cannot land between the host change and its record.
        """
        description = description or getattr(op, "__name__", "operation")
        with signals_deferred():
            result = op()
            handle: LedgerHandle[T] = LedgerHandle(
                id=next(_handle_ids), description=description, result=result
            )
            self.entries.insert(0, LedgerEntry(handle=handle, undo=undo))
        log.debug(f"Recorded #{handle.id}: {description}")
        return handle

    def _pop(self, handle: LedgerHandle) -> Optional[LedgerEntry]:
        for index, entry in enumerate(self.entries):
            if entry.handle is handle:
                return self.entries.pop(index)
        return None

    def undo_one(self, handle: LedgerHandle) -> bool:
        """Remove the entry for ``handle`` and run its undo action now.

        The entry is removed before its undo runs, so a failing undo is never
        retried by a later :meth:`undo_all`.

        Returns:
            True if an entry was undone, False if it was no longer recorded
            (already unwound).
        """
        with signals_deferred():
            entry = self._pop(handle)
            if entry is None:
                log.trace(f"Nothing to undo for #{handle.id}: {handle.description}")
                return False
            log.debug(f"Undoing #{handle.id}: {entry.description}")
            entry.run_undo()
        return True

    def undo_all(self) -> None:
        """Run every pending undo action in LIFO order and empty the ledger.

        An undo failure does not stop the unwind; remaining entries are still
        undone and the failures are raised together afterwards.

        Raises:
            LedgerUnwindError: If one or more undo actions failed.
        """
        failures: list[tuple[str, BaseException]] = []
        while not self.is_empty:
            entry = self.entries.pop(0)
            log.debug(f"Undoing #{entry.handle.id}: {entry.description}")
            try:
                entry.run_undo()
            except Exception as error:
                log.error(f"Undo failed for {entry.description}: {error}")
                failures.append((entry.description, error))
        if failures:
            raise LedgerUnwindError(failures)


@contextmanager
def scoped(
    ledger: Ledger,
    op: Callable[[], T],
    undo: Callable[[T], None],
    description: str = "",
) -> Iterator[T]:
    """Acquire a resource through ``ledger`` for the duration of a block.

    The release runs exactly once when the block exits, whatever the exit
    path. If an enclosing unwind already released the resource, nothing runs
    again. Errors raised by the body propagate after the release; if the
    release fails too, its failure is logged and the body's error wins.
    """
    handle = ledger.record(op, undo, description)
    try:
        yield handle.result
    except BaseException:
        try:
            ledger.undo_one(handle)
        except Exception as release_error:
            log.error(f"Release of {handle.description} failed: {release_error}")
        raise
    ledger.undo_one(handle)
